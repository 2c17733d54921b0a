"""
Device bridge: recognition and synthesis engines backed by a socket.io client.

The phone owns the microphone and the speaker. These engines turn the
coordinator's begin/end/utter/cancel calls into socket.io events for one
connected device, and server.py feeds the device's replies back into
SpeechInput / SpeechOutput.
"""

import asyncio
import logging
from typing import Optional

import socketio

from speech_input import RecognitionEngine
from speech_output import SynthesisEngine, VoiceSettings

logger = logging.getLogger(__name__)


class DeviceChannel:
    """
    Ordered outbound event queue for one socket id.

    Engine calls are synchronous, so events are queued and sent by a single
    drain task; a cancel can never overtake the speak it is meant to stop.
    """

    def __init__(self, sio: socketio.AsyncServer, sid: str):
        self.sio = sio
        self.sid = sid
        self.sent = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def send(self, event: str, data: Optional[dict] = None):
        self._queue.put_nowait((event, data or {}))
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self):
        while not self._queue.empty():
            event, data = self._queue.get_nowait()
            try:
                await self.sio.emit(event, data, room=self.sid)
                self.sent += 1
            except Exception as e:
                logger.warning(f"⚠️ Failed to send '{event}' to {self.sid}: {e}")

    async def close(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class SocketRecognitionEngine(RecognitionEngine):
    """Asks the device to start/stop its speech recognizer."""

    def __init__(self, channel: DeviceChannel, language: str = "en-US"):
        super().__init__()
        self.channel = channel
        self.language = language

    def begin(self):
        self.channel.send("recognition_start", {"lang": self.language})

    def end(self):
        self.channel.send("recognition_stop")


class SocketSynthesisEngine(SynthesisEngine):
    """Asks the device to speak; the device acknowledges with utterance_end/utterance_error."""

    def __init__(self, channel: DeviceChannel):
        super().__init__()
        self.channel = channel

    def utter(self, utterance_id: int, text: str, voice: VoiceSettings):
        self.channel.send("speak", {
            "utterance_id": utterance_id,
            "text": text,
            "rate": voice.rate,
            "pitch": voice.pitch,
            "volume": voice.volume,
        })

    def cancel(self):
        self.channel.send("speech_cancel")
