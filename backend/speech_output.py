"""
Speech Output - sequential, interruptible playback over a synthesis engine.

The engine speaks one utterance at a time and reports back through
handle_utterance_end / handle_utterance_error. SpeechOutput owns the
item sequence, the inter-item pause and the completion callback.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoiceSettings:
    """Fixed rate/pitch/volume for every utterance in a session."""
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0


class SynthesisEngine:
    """
    Interface for a device speech synthesizer.

    Implementations must report each utterance's outcome to the attached
    listener: handle_utterance_end(utterance_id) or
    handle_utterance_error(utterance_id, error).
    """

    def __init__(self):
        self.listener = None

    def attach(self, listener):
        self.listener = listener

    def utter(self, utterance_id: int, text: str, voice: VoiceSettings):
        raise NotImplementedError

    def cancel(self):
        raise NotImplementedError


class SpeechOutput:
    """
    Speaks a list of items in order, one utterance at a time.

    A new speak() call replaces whatever is playing; cancel_all() stops the
    current sequence so no later item is ever spoken.
    """

    def __init__(
        self,
        engine: SynthesisEngine,
        voice: Optional[VoiceSettings] = None,
        inter_item_pause: float = 0.6,
        item_timeout: float = 30.0,
        cancel_retry_delay: float = 0.01,
    ):
        self.engine = engine
        self.voice = voice or VoiceSettings()
        self.inter_item_pause = inter_item_pause
        self.item_timeout = item_timeout
        self.cancel_retry_delay = cancel_retry_delay

        self.items: List[str] = []
        self.position = 0
        self.interruptible = True

        self._ids = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._active_id: Optional[int] = None
        self._active_future: Optional[asyncio.Future] = None
        self._empty_complete: Optional[asyncio.Handle] = None
        # Bumped by every speak()/cancel_all() so delayed repeat cancels
        # never hit a sequence that started after them
        self._cancel_generation = 0

        engine.attach(self)

    @property
    def active(self) -> bool:
        """True while a sequence is playing (including inter-item pauses)."""
        return self._task is not None and not self._task.done()

    def speak(
        self,
        items: List[str],
        interruptible: bool = True,
        on_complete: Optional[Callable[[], None]] = None,
    ):
        """
        Start speaking a new sequence, replacing any current one.

        Args:
            items: Texts to speak in order
            interruptible: Whether barge-in may cut this sequence off
            on_complete: Called exactly once after the last item finishes.
                Never called if the sequence is cancelled.
        """
        items = [item.strip() for item in items if item and item.strip()]
        self.cancel_all()
        self._cancel_generation += 1

        loop = asyncio.get_running_loop()
        if not items:
            if on_complete:
                self._empty_complete = loop.call_soon(on_complete)
            return

        self.items = items
        self.position = 0
        self.interruptible = interruptible
        logger.info(f"🔊 Speaking {len(items)} item(s) (interruptible={interruptible})")
        self._task = loop.create_task(self._play(items, on_complete))

    def cancel_all(self):
        """
        Stop the current sequence immediately. Idempotent.

        The engine cancel is issued now, on the next loop tick, and after a
        short delay, because real engines sometimes drop a single cancel.
        """
        self._cancel_generation += 1
        generation = self._cancel_generation

        if self._empty_complete is not None:
            self._empty_complete.cancel()
            self._empty_complete = None
        if self._task is not None and not self._task.done():
            logger.info(f"⏹ Cancelling speech at item {self.position + 1}/{len(self.items)}")
            self._task.cancel()
        self._task = None
        self._finish_active(cancelled=True)
        self.items = []
        self.position = 0
        self.interruptible = True

        self._engine_cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_soon(self._repeat_cancel, generation)
        loop.call_later(self.cancel_retry_delay, self._repeat_cancel, generation)

    # ------------------------------------------------------------------
    # Engine callbacks
    # ------------------------------------------------------------------

    def handle_utterance_end(self, utterance_id: int):
        if utterance_id != self._active_id:
            logger.debug(f"Ignoring end for stale utterance #{utterance_id}")
            return
        self._finish_active()

    def handle_utterance_error(self, utterance_id: int, error: str):
        if utterance_id != self._active_id:
            # 'interrupted' / 'canceled' after a cancel land here
            logger.debug(f"Ignoring error '{error}' for stale utterance #{utterance_id}")
            return
        # Treat as finished so the sequence can't deadlock
        logger.warning(f"⚠️ Synthesis error on utterance #{utterance_id}: {error}")
        self._finish_active()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _play(self, items: List[str], on_complete: Optional[Callable[[], None]]):
        for index, text in enumerate(items):
            self.position = index
            await self._say(text)
            if index < len(items) - 1 and self.inter_item_pause > 0:
                await asyncio.sleep(self.inter_item_pause)

        # Mark inactive before the callback so it may start new speech
        # or resume listening without cancelling this task
        self._task = None
        self.items = []
        self.position = 0
        if on_complete:
            try:
                on_complete()
            except Exception as e:
                logger.error(f"❌ Speech completion callback failed: {e}", exc_info=True)

    async def _say(self, text: str):
        loop = asyncio.get_running_loop()
        utterance_id = next(self._ids)
        future = loop.create_future()
        self._active_id = utterance_id
        self._active_future = future

        try:
            self.engine.utter(utterance_id, text, self.voice)
        except Exception as e:
            logger.error(f"❌ Synthesis engine failed to speak: {e}", exc_info=True)
            self._finish_active()
            return

        try:
            await asyncio.wait_for(future, timeout=self.item_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Utterance #{utterance_id} never finished, moving on")
            self._finish_active()

    def _finish_active(self, cancelled: bool = False):
        future = self._active_future
        self._active_id = None
        self._active_future = None
        if future is not None and not future.done():
            if cancelled:
                future.cancel()
            else:
                future.set_result(None)

    def _repeat_cancel(self, generation: int):
        if generation == self._cancel_generation and not self.active:
            self._engine_cancel()

    def _engine_cancel(self):
        try:
            self.engine.cancel()
        except Exception as e:
            logger.warning(f"⚠️ Synthesis engine cancel failed: {e}")
