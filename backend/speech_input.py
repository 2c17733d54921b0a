"""
Speech Input - continuous recognition lifecycle.

Wraps a recognition engine that runs continuously and reports:
- handle_speech_start()          voice activity / first interim result
- handle_result(text, is_final)  recognition results
- handle_error(error)            engine errors (browser-style error codes)
- handle_end()                   the engine stopped on its own

Listening is "logical": while paused the engine may keep running so that
barge-in is still detected, but finalized results are dropped.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Recoverable by restarting the engine
TRANSIENT_ERRORS = {"no-speech", "aborted", "network"}

# Permission / hardware problems - the session cannot continue
FATAL_ERRORS = {"not-allowed", "service-not-allowed", "audio-capture"}


class InputState(Enum):
    STOPPED = "stopped"
    LISTENING = "listening"
    PAUSED = "paused"


class RecognitionEngine:
    """Interface for a device speech recognizer."""

    def __init__(self):
        self.listener = None

    def attach(self, listener):
        self.listener = listener

    def begin(self):
        raise NotImplementedError

    def end(self):
        raise NotImplementedError


class SpeechInput:
    """
    Continuous microphone recognition with auto-restart.

    Emits on_utterance(text) for finalized results while listening,
    on_speech_started() when the user starts talking (even while paused),
    and on_fatal(error) when recognition cannot continue.
    """

    def __init__(
        self,
        engine: RecognitionEngine,
        on_utterance: Optional[Callable[[str], None]] = None,
        on_speech_started: Optional[Callable[[], None]] = None,
        on_fatal: Optional[Callable[[str], None]] = None,
        restart_delay: float = 1.0,
        end_restart_delay: float = 0.1,
        max_consecutive_failures: int = 5,
        monitor_while_paused: bool = True,
    ):
        self.engine = engine
        self.on_utterance = on_utterance
        self.on_speech_started = on_speech_started
        self.on_fatal = on_fatal
        self.restart_delay = restart_delay
        self.end_restart_delay = end_restart_delay
        self.max_consecutive_failures = max_consecutive_failures
        self.monitor_while_paused = monitor_while_paused

        self.state = InputState.STOPPED
        self.engine_running = False
        self._speech_in_progress = False
        self._consecutive_failures = 0
        self._restart_handle: Optional[asyncio.TimerHandle] = None

        engine.attach(self)

    @property
    def listening(self) -> bool:
        """Logically capturing commands."""
        return self.state is InputState.LISTENING

    @property
    def session_active(self) -> bool:
        return self.state is not InputState.STOPPED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Begin listening. No-op if already listening."""
        if self.state is InputState.LISTENING:
            return
        self.state = InputState.LISTENING
        self._speech_in_progress = False
        self._ensure_engine()
        logger.info("🎤 Listening")

    def pause(self):
        """Stop capturing commands (e.g. while the system speaks)."""
        if self.state is not InputState.LISTENING:
            return
        self.state = InputState.PAUSED
        self._speech_in_progress = False
        if not self.monitor_while_paused:
            self._cancel_restart()
            self._end_engine()
        logger.debug("🎤 Input paused")

    def resume(self):
        """Return to listening after a pause. Ignored once stopped."""
        if self.state is not InputState.PAUSED:
            return
        self.start()

    def stop(self):
        """Stop recognition for good (until the next start)."""
        self.state = InputState.STOPPED
        self._speech_in_progress = False
        self._consecutive_failures = 0
        self._cancel_restart()
        self._end_engine()
        logger.info("🎤 Input stopped")

    # ------------------------------------------------------------------
    # Engine callbacks
    # ------------------------------------------------------------------

    def handle_speech_start(self):
        if self.state is InputState.STOPPED:
            return
        if self.state is InputState.PAUSED and not self.monitor_while_paused:
            return
        if self._speech_in_progress:
            return
        self._speech_in_progress = True
        if self.on_speech_started:
            self.on_speech_started()

    def handle_result(self, text: str, is_final: bool):
        if self.state is InputState.STOPPED:
            return

        # Any result means the user is talking. While paused this is a
        # barge-in, and the listener may resume input before we deliver.
        self.handle_speech_start()

        if not is_final:
            return

        self._speech_in_progress = False
        self._consecutive_failures = 0
        text = (text or "").strip()
        if not text:
            return

        if self.state is not InputState.LISTENING:
            logger.debug(f"Dropping utterance while paused: '{text}'")
            return

        logger.info(f"🎤 Utterance: '{text}'")
        if self.on_utterance:
            self.on_utterance(text)

    def handle_error(self, error: str):
        self.engine_running = False
        self._speech_in_progress = False
        if self.state is InputState.STOPPED:
            return

        if error in FATAL_ERRORS:
            self._fail(error)
            return

        self._consecutive_failures += 1
        if self._consecutive_failures > self.max_consecutive_failures:
            logger.error(f"❌ Recognition kept failing ({error}), giving up")
            self._fail(error)
            return

        if error not in TRANSIENT_ERRORS:
            logger.warning(f"⚠️ Unknown recognition error '{error}', treating as transient")
        else:
            logger.debug(f"Transient recognition error '{error}', restarting")
        self._schedule_restart(self.restart_delay)

    def handle_end(self):
        self.engine_running = False
        if self.state is InputState.STOPPED:
            return
        if self.state is InputState.PAUSED and not self.monitor_while_paused:
            return
        self._schedule_restart(self.end_restart_delay)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fail(self, error: str):
        logger.error(f"❌ Fatal recognition error: {error}")
        self.stop()
        if self.on_fatal:
            self.on_fatal(error)

    def _schedule_restart(self, delay: float):
        self._cancel_restart()
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(delay, self._restart)

    def _cancel_restart(self):
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _restart(self):
        self._restart_handle = None
        if self.state is InputState.STOPPED:
            return
        if self.state is InputState.PAUSED and not self.monitor_while_paused:
            return
        self._ensure_engine()

    def _ensure_engine(self):
        if self.engine_running:
            return
        try:
            self.engine.begin()
            self.engine_running = True
        except Exception as e:
            logger.warning(f"⚠️ Recognition engine failed to start: {e}")
            self.handle_error("aborted")

    def _end_engine(self):
        if not self.engine_running:
            return
        self.engine_running = False
        try:
            self.engine.end()
        except Exception as e:
            logger.warning(f"⚠️ Recognition engine failed to stop: {e}")
