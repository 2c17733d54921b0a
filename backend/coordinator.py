"""
Narration Coordinator for Helios Voice Narrator

Owns the voice session state machine:

    IDLE -> LISTENING -> PROCESSING -> SPEAKING -> (settle) -> LISTENING
                  ^            |            |
                  |            v            v
                  +-------- PAUSED <--- barge-in (user starts talking)

and mediates SpeechInput, SpeechOutput, VisionCapture and the analysis
client. Two rules hold throughout:

- Half-duplex: input is paused before output starts and only resumed once
  output is idle again.
- Every analysis request and every scheduled callback carries the stop
  token generation it was created under. Anything stale is a no-op, so
  superseded or stopped work never reaches the speaker.
"""

import asyncio
import logging
import os
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional

import prompts
from conversation_memory import ConversationMemory
from intents import CommandInterpreter, Intent, IntentKind
from narration import CoordinatorState, NarrationRequest, StopToken, split_narration_items
from speech_input import RecognitionEngine, SpeechInput
from speech_output import SpeechOutput, SynthesisEngine, VoiceSettings
from travel_mode import TravelModeScheduler
from vision_capture import Frame, VisionCapture

logger = logging.getLogger(__name__)

_BARCODE_DIGITS = re.compile(r"\b\d{8,}\b")


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class CoordinatorConfig:
    """Timing and behaviour knobs (all durations in seconds)."""
    # Speaking -> Listening delay so the mic doesn't catch speaker echo
    settle_delay: float = 1.2
    inter_item_pause: float = 0.6
    item_timeout: float = 30.0

    # Travel mode
    grace_period: float = 2.0
    continue_delay: float = 1.5
    backup_interval: float = 15.0

    # Requests
    analysis_timeout: float = 30.0
    capture_retry_delay: float = 0.5
    positioning_delay: float = 2.0

    # Barge-in: back to Listening if no utterance finalizes in time
    paused_timeout: float = 5.0

    # Speech input
    language: str = "en-US"
    restart_delay: float = 1.0
    end_restart_delay: float = 0.1
    max_consecutive_failures: int = 5

    # Voice
    voice_rate: float = 1.0
    voice_pitch: float = 1.0
    voice_volume: float = 1.0

    memory_size: int = 10
    max_frame_age: float = 3.0
    greeting: Optional[str] = prompts.GREETING
    transition_history: int = 200

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        """Build a config from HELIOS_* environment variables, falling back to defaults."""
        defaults = cls()

        def _float(name: str, default: float) -> float:
            value = os.getenv(name)
            return float(value) if value else default

        def _int(name: str, default: int) -> int:
            value = os.getenv(name)
            return int(value) if value else default

        greeting = os.getenv("HELIOS_GREETING", defaults.greeting or "")

        return cls(
            settle_delay=_float("HELIOS_SETTLE_DELAY", defaults.settle_delay),
            inter_item_pause=_float("HELIOS_INTER_ITEM_PAUSE", defaults.inter_item_pause),
            item_timeout=_float("HELIOS_ITEM_TIMEOUT", defaults.item_timeout),
            grace_period=_float("HELIOS_GRACE_PERIOD", defaults.grace_period),
            continue_delay=_float("HELIOS_CONTINUE_DELAY", defaults.continue_delay),
            backup_interval=_float("HELIOS_BACKUP_INTERVAL", defaults.backup_interval),
            analysis_timeout=_float("HELIOS_ANALYSIS_TIMEOUT", defaults.analysis_timeout),
            capture_retry_delay=_float("HELIOS_CAPTURE_RETRY_DELAY", defaults.capture_retry_delay),
            positioning_delay=_float("HELIOS_POSITIONING_DELAY", defaults.positioning_delay),
            paused_timeout=_float("HELIOS_PAUSED_TIMEOUT", defaults.paused_timeout),
            language=os.getenv("HELIOS_LANGUAGE", defaults.language),
            restart_delay=_float("HELIOS_RESTART_DELAY", defaults.restart_delay),
            max_consecutive_failures=_int("HELIOS_MAX_INPUT_FAILURES", defaults.max_consecutive_failures),
            voice_rate=_float("HELIOS_VOICE_RATE", defaults.voice_rate),
            voice_pitch=_float("HELIOS_VOICE_PITCH", defaults.voice_pitch),
            voice_volume=_float("HELIOS_VOICE_VOLUME", defaults.voice_volume),
            memory_size=_int("HELIOS_MEMORY_SIZE", defaults.memory_size),
            max_frame_age=_float("HELIOS_MAX_FRAME_AGE", defaults.max_frame_age),
            greeting=greeting or None,
        )


@dataclass(frozen=True)
class Transition:
    """One entry of the state transition log."""
    previous: CoordinatorState
    current: CoordinatorState
    reason: str
    timestamp: float
    # Input and output were not both logically active right after the change
    half_duplex: bool


# Legal moves; any state may also drop to IDLE
_ALLOWED_TRANSITIONS = {
    CoordinatorState.IDLE: {CoordinatorState.LISTENING},
    CoordinatorState.LISTENING: {CoordinatorState.PROCESSING, CoordinatorState.SPEAKING},
    CoordinatorState.PROCESSING: {
        CoordinatorState.SPEAKING, CoordinatorState.LISTENING, CoordinatorState.PAUSED,
    },
    CoordinatorState.SPEAKING: {
        CoordinatorState.LISTENING, CoordinatorState.PAUSED, CoordinatorState.PROCESSING,
    },
    CoordinatorState.PAUSED: {
        CoordinatorState.PROCESSING, CoordinatorState.LISTENING, CoordinatorState.SPEAKING,
    },
}

# Intents answered by one analyze() call with a fixed instruction
_SCENE_INSTRUCTIONS = {
    IntentKind.DESCRIBE_SCENE: prompts.SCENE_INSTRUCTION,
    IntentKind.DESCRIBE_DETAIL: prompts.DETAIL_INSTRUCTION,
    IntentKind.OBSTACLES: prompts.OBSTACLES_INSTRUCTION,
    IntentKind.DIRECTIONS: prompts.DIRECTIONS_INSTRUCTION,
    IntentKind.PEOPLE: prompts.PEOPLE_INSTRUCTION,
    IntentKind.DESCRIBE_IMAGE: prompts.IMAGE_INSTRUCTION,
}

# Short numbered lists that may chain into travel auto-continuation
_QUICK_INTENTS = {
    IntentKind.DESCRIBE_SCENE,
    IntentKind.OBSTACLES,
    IntentKind.DIRECTIONS,
    IntentKind.PEOPLE,
}


class NarrationCoordinator:
    """
    Single owner of the voice session.

    Construct it with the four collaborators, call start_session() and feed
    device events into SpeechInput/SpeechOutput/VisionCapture. Everything
    else (state, stop token, travel mode, memory) lives here.
    """

    def __init__(
        self,
        speech_input: SpeechInput,
        speech_output: SpeechOutput,
        vision: VisionCapture,
        analysis,
        interpreter: Optional[CommandInterpreter] = None,
        config: Optional[CoordinatorConfig] = None,
        memory: Optional[ConversationMemory] = None,
        on_state_change: Optional[Callable[[CoordinatorState, str], None]] = None,
        on_narration: Optional[Callable[[NarrationRequest, str], None]] = None,
    ):
        self.config = config or CoordinatorConfig()
        self.speech_input = speech_input
        self.speech_output = speech_output
        self.vision = vision
        self.analysis = analysis
        self.interpreter = interpreter or CommandInterpreter()
        self.memory = memory or ConversationMemory(max_exchanges=self.config.memory_size)
        self.on_state_change = on_state_change
        self.on_narration = on_narration

        speech_input.on_utterance = self.handle_utterance
        speech_input.on_speech_started = self.handle_speech_started
        speech_input.on_fatal = self._on_input_fatal

        self.state = CoordinatorState.IDLE
        self.stop_token = StopToken()
        self.transitions: deque[Transition] = deque(maxlen=self.config.transition_history)
        self.current_request: Optional[NarrationRequest] = None
        self.last_result: Optional[str] = None

        self.travel = TravelModeScheduler(
            on_trigger=self._auto_narrate,
            is_ready=self._ready_for_travel,
            grace_period=self.config.grace_period,
            continue_delay=self.config.continue_delay,
            backup_interval=self.config.backup_interval,
        )

        self._request_task: Optional[asyncio.Task] = None
        self._settle_handle: Optional[asyncio.TimerHandle] = None
        self._paused_handle: Optional[asyncio.TimerHandle] = None

    @property
    def travel_mode(self) -> bool:
        return self.travel.enabled

    def half_duplex_ok(self) -> bool:
        """Microphone capture and speech output are not both active."""
        return not (self.speech_input.listening and self.speech_output.active)

    # ========================================================================
    # SESSION CONTROL
    # ========================================================================

    def start_session(self):
        """Idle -> Listening. Attaches camera and microphone."""
        if self.state is not CoordinatorState.IDLE:
            logger.info("Session already running")
            return

        self.stop_token.clear()
        self.stop_token.advance()
        self.memory.clear()
        self.last_result = None
        self.vision.attach()

        self._transition(CoordinatorState.LISTENING, "session started")
        self.speech_input.start()
        logger.info("🎙️ Voice session started")

        if self.config.greeting:
            self._speak([self.config.greeting], reason="greeting")

    def stop_session(self, reason: str = "stop"):
        """
        Any state -> Idle. Asserts the stop token, cancels all output and
        releases camera and microphone.
        """
        if self.state is CoordinatorState.IDLE:
            return

        self.stop_token.assert_stop()
        self.travel.disable()
        self._cancel_timers()
        self.speech_output.cancel_all()
        self.speech_input.stop()
        self.vision.release()
        self.current_request = None
        self.memory.clear()

        self._transition(CoordinatorState.IDLE, reason)
        logger.info(f"⏹ Voice session stopped ({reason})")

    async def shutdown(self):
        """App-level teardown: stop the session and wait out the request runner."""
        self.stop_session("shutdown")
        task = self._request_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ========================================================================
    # INPUT EVENTS
    # ========================================================================

    def handle_speech_started(self):
        """The user began talking (before any result is final)."""
        if self.state is CoordinatorState.IDLE:
            return

        self.travel.note_user_input()

        if self.state is CoordinatorState.SPEAKING:
            if self.speech_output.active and not self.speech_output.interruptible:
                logger.debug("Ignoring speech over non-interruptible output")
                return
            logger.info("✋ Barge-in, cutting speech")
            self._enter_paused("barge-in")
        elif self.state is CoordinatorState.PROCESSING:
            logger.info("✋ User talking, abandoning current request")
            self._enter_paused("user speech during processing")
        elif self.state is CoordinatorState.PAUSED:
            self._arm_paused_timeout()

    def handle_utterance(self, text: str):
        """A finalized utterance from SpeechInput."""
        if self.state is CoordinatorState.IDLE:
            return

        self.travel.note_user_input()
        self._cancel_paused_timeout()

        intent = self.interpreter.classify(text)
        if intent is None:
            if self.state is CoordinatorState.PAUSED:
                self._transition(CoordinatorState.LISTENING, "empty utterance")
            return

        logger.info(f"🎤 '{text}' -> {intent.kind.value}")

        if intent.kind is IntentKind.STOP:
            self.stop_session("stop command")
            return

        # A finalized utterance always wins over whatever is still playing
        # or in flight
        self._cancel_timers()
        self.travel.cancel_pending()
        self.stop_token.advance()
        self.current_request = None
        self.speech_output.cancel_all()
        self.speech_input.pause()
        self._transition(CoordinatorState.PROCESSING, f"intent {intent.kind.value}")
        self._dispatch(intent)

    def request_narration(
        self,
        prompt: str,
        silent: bool = False,
        quick: bool = False,
        question: Optional[str] = None,
    ) -> Optional[NarrationRequest]:
        """
        Issue a narration on behalf of the app (e.g. a describe button).

        Silent requests are analyzed and remembered but not spoken.
        """
        if self.state is CoordinatorState.IDLE:
            logger.warning("Narration requested with no active session")
            return None
        self.speech_input.pause()
        return self._issue(
            prompts.enhance_instruction(prompt, question),
            reason="narration requested",
            silent=silent,
            quick=quick,
            source_question=question,
        )

    def _on_input_fatal(self, error: str):
        """Microphone is gone: say so once, then end the session."""
        if self.state is CoordinatorState.IDLE:
            return
        logger.error(f"❌ Speech input failed permanently: {error}")
        self.travel.disable()
        self._cancel_timers()
        self.stop_token.advance()
        self.current_request = None
        self._speak(
            [prompts.MICROPHONE_UNAVAILABLE],
            reason=f"input failure ({error})",
            interruptible=False,
            on_done=lambda: self.stop_session("microphone unavailable"),
        )

    # ========================================================================
    # INTENT DISPATCH
    # ========================================================================

    def _dispatch(self, intent: Intent):
        kind = intent.kind

        if kind is IntentKind.STOP_NAVIGATION:
            if not self.travel.enabled:
                logger.info("🧭 Travel mode not active, nothing to stop")
                self._resume_listening(self.stop_token.generation, "navigation not active")
                return
            self.travel.disable()
            self._speak([prompts.NAVIGATION_STOPPED], reason="navigation stopped")

        elif kind is IntentKind.START_NAVIGATION:
            self._start_navigation()

        elif kind in _SCENE_INSTRUCTIONS:
            question = intent.utterance if kind is not IntentKind.DESCRIBE_SCENE else None
            self._issue(
                self._instruction(_SCENE_INSTRUCTIONS[kind], intent.utterance),
                reason=kind.value,
                quick=kind in _QUICK_INTENTS,
                purpose=kind,
                source_question=question,
            )

        elif kind in prompts.QUESTION_INSTRUCTIONS:
            self._issue(
                self._instruction(prompts.QUESTION_INSTRUCTIONS[kind], intent.utterance),
                reason=kind.value,
                purpose=kind,
                source_question=intent.utterance,
            )

        elif kind is IntentKind.READ_TEXT:
            self._guided_capture(prompts.READ_TEXT_HINT, prompts.READ_TEXT_INSTRUCTION, intent)

        elif kind is IntentKind.SCAN_BARCODE:
            self._guided_capture(prompts.BARCODE_HINT, prompts.BARCODE_INSTRUCTION, intent)

        elif kind is IntentKind.LOCATE_OBJECT:
            self._guided_capture(
                prompts.locate_hint(intent.argument),
                prompts.locate_instruction(intent.argument),
                intent,
            )

        else:
            self._issue(
                intent.utterance,
                reason="general question",
                purpose=IntentKind.GENERAL_QUESTION,
                source_question=intent.utterance,
                needs_frame=False,
            )

    def _instruction(self, base: str, question: str) -> str:
        context = None
        if self.memory.is_follow_up(question):
            context = self.memory.get_context() or None
        return prompts.enhance_instruction(base, question, context)

    def _start_navigation(self):
        if self.travel.enabled:
            self._speak([prompts.NAVIGATION_ALREADY_ACTIVE], reason="navigation already active")
            return
        if not self.vision.ready:
            self._speak([prompts.CAMERA_NOT_READY], reason="camera not ready")
            return

        self.travel.enable()
        self._speak(
            [prompts.NAVIGATION_ACTIVATED],
            reason="navigation activated",
            on_done=self._auto_narrate,
        )

    def _guided_capture(self, hint: str, instruction: str, intent: Intent):
        """Speak a positioning hint, then capture after positioning_delay."""
        def capture():
            self._issue(
                instruction,
                reason=f"{intent.kind.value} capture",
                purpose=intent.kind,
                argument=intent.argument,
                source_question=intent.utterance,
                lead_in=self.config.positioning_delay,
            )

        self._speak([hint], reason=f"{intent.kind.value} hint", on_done=capture)

    def _auto_narrate(self):
        self._issue(
            prompts.TRAVEL_INSTRUCTION,
            reason="travel narration",
            quick=True,
            travel=True,
        )

    def _ready_for_travel(self) -> bool:
        if self.stop_token.asserted or self.state is CoordinatorState.IDLE:
            return False
        if self.current_request is not None or self.speech_output.active:
            return False
        if self.state is CoordinatorState.LISTENING:
            return True
        # Settling after the last item
        return self.state is CoordinatorState.SPEAKING and self._settle_handle is not None

    # ========================================================================
    # REQUEST PIPELINE
    # ========================================================================

    def _issue(self, prompt: str, reason: str, **fields) -> Optional[NarrationRequest]:
        """Make a new request current, superseding whatever came before."""
        if self.stop_token.asserted:
            logger.info("Stop asserted, not issuing request")
            return None

        self._cancel_timers()
        self.travel.cancel_pending()
        generation = self.stop_token.advance()
        self.speech_output.cancel_all()
        self.speech_input.pause()

        request = NarrationRequest(prompt=prompt, generation=generation, **fields)
        self.current_request = request
        if request.travel:
            self.travel.note_triggered()

        self._transition(CoordinatorState.PROCESSING, reason)
        self._request_task = asyncio.get_running_loop().create_task(self._run_request(request))
        return request

    async def _run_request(self, request: NarrationRequest):
        try:
            if request.lead_in > 0:
                await asyncio.sleep(request.lead_in)
                if not self.stop_token.is_current(request.generation):
                    return

            if request.needs_frame:
                frame = await self._capture(request)
                if frame is None:
                    return
            else:
                frame = self.vision.capture_frame()

            items = await self._resolve(request, frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Request '{request.purpose.value}' failed: {e}", exc_info=True)
            if self.stop_token.is_current(request.generation):
                self._deliver_failure(request, prompts.ANALYSIS_FAILED
                                      if request.purpose is not IntentKind.GENERAL_QUESTION
                                      else prompts.QUESTION_FAILED)
            return

        if items is None or not self.stop_token.is_current(request.generation):
            logger.info(f"🗑️ Discarding stale result for generation {request.generation}")
            return

        self._deliver(request, items, frame)

    async def _capture(self, request: NarrationRequest) -> Optional[Frame]:
        """Grab a frame, retrying once before giving up with an advisory."""
        frame = self.vision.capture_frame()
        if frame is not None:
            return frame

        logger.warning("⚠️ Camera not ready, retrying capture")
        await asyncio.sleep(self.config.capture_retry_delay)
        if not self.stop_token.is_current(request.generation):
            return None

        frame = self.vision.capture_frame()
        if frame is None:
            logger.warning("⚠️ Capture failed twice, abandoning request")
            self._deliver_failure(request, prompts.CAPTURE_FAILED)
        return frame

    async def _call_backend(self, coro):
        """
        Await an analysis call with a timeout, without cancelling it.

        A timed-out call keeps running; its result is dropped when it lands.
        """
        task = asyncio.ensure_future(coro)
        done, _ = await asyncio.wait({task}, timeout=self.config.analysis_timeout)
        if not done:
            task.add_done_callback(_drop_result)
            raise asyncio.TimeoutError(f"analysis timed out after {self.config.analysis_timeout}s")
        return task.result()

    async def _resolve(self, request: NarrationRequest, frame: Optional[Frame]) -> Optional[List[str]]:
        """Run the backend call(s) for a request and turn the result into spoken items."""
        purpose = request.purpose

        if purpose is IntentKind.GENERAL_QUESTION:
            text = await self._call_backend(self.analysis.answer(request.prompt, frame))
            self._remember(request, text, frame)
            return split_narration_items(text)

        if purpose is IntentKind.SCAN_BARCODE:
            return await self._scan_barcode(request, frame)

        text = await self._call_backend(self.analysis.analyze(frame, request.prompt))
        self._remember(request, text, frame)

        if purpose is IntentKind.READ_TEXT:
            if not text.strip() or "NO_TEXT" in text:
                return [prompts.NO_TEXT_FOUND]
            return [f"{prompts.READ_TEXT_PREFIX} {text.strip()}"]

        if purpose is IntentKind.LOCATE_OBJECT:
            if "NOT_FOUND" in text:
                return [prompts.object_not_found(request.argument)]
            return [prompts.object_found(request.argument, text.strip())]

        return split_narration_items(text)

    async def _scan_barcode(self, request: NarrationRequest, frame: Frame) -> Optional[List[str]]:
        first = await self._call_backend(self.analysis.analyze(frame, request.prompt, redact=False))
        if "NO_BARCODE" in first:
            return [prompts.NO_BARCODE_FOUND]

        match = _BARCODE_DIGITS.search(first)
        if not match:
            return [prompts.BARCODE_UNREADABLE]
        barcode = match.group(0)
        logger.info(f"🏷️ Barcode {barcode}")

        if not self.stop_token.is_current(request.generation):
            return None

        product = await self._call_backend(
            self.analysis.analyze(frame, prompts.product_instruction(barcode))
        )
        result = f"Barcode: {barcode}. {product.strip()}"
        self._remember(request, result, frame)
        return [result]

    def _remember(self, request: NarrationRequest, text: str, frame: Optional[Frame]):
        if not self.stop_token.is_current(request.generation):
            return
        if request.source_question:
            self.memory.add_exchange(request.source_question, text, frame.ref if frame else None)
        else:
            self.memory.set_scene_summary(text)

    def _deliver(self, request: NarrationRequest, items: List[str], frame: Optional[Frame]):
        self.current_request = None
        text = " ".join(items)
        self.last_result = text
        if self.on_narration:
            try:
                self.on_narration(request, text)
            except Exception as e:
                logger.error(f"❌ Narration callback failed: {e}", exc_info=True)

        if request.silent:
            logger.info("🤫 Silent request finished, not speaking")
            self._resume_listening(request.generation, "silent result")
            return

        chain = request.travel or (request.quick and self.travel.enabled)
        self._speak(
            items,
            reason=f"{request.purpose.value} result",
            on_done=self.travel.sequence_finished if chain else None,
        )

    def _deliver_failure(self, request: NarrationRequest, message: str):
        self.current_request = None
        if request.silent:
            self._resume_listening(request.generation, "silent failure")
            return
        self._speak([message], reason="request failed")

    # ========================================================================
    # SPEECH AND RESUME
    # ========================================================================

    def _speak(
        self,
        items: List[str],
        reason: str,
        on_done: Optional[Callable[[], None]] = None,
        interruptible: bool = True,
    ):
        """Pause input, then speak. on_done runs only if the sequence completes."""
        if self.stop_token.asserted:
            logger.info("Stop asserted, not speaking")
            return

        self._cancel_timers()
        self.speech_input.pause()
        self._transition(CoordinatorState.SPEAKING, reason)

        generation = self.stop_token.generation
        self.speech_output.speak(
            items,
            interruptible=interruptible,
            on_complete=lambda: self._on_sequence_complete(generation, on_done),
        )

    def _on_sequence_complete(self, generation: int, on_done: Optional[Callable[[], None]]):
        if not self.stop_token.is_current(generation):
            return

        if on_done:
            on_done()

        # on_done may have moved on (new request, new speech, stop)
        if self.state is CoordinatorState.SPEAKING and not self.speech_output.active:
            current = self.stop_token.generation
            self._settle_handle = asyncio.get_running_loop().call_later(
                self.config.settle_delay, self._resume_listening, current, "speech finished"
            )

    def _resume_listening(self, generation: int, reason: str):
        self._settle_handle = None
        if not self.stop_token.is_current(generation):
            return
        if self.speech_output.active:
            return
        self._transition(CoordinatorState.LISTENING, reason)
        self.speech_input.resume()

    # ========================================================================
    # BARGE-IN
    # ========================================================================

    def _enter_paused(self, reason: str):
        self._cancel_timers()
        self.travel.cancel_pending()
        self.stop_token.advance()
        self.current_request = None
        self.speech_output.cancel_all()
        self._transition(CoordinatorState.PAUSED, reason)
        # Listen for the rest of the user's utterance
        self.speech_input.resume()
        self._arm_paused_timeout()

    def _arm_paused_timeout(self):
        self._cancel_paused_timeout()
        self._paused_handle = asyncio.get_running_loop().call_later(
            self.config.paused_timeout, self._paused_expired, self.stop_token.generation
        )

    def _paused_expired(self, generation: int):
        self._paused_handle = None
        if self.state is not CoordinatorState.PAUSED:
            return
        if not self.stop_token.is_current(generation):
            return
        self._transition(CoordinatorState.LISTENING, "no utterance after barge-in")

    def _cancel_paused_timeout(self):
        if self._paused_handle is not None:
            self._paused_handle.cancel()
            self._paused_handle = None

    def _cancel_timers(self):
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        self._cancel_paused_timeout()

    # ========================================================================
    # STATE MACHINE
    # ========================================================================

    def _transition(self, new_state: CoordinatorState, reason: str):
        previous = self.state
        if new_state is previous:
            return

        if new_state is not CoordinatorState.IDLE and new_state not in _ALLOWED_TRANSITIONS[previous]:
            logger.warning(f"⚠️ Unexpected transition {previous.value} -> {new_state.value} ({reason})")

        self.state = new_state
        duplex = self.half_duplex_ok()
        if not duplex:
            logger.error("❌ Half-duplex violated: listening while speaking")
        self.transitions.append(Transition(
            previous=previous,
            current=new_state,
            reason=reason,
            timestamp=time.time(),
            half_duplex=duplex,
        ))
        logger.info(f"🔁 {previous.value} -> {new_state.value} ({reason})")

        if self.on_state_change:
            try:
                self.on_state_change(new_state, reason)
            except Exception as e:
                logger.error(f"❌ State change callback failed: {e}", exc_info=True)


def _drop_result(task: asyncio.Task):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.info(f"Late analysis call failed after timeout: {error}")
    else:
        logger.info("Late analysis result dropped")


def build_coordinator(
    recognition_engine: RecognitionEngine,
    synthesis_engine: SynthesisEngine,
    analysis,
    vision: Optional[VisionCapture] = None,
    config: Optional[CoordinatorConfig] = None,
    on_state_change: Optional[Callable[[CoordinatorState, str], None]] = None,
    on_narration: Optional[Callable[[NarrationRequest, str], None]] = None,
) -> NarrationCoordinator:
    """
    Wire a coordinator to device engines using one config.

    Args:
        recognition_engine: Device speech recognizer
        synthesis_engine: Device speech synthesizer
        analysis: Object with async analyze(frame, instruction) and answer(question, frame)
        vision: Camera frame cache (created if omitted)
        config: Timing and voice settings

    Returns:
        A coordinator in the IDLE state
    """
    config = config or CoordinatorConfig()

    speech_input = SpeechInput(
        recognition_engine,
        restart_delay=config.restart_delay,
        end_restart_delay=config.end_restart_delay,
        max_consecutive_failures=config.max_consecutive_failures,
    )
    speech_output = SpeechOutput(
        synthesis_engine,
        voice=VoiceSettings(
            rate=config.voice_rate,
            pitch=config.voice_pitch,
            volume=config.voice_volume,
        ),
        inter_item_pause=config.inter_item_pause,
        item_timeout=config.item_timeout,
    )

    return NarrationCoordinator(
        speech_input,
        speech_output,
        vision or VisionCapture(max_frame_age=config.max_frame_age),
        analysis,
        config=config,
        on_state_change=on_state_change,
        on_narration=on_narration,
    )
