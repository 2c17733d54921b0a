"""
Shared fakes for the narrator tests: device engines, an analysis backend and
tiny timing constants so scenarios run on the real event loop in milliseconds.
"""

import asyncio
import base64
import io
from collections import deque

import pytest
from PIL import Image

from coordinator import CoordinatorConfig, build_coordinator
from speech_input import RecognitionEngine
from speech_output import SynthesisEngine


def create_test_image(color=(100, 150, 200)) -> str:
    """Create a simple test image as base64."""
    img = Image.new('RGB', (64, 48), color=color)
    buffer = io.BytesIO()
    img.save(buffer, format='JPEG')
    return base64.b64encode(buffer.getvalue()).decode()


class FakeRecognitionEngine(RecognitionEngine):
    def __init__(self):
        super().__init__()
        self.begins = 0
        self.ends = 0
        self.fail_begin = False

    def begin(self):
        if self.fail_begin:
            raise RuntimeError("recognizer busy")
        self.begins += 1

    def end(self):
        self.ends += 1


class FakeSynthesisEngine(SynthesisEngine):
    """
    Records utterances. With auto_finish it reports 'end' after `duration`,
    otherwise tests call finish()/fail() themselves.
    """

    def __init__(self, auto_finish=True, duration=0.005):
        super().__init__()
        self.auto_finish = auto_finish
        self.duration = duration
        self.spoken = []          # (utterance_id, text)
        self.cancels = 0
        self.active_id = None
        self.probe = None         # called on every utter, result kept in probes
        self.probes = []

    @property
    def texts(self):
        return [text for _, text in self.spoken]

    def utter(self, utterance_id, text, voice):
        self.spoken.append((utterance_id, text))
        self.active_id = utterance_id
        if self.probe is not None:
            self.probes.append(self.probe())
        if self.auto_finish:
            asyncio.get_running_loop().call_later(self.duration, self.finish, utterance_id)

    def cancel(self):
        self.cancels += 1
        self.active_id = None

    def finish(self, utterance_id=None):
        utterance_id = utterance_id if utterance_id is not None else self.active_id
        if utterance_id is None:
            return
        if utterance_id == self.active_id:
            self.active_id = None
        self.listener.handle_utterance_end(utterance_id)

    def fail(self, error="synthesis-failed"):
        utterance_id = self.active_id
        self.active_id = None
        self.listener.handle_utterance_error(utterance_id, error)


class FakeAnalysisClient:
    """
    Scripted analysis backend.

    Responses queued with queue() are used first, in call order; after that
    every call gets `text` / `answer_text` (or raises `error`) after `delay`.
    """

    def __init__(self, text="1. Door ahead. 2. Person on left.", answer_text="It is a sunny day.",
                 delay=0.0, error=None):
        self.text = text
        self.answer_text = answer_text
        self.delay = delay
        self.error = error
        self.responses = deque()
        self.calls = []

    def queue(self, result, delay=0.0):
        self.responses.append((delay, result))

    @property
    def instructions(self):
        return [call[1] for call in self.calls if call[0] == "analyze"]

    async def analyze(self, frame, instruction, redact=True):
        self.calls.append(("analyze", instruction, frame))
        return await self._respond(self.text)

    async def answer(self, question, frame=None):
        self.calls.append(("answer", question, frame))
        return await self._respond(self.answer_text)

    async def _respond(self, default):
        if self.responses:
            delay, result = self.responses.popleft()
        else:
            delay, result = self.delay, (self.error or default)
        if delay:
            await asyncio.sleep(delay)
        if isinstance(result, Exception):
            raise result
        return result


async def wait_until(predicate, timeout=1.0, interval=0.002):
    """Poll until predicate() is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def test_image():
    return create_test_image()


@pytest.fixture
def fast_config():
    return CoordinatorConfig(
        settle_delay=0.02,
        inter_item_pause=0.005,
        item_timeout=1.0,
        grace_period=0.05,
        continue_delay=0.03,
        backup_interval=5.0,
        analysis_timeout=0.5,
        capture_retry_delay=0.01,
        positioning_delay=0.01,
        paused_timeout=0.2,
        restart_delay=0.01,
        end_restart_delay=0.01,
        greeting=None,
    )


@pytest.fixture
def recognizer():
    return FakeRecognitionEngine()


@pytest.fixture
def synthesizer():
    return FakeSynthesisEngine()


@pytest.fixture
def analysis():
    return FakeAnalysisClient()


@pytest.fixture
def coordinator(recognizer, synthesizer, analysis, fast_config):
    coordinator = build_coordinator(recognizer, synthesizer, analysis, config=fast_config)
    synthesizer.probe = coordinator.half_duplex_ok
    return coordinator


@pytest.fixture
async def session(coordinator, test_image):
    """A running session with a fresh camera frame."""
    coordinator.start_session()
    coordinator.vision.update_frame(test_image)
    yield coordinator
    await coordinator.shutdown()
