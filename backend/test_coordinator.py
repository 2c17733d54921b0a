import asyncio

import prompts
from analysis_client import AnalysisError
from conftest import FakeSynthesisEngine, wait_until
from coordinator import CoordinatorConfig, build_coordinator
from narration import CoordinatorState

IDLE = CoordinatorState.IDLE
LISTENING = CoordinatorState.LISTENING
PROCESSING = CoordinatorState.PROCESSING
SPEAKING = CoordinatorState.SPEAKING
PAUSED = CoordinatorState.PAUSED


def say(coordinator, text):
    """The device recognized a full utterance."""
    coordinator.speech_input.handle_result(text, True)


def states(coordinator):
    return [t.current for t in coordinator.transitions]


async def settle(coordinator, timeout=1.0):
    """Wait until the coordinator is back to listening with nothing playing."""
    await wait_until(
        lambda: coordinator.state is LISTENING and not coordinator.speech_output.active,
        timeout=timeout,
    )


def assert_half_duplex(coordinator, synthesizer):
    assert all(t.half_duplex for t in coordinator.transitions)
    assert all(synthesizer.probes)


# ============================================================================
# SESSION LIFECYCLE
# ============================================================================

async def test_start_session_listens_and_attaches_camera(coordinator, recognizer):
    coordinator.start_session()

    assert coordinator.state is LISTENING
    assert coordinator.speech_input.listening
    assert coordinator.vision.attached
    assert recognizer.begins == 1

    coordinator.start_session()
    assert recognizer.begins == 1
    await coordinator.shutdown()


async def test_greeting_is_spoken_before_listening(recognizer, synthesizer, analysis, fast_config):
    fast_config.greeting = "Hello, I am listening."
    coordinator = build_coordinator(recognizer, synthesizer, analysis, config=fast_config)

    coordinator.start_session()
    assert coordinator.state is SPEAKING
    assert not coordinator.speech_input.listening

    await settle(coordinator)
    assert synthesizer.texts == ["Hello, I am listening."]
    assert states(coordinator) == [LISTENING, SPEAKING, LISTENING]
    await coordinator.shutdown()


async def test_stop_session_releases_everything(session, recognizer):
    session.stop_session()

    assert session.state is IDLE
    assert session.stop_token.asserted
    assert not session.vision.attached
    assert not session.speech_input.session_active
    assert recognizer.ends == 1


# ============================================================================
# NARRATION
# ============================================================================

async def test_describe_scene_speaks_each_item_then_listens(session, synthesizer, analysis):
    say(session, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    await settle(session)

    assert synthesizer.texts == ["Door ahead.", "Person on left."]
    assert analysis.instructions[0].startswith(prompts.SCENE_INSTRUCTION)
    assert states(session) == [LISTENING, PROCESSING, SPEAKING, LISTENING]
    assert session.speech_input.listening
    assert_half_duplex(session, synthesizer)


async def test_newer_request_wins_over_older_in_flight(session, synthesizer, analysis):
    analysis.queue("1. Old result.", delay=0.1)
    analysis.queue("1. New result.", delay=0.01)

    session.request_narration("describe the room")
    session.request_narration("describe the room again")
    await wait_until(lambda: synthesizer.spoken)
    await settle(session)
    await asyncio.sleep(0.15)

    assert synthesizer.texts == ["New result."]
    assert session.state is LISTENING


async def test_result_discarded_when_user_talks_during_processing(session, synthesizer, analysis):
    analysis.delay = 0.05
    say(session, "what do you see")
    await wait_until(lambda: session.state is PROCESSING)

    session.speech_input.handle_speech_start()
    assert session.state is PAUSED
    assert session.speech_input.listening
    await asyncio.sleep(0.1)

    assert synthesizer.spoken == []
    # No utterance followed, so the coordinator goes back to listening
    await wait_until(lambda: session.state is LISTENING, timeout=0.5)


async def test_silent_request_is_remembered_not_spoken(session, synthesizer, analysis):
    narrations = []
    session.on_narration = lambda request, text: narrations.append((request.silent, text))

    session.request_narration("what is on the table", silent=True)
    await wait_until(lambda: narrations)
    await settle(session)

    assert synthesizer.spoken == []
    assert narrations == [(True, "Door ahead. Person on left.")]
    assert session.memory.scene_summary == "1. Door ahead. 2. Person on left."


async def test_follow_up_question_carries_memory_context(session, synthesizer, analysis):
    say(session, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    await settle(session)

    analysis.text = "The door is straight ahead, 10 feet away."
    say(session, "where is the door")
    await wait_until(lambda: len(analysis.calls) == 2)
    await settle(session)

    instruction = analysis.instructions[1]
    assert "Previous context" in instruction
    assert "Door ahead." in instruction
    assert "Focus on location" in instruction
    assert synthesizer.texts[-1] == "The door is straight ahead, 10 feet away."
    assert session.memory.last_exchange.question == "where is the door"


async def test_general_question_answered_without_camera(coordinator, synthesizer, analysis):
    coordinator.start_session()

    say(coordinator, "tell me a joke")
    await wait_until(lambda: synthesizer.spoken)
    await settle(coordinator)

    assert analysis.calls == [("answer", "tell me a joke", None)]
    assert synthesizer.texts == ["It is a sunny day."]
    await coordinator.shutdown()


# ============================================================================
# STOP AND BARGE-IN
# ============================================================================

async def test_stop_mid_speech_cancels_remaining_items(recognizer, analysis, fast_config, test_image):
    synthesizer = FakeSynthesisEngine(auto_finish=False)
    coordinator = build_coordinator(recognizer, synthesizer, analysis, config=fast_config)
    coordinator.start_session()
    coordinator.vision.update_frame(test_image)
    analysis.text = "1. Door ahead. 2. Person on left. 3. Stairs going down."

    say(coordinator, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    first_id = synthesizer.spoken[0][0]

    # User talks over the narration, then says "stop"
    coordinator.speech_input.handle_speech_start()
    assert coordinator.state is PAUSED
    assert not coordinator.speech_output.active
    say(coordinator, "stop")

    assert coordinator.state is IDLE
    assert synthesizer.cancels >= 1
    coordinator.speech_output.handle_utterance_end(first_id)
    await asyncio.sleep(0.05)

    assert synthesizer.texts == ["Door ahead."]
    assert states(coordinator)[-2:] == [PAUSED, IDLE]
    await coordinator.shutdown()


async def test_stop_heard_as_one_final_result_mid_speech(recognizer, analysis, fast_config, test_image):
    synthesizer = FakeSynthesisEngine(auto_finish=False)
    coordinator = build_coordinator(recognizer, synthesizer, analysis, config=fast_config)
    coordinator.start_session()
    coordinator.vision.update_frame(test_image)
    analysis.text = "1. Door ahead. 2. Person on left. 3. Stairs going down."

    say(coordinator, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    assert coordinator.state is SPEAKING

    # No speech-start or interim result before the final one
    say(coordinator, "stop")

    assert coordinator.state is IDLE
    assert synthesizer.cancels >= 1
    await asyncio.sleep(0.05)
    assert synthesizer.texts == ["Door ahead."]
    await coordinator.shutdown()


async def test_stop_heard_mid_speech_in_travel_mode_stays_stopped(session, synthesizer, analysis):
    synthesizer.duration = 0.05
    say(session, "I am walking")
    await wait_until(lambda: len(synthesizer.spoken) >= 2, timeout=2.0)

    say(session, "stop")
    spoken = len(synthesizer.spoken)
    await asyncio.sleep(0.3)

    assert session.state is IDLE
    assert not session.travel_mode
    assert len(synthesizer.spoken) == spoken


async def test_command_heard_during_processing_replaces_request(session, synthesizer, analysis):
    analysis.queue("1. Old scene.", delay=0.05)
    say(session, "what do you see")
    await wait_until(lambda: analysis.calls)

    say(session, "tell me a joke")
    await wait_until(lambda: synthesizer.spoken)
    await settle(session)
    await asyncio.sleep(0.08)

    assert synthesizer.texts == ["It is a sunny day."]


async def test_stop_while_analysis_in_flight_speaks_nothing(session, synthesizer, analysis):
    analysis.delay = 0.05
    say(session, "what do you see")
    await wait_until(lambda: analysis.calls)

    session.handle_utterance("stop")
    await asyncio.sleep(0.1)

    assert session.state is IDLE
    assert synthesizer.spoken == []


async def test_non_interruptible_speech_ignores_barge_in(session, synthesizer):
    session.speech_input.handle_error("not-allowed")
    await wait_until(lambda: synthesizer.spoken)

    session.handle_speech_started()
    assert session.state is SPEAKING

    await wait_until(lambda: session.state is IDLE)
    assert synthesizer.texts == [prompts.MICROPHONE_UNAVAILABLE]


async def test_barge_in_then_new_command(session, synthesizer, analysis):
    analysis.queue("1. Car parked. 2. Tree on right. 3. Bench ahead.")
    synthesizer.duration = 0.03

    say(session, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    session.speech_input.handle_speech_start()
    say(session, "how many people are here")
    await wait_until(lambda: len(analysis.calls) == 2)
    await settle(session)

    assert synthesizer.texts == ["Car parked.", "Door ahead.", "Person on left."]
    assert PAUSED in states(session)
    assert_half_duplex(session, synthesizer)


# ============================================================================
# FAILURES
# ============================================================================

async def test_analysis_failure_speaks_one_fallback(session, synthesizer, analysis):
    analysis.error = AnalysisError("backend down")

    say(session, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    await settle(session)

    assert synthesizer.texts == [prompts.ANALYSIS_FAILED]
    assert session.state is LISTENING


async def test_analysis_timeout_speaks_one_fallback(recognizer, synthesizer, analysis, fast_config, test_image):
    fast_config.analysis_timeout = 0.02
    coordinator = build_coordinator(recognizer, synthesizer, analysis, config=fast_config)
    coordinator.start_session()
    coordinator.vision.update_frame(test_image)
    analysis.delay = 0.1

    say(coordinator, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    await settle(coordinator)
    await asyncio.sleep(0.12)

    assert synthesizer.texts == [prompts.ANALYSIS_FAILED]
    assert coordinator.state is LISTENING
    await coordinator.shutdown()


async def test_question_failure_uses_question_fallback(coordinator, synthesizer, analysis):
    coordinator.start_session()
    analysis.error = AnalysisError("quota")

    say(coordinator, "tell me a joke")
    await wait_until(lambda: synthesizer.spoken)
    await settle(coordinator)

    assert synthesizer.texts == [prompts.QUESTION_FAILED]
    await coordinator.shutdown()


async def test_capture_failure_retries_then_advises(coordinator, synthesizer, analysis):
    coordinator.start_session()

    say(coordinator, "what do you see")
    await wait_until(lambda: synthesizer.spoken)
    await settle(coordinator)

    assert synthesizer.texts == [prompts.CAPTURE_FAILED]
    assert analysis.calls == []
    await coordinator.shutdown()


async def test_capture_retry_succeeds_silently(recognizer, synthesizer, analysis, fast_config, test_image):
    fast_config.capture_retry_delay = 0.05
    coordinator = build_coordinator(recognizer, synthesizer, analysis, config=fast_config)
    coordinator.start_session()

    say(coordinator, "what do you see")
    await asyncio.sleep(0.01)
    coordinator.vision.update_frame(test_image)
    await wait_until(lambda: synthesizer.spoken)
    await settle(coordinator)

    assert synthesizer.texts == ["Door ahead.", "Person on left."]
    await coordinator.shutdown()


async def test_fatal_microphone_error_ends_session(session, synthesizer):
    session.speech_input.handle_error("not-allowed")
    await wait_until(lambda: session.state is IDLE)

    assert synthesizer.texts == [prompts.MICROPHONE_UNAVAILABLE]
    assert not session.vision.attached


async def test_transient_microphone_error_keeps_session(session, recognizer):
    session.speech_input.handle_error("no-speech")
    await wait_until(lambda: recognizer.begins == 2)

    assert session.state is LISTENING


# ============================================================================
# TRAVEL MODE
# ============================================================================

async def test_travel_mode_chains_narrations(session, synthesizer, analysis):
    say(session, "I am walking")
    await wait_until(lambda: len(analysis.calls) >= 2, timeout=2.0)

    assert session.travel_mode
    assert synthesizer.texts[0] == prompts.NAVIGATION_ACTIVATED
    assert analysis.instructions[:2] == [prompts.TRAVEL_INSTRUCTION, prompts.TRAVEL_INSTRUCTION]
    assert_half_duplex(session, synthesizer)


async def test_travel_mode_waits_when_user_speaks(session, synthesizer, analysis):
    say(session, "I am walking")
    await wait_until(lambda: session.travel.pending, timeout=2.0)

    session.speech_input.handle_speech_start()
    assert not session.travel.pending
    await asyncio.sleep(0.15)

    assert len(analysis.calls) == 1
    assert session.travel_mode


async def test_travel_mode_survives_a_failed_narration(session, synthesizer, analysis):
    analysis.queue(AnalysisError("hiccup"))

    say(session, "guide me")
    await wait_until(lambda: prompts.ANALYSIS_FAILED in synthesizer.texts)
    await settle(session)

    assert session.travel_mode


async def test_stop_walking_disables_travel_but_keeps_listening(session, synthesizer, analysis):
    say(session, "I am walking")
    await wait_until(lambda: session.travel.pending, timeout=2.0)

    session.speech_input.handle_speech_start()
    say(session, "stop walking")
    await wait_until(lambda: prompts.NAVIGATION_STOPPED in synthesizer.texts)
    await settle(session)
    calls = len(analysis.calls)
    await asyncio.sleep(0.15)

    assert not session.travel_mode
    assert session.state is LISTENING
    assert len(analysis.calls) == calls


async def test_stop_walking_without_travel_mode_says_nothing(session, synthesizer, analysis):
    say(session, "stop walking")
    await settle(session)

    assert synthesizer.spoken == []
    assert analysis.calls == []
    assert states(session) == [LISTENING, PROCESSING, LISTENING]
    assert session.speech_input.listening


async def test_navigation_refused_without_camera(coordinator, synthesizer):
    coordinator.start_session()

    say(coordinator, "I am walking")
    await settle(coordinator)

    assert synthesizer.texts == [prompts.CAMERA_NOT_READY]
    assert not coordinator.travel_mode
    await coordinator.shutdown()


async def test_navigation_already_active(session, synthesizer):
    say(session, "I am walking")
    await wait_until(lambda: session.travel.pending, timeout=2.0)

    session.speech_input.handle_speech_start()
    say(session, "walk with me")
    await wait_until(lambda: prompts.NAVIGATION_ALREADY_ACTIVE in synthesizer.texts)


# ============================================================================
# GUIDED CAPTURE
# ============================================================================

async def test_read_text(session, synthesizer, analysis):
    analysis.text = "EXIT\nThis way"

    say(session, "read this sign")
    await wait_until(lambda: len(synthesizer.spoken) == 2)
    await settle(session)

    assert synthesizer.texts == [prompts.READ_TEXT_HINT, "I found the following text: EXIT\nThis way"]
    assert analysis.instructions == [prompts.READ_TEXT_INSTRUCTION]


async def test_locate_object_not_found(session, synthesizer, analysis):
    analysis.text = "NOT_FOUND"

    say(session, "find my keys")
    await wait_until(lambda: len(synthesizer.spoken) == 2)

    assert synthesizer.texts == [prompts.locate_hint("keys"), prompts.object_not_found("keys")]


async def test_locate_object_found(session, synthesizer, analysis):
    analysis.text = "On the table to your left, 3 feet away."

    say(session, "find my keys")
    await wait_until(lambda: len(synthesizer.spoken) == 2)

    assert synthesizer.texts[1] == "I found keys. On the table to your left, 3 feet away."


async def test_scan_barcode_two_steps(session, synthesizer, analysis):
    analysis.queue("012345678905")
    analysis.queue("Acme Cola, 330ml can, soft drink.")

    say(session, "scan barcode")
    await wait_until(lambda: len(synthesizer.spoken) == 2)

    assert synthesizer.texts[1] == "Barcode: 012345678905. Acme Cola, 330ml can, soft drink."
    assert "012345678905" in analysis.instructions[1]


async def test_scan_barcode_nothing_visible(session, synthesizer, analysis):
    analysis.text = "NO_BARCODE"

    say(session, "scan barcode")
    await wait_until(lambda: len(synthesizer.spoken) == 2)

    assert synthesizer.texts[1] == prompts.NO_BARCODE_FOUND
    assert len(analysis.calls) == 1


# ============================================================================
# CONFIG
# ============================================================================

def test_config_from_env(monkeypatch):
    monkeypatch.setenv("HELIOS_SETTLE_DELAY", "0.8")
    monkeypatch.setenv("HELIOS_MEMORY_SIZE", "4")
    monkeypatch.setenv("HELIOS_GREETING", "")

    config = CoordinatorConfig.from_env()

    assert config.settle_delay == 0.8
    assert config.memory_size == 4
    assert config.backup_interval == 15.0
    assert config.greeting is None


def test_config_defaults():
    config = CoordinatorConfig()
    assert (config.settle_delay, config.inter_item_pause, config.grace_period) == (1.2, 0.6, 2.0)
    assert (config.continue_delay, config.backup_interval, config.analysis_timeout) == (1.5, 15.0, 30.0)
    assert config.greeting == prompts.GREETING
