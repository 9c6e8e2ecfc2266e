# pylint: disable=missing-module-docstring,missing-function-docstring
from dataclasses import replace

import pytest

from orchestrator.commands import (
    Command,
    LogEvent,
    NotifyControl,
    ResolveRequest,
    SendDestroy,
    SendSetLanguage,
    SendStop,
)
from orchestrator.enums.state import SessionState
from orchestrator.events import (
    ContextLost,
    EngineEnded,
    EngineError,
    EngineResult,
    EventType,
    SessionTeardown,
    SetLanguageRequested,
    StopCompleted,
    StopRequested,
)
from orchestrator.reducer import reduce
from orchestrator.state_dataclass import CoordinatorState
from protocol.messages import MessageType


def stop_requested(request_id: int = 5, context_exists: bool = True) -> StopRequested:
    return StopRequested(
        event_type=EventType.STOP_REQUESTED,
        ts_ms=0,
        request_id=request_id,
        context_exists=context_exists,
    )


def stop_done(request_id: int | None = 5, success: bool = True, **kw) -> StopCompleted:
    return StopCompleted(
        event_type=EventType.STOP_COMPLETED,
        ts_ms=0,
        request_id=request_id,
        success=success,
        **kw,
    )


def ended() -> EngineEnded:
    return EngineEnded(event_type=EventType.ENGINE_ENDED, ts_ms=0)


def non_logs(commands: tuple[Command, ...]) -> list[Command]:
    return [c for c in commands if not isinstance(c, LogEvent)]


def notified(commands: tuple[Command, ...]) -> list[MessageType]:
    return [c.message_type for c in commands if isinstance(c, NotifyControl)]


ACTIVE = CoordinatorState(
    state=SessionState.ACTIVE,
    language="ja-JP",
    engine_initialized=True,
    engine_running=True,
)


# ---------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------

def test_stop_while_active_sends_stop_and_waits_for_ended():
    state, commands = reduce(ACTIVE, stop_requested())

    assert state.state is SessionState.STOPPING
    assert non_logs(commands) == [SendStop(request_id=5)]

    # The acknowledgement does not end the session.
    state, commands = reduce(state, stop_done())
    assert state.state is SessionState.STOPPING
    assert non_logs(commands) == [ResolveRequest(request_id=5, success=True)]

    # ENDED does.
    state, commands = reduce(state, ended())
    assert state.state is SessionState.IDLE
    assert state.engine_running is False
    assert notified(commands) == [MessageType.RECOGNITION_ENDED]


def test_ended_may_overtake_the_stop_ack():
    state, _ = reduce(ACTIVE, stop_requested())
    state, commands = reduce(state, ended())

    assert state.state is SessionState.IDLE
    assert ResolveRequest(request_id=5, success=True) in non_logs(commands)

    state, _ = reduce(state, stop_done())
    assert state.state is SessionState.IDLE


def test_stop_failure_returns_to_active():
    state, _ = reduce(ACTIVE, stop_requested())
    state, commands = reduce(state, stop_done(success=False, error="nope"))

    assert state.state is SessionState.ACTIVE
    assert non_logs(commands) == [ResolveRequest(request_id=5, success=False, error="nope")]


def test_stop_undeliverable_while_stopping_ends_session():
    state, _ = reduce(ACTIVE, stop_requested())
    state, commands = reduce(state, stop_done(success=False, error="gone", delivery_failed=True))

    assert state.state is SessionState.IDLE
    assert state.engine_initialized is False
    assert ResolveRequest(request_id=5, success=True) in non_logs(commands)
    assert notified(commands) == [MessageType.RECOGNITION_ENDED]


@pytest.mark.parametrize("from_state", list(SessionState))
def test_stop_without_context_is_idempotent_success(from_state: SessionState):
    before = replace(ACTIVE, state=from_state, active_request_id=1)

    state, commands = reduce(before, stop_requested(context_exists=False))

    assert state.state is SessionState.IDLE
    assert state.engine_initialized is False
    assert ResolveRequest(request_id=5, success=True) in non_logs(commands)


def test_stop_while_idle_with_context_still_sends_stop():
    idle = CoordinatorState(engine_initialized=True)

    state, commands = reduce(idle, stop_requested())

    assert state.state is SessionState.IDLE
    assert non_logs(commands) == [SendStop(request_id=5)]


@pytest.mark.parametrize("busy", [SessionState.INITIALIZING, SessionState.STARTING])
def test_stop_mid_handshake_is_deferred(busy: SessionState):
    before = CoordinatorState(state=busy, active_request_id=1)

    state, commands = reduce(before, stop_requested())

    assert state.state is busy
    assert state.stop_requested is True
    assert non_logs(commands) == [ResolveRequest(request_id=5, success=True)]


# ---------------------------------------------------------------------
# Engine events
# ---------------------------------------------------------------------

def test_result_is_forwarded_verbatim_and_state_unchanged():
    payload = {"finalTranscript": "こんにちは", "interimTranscript": "", "confidence": 0.92}

    state, commands = reduce(
        ACTIVE,
        EngineResult(event_type=EventType.ENGINE_RESULT, ts_ms=0, payload=payload),
    )

    assert state == ACTIVE
    assert non_logs(commands) == [
        NotifyControl(message_type=MessageType.RECOGNITION_RESULT, payload=payload),
    ]


def test_result_without_session_is_ignored():
    _, commands = reduce(
        CoordinatorState(),
        EngineResult(event_type=EventType.ENGINE_RESULT, ts_ms=0, payload={"finalTranscript": "x"}),
    )

    assert non_logs(commands) == []
    assert commands[0].event["decision"] == "ignore"


def test_error_is_forwarded_and_ended_settles_with_error():
    state, commands = reduce(
        ACTIVE,
        EngineError(event_type=EventType.ENGINE_ERROR, ts_ms=0, message="mic gone", code="audio-capture"),
    )

    assert state.state is SessionState.ACTIVE
    assert non_logs(commands) == [
        NotifyControl(
            message_type=MessageType.RECOGNITION_ERROR,
            payload={"message": "mic gone", "code": "audio-capture"},
        ),
    ]

    state, _ = reduce(state, ended())
    assert state.state is SessionState.IDLE
    assert state.last_error == "mic gone"


def test_context_lost_while_active_reports_error_then_ended():
    state, commands = reduce(
        ACTIVE,
        ContextLost(event_type=EventType.CONTEXT_LOST, ts_ms=0, reason="context_disconnect"),
    )

    assert state.state is SessionState.IDLE
    assert state.engine_initialized is False
    assert notified(commands) == [MessageType.RECOGNITION_ERROR, MessageType.RECOGNITION_ENDED]


def test_teardown_destroys_initialized_engine():
    state, commands = reduce(ACTIVE, SessionTeardown(event_type=EventType.SESSION_TEARDOWN, ts_ms=0))

    assert state.state is SessionState.IDLE
    effects = non_logs(commands)
    assert SendDestroy() in effects
    assert notified(commands) == [MessageType.RECOGNITION_ENDED]


# ---------------------------------------------------------------------
# Language
# ---------------------------------------------------------------------

def test_language_is_forwarded_only_to_initialized_context():
    event = SetLanguageRequested(
        event_type=EventType.SET_LANGUAGE_REQUESTED,
        ts_ms=0,
        request_id=3,
        language="en-US",
        context_exists=True,
    )

    state, commands = reduce(ACTIVE, event)
    assert state.language == "en-US"
    assert non_logs(commands) == [SendSetLanguage(request_id=3, language="en-US")]

    state, commands = reduce(CoordinatorState(), event)
    assert state.language == "en-US"
    assert non_logs(commands) == [ResolveRequest(request_id=3, success=True)]
