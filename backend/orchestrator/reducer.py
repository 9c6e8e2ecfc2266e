"""
Pure coordinator reducer.

(state, event) -> (new_state, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every (state, event) pair is handled or explicitly ignored (logged).
- Every state change goes through _transition(), which rejects any pair
  missing from TRANSITIONS.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable

from constants import (
    ERROR_ALREADY_ACTIVE,
    ERROR_CONTEXT_ABSENT,
    ERROR_CONTEXT_LOST,
    ERROR_ENDED_BEFORE_START,
    ERROR_SHUTDOWN,
    ERROR_STOPPED_BEFORE_START,
)
from orchestrator.commands import (
    Command,
    EnsureContext,
    LogEvent,
    NotifyControl,
    ResolveRequest,
    SendDestroy,
    SendInitialize,
    SendSetLanguage,
    SendStart,
    SendStop,
)
from orchestrator.enums.state import SessionState
from orchestrator.events import (
    ContextCreationFailed,
    ContextLost,
    ContextReadyTimeout,
    EngineEnded,
    EngineError,
    EngineResult,
    Event,
    EventType,
    InitializeCompleted,
    SessionTeardown,
    SetLanguageCompleted,
    SetLanguageRequested,
    StartCompleted,
    StartRequested,
    StartTaskDispatched,
    StopCompleted,
    StopRequested,
)
from orchestrator.state_dataclass import CoordinatorState
from protocol.messages import MessageType

Result = tuple[CoordinatorState, tuple[Command, ...]]

IDLE = SessionState.IDLE
INITIALIZING = SessionState.INITIALIZING
STARTING = SessionState.STARTING
ACTIVE = SessionState.ACTIVE
STOPPING = SessionState.STOPPING


# =============================================================================
# Transition table
# =============================================================================

TRANSITIONS: frozenset[tuple[SessionState, SessionState]] = frozenset({
    (IDLE, INITIALIZING),
    (INITIALIZING, STARTING),
    (INITIALIZING, IDLE),       # init failure, deferred stop, context loss
    (STARTING, ACTIVE),
    (STARTING, STOPPING),       # start succeeded, deferred stop pending
    (STARTING, IDLE),           # start failure, out-of-order ended
    (ACTIVE, STOPPING),
    (ACTIVE, IDLE),             # ended, context absent on stop
    (STOPPING, IDLE),
    (STOPPING, ACTIVE),         # stop request failed
})

# States in which the engine may be producing events.
_LIVE_STATES = frozenset({STARTING, ACTIVE, STOPPING})


class IllegalTransition(Exception):
    """Raised when the reducer attempts a transition outside TRANSITIONS."""

    def __init__(self, from_state: SessionState, to_state: SessionState) -> None:
        super().__init__(f"Illegal transition {from_state.value} -> {to_state.value}")
        self.from_state = from_state
        self.to_state = to_state


def _transition(
    state: CoordinatorState,
    to_state: SessionState,
    **changes: Any,
) -> CoordinatorState:
    if to_state is not state.state and (state.state, to_state) not in TRANSITIONS:
        raise IllegalTransition(state.state, to_state)
    return replace(state, state=to_state, **changes)


def _to_idle(state: CoordinatorState, *, error: str | None = None) -> CoordinatorState:
    """The Idle / Idle(error) sink. Clears every per-session fact."""
    return _transition(
        state,
        IDLE,
        active_request_id=None,
        stop_requested=False,
        engine_running=False,
        last_error=error,
    )


# =============================================================================
# Logging helpers
# =============================================================================

def _log(
    state: CoordinatorState,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "state": state.state.value,
            "event_type": event.event_type.value,
            "decision": decision,
            "request_id": state.active_request_id,
            "language": state.language,
            "engine": {
                "initialized": state.engine_initialized,
                "running": state.engine_running,
            },
            "details": details or {},
        }
    )


def _logs_last(commands: tuple[Command, ...]) -> tuple[Command, ...]:
    """Side effects first, then decision logs, then state_changed logs."""
    non_logs: list[Command] = []
    logs: list[Command] = []
    state_change_logs: list[Command] = []

    for command in commands:
        if isinstance(command, LogEvent):
            if command.event.get("decision") == "state_changed":
                state_change_logs.append(command)
            else:
                logs.append(command)
        else:
            non_logs.append(command)

    return tuple(non_logs + logs + state_change_logs)


def _changed(
    old: CoordinatorState,
    new: CoordinatorState,
    event: Event,
    source: str,
) -> tuple[Command, ...]:
    if old.state is new.state:
        return ()
    return (
        _log(new, event, "state_changed", {
            "from_state": old.state.value,
            "to_state": new.state.value,
            "source": source,
        }),
    )


def _ignore(state: CoordinatorState, event: Event, reason: str) -> Result:
    return state, (_log(state, event, "ignore", {"reason": reason}),)


def _finish(
    old: CoordinatorState,
    new: CoordinatorState,
    event: Event,
    decision: str,
    commands: tuple[Command, ...] = (),
    details: dict[str, Any] | None = None,
) -> Result:
    return new, _logs_last(
        commands
        + (_log(new, event, decision, details),)
        + _changed(old, new, event, decision)
    )


def _resolve(
    request_id: int | None,
    success: bool,
    error: str | None = None,
    code: str | None = None,
) -> tuple[Command, ...]:
    if request_id is None:
        return ()
    return (ResolveRequest(request_id=request_id, success=success, error=error, code=code),)


def _notify(message_type: MessageType, payload: dict[str, Any] | None = None) -> NotifyControl:
    return NotifyControl(message_type=message_type, payload=payload or {})


def _failure_message(event: InitializeCompleted | StartCompleted) -> str:
    if event.error:
        return event.error
    if event.delivery_failed:
        return ERROR_CONTEXT_ABSENT
    return "Unknown error"


# =============================================================================
# Control surface
# =============================================================================

def _on_start_requested(state: CoordinatorState, event: StartRequested) -> Result:
    if state.state is not IDLE:
        return state, _logs_last(
            _resolve(event.request_id, False, ERROR_ALREADY_ACTIVE, "already_active")
            + (_log(state, event, "start_rejected", {
                "rejected_request_id": event.request_id,
            }),)
        )

    new_state = _transition(
        state,
        INITIALIZING,
        language=event.language,
        active_request_id=event.request_id,
        stop_requested=False,
        last_error=None,
    )
    return _finish(
        state,
        new_state,
        event,
        "start_accepted",
        (EnsureContext(request_id=event.request_id, language=event.language),),
    )


def _on_stop_requested(state: CoordinatorState, event: StopRequested) -> Result:
    if not event.context_exists:
        # Nothing to stop: idempotent success, whatever we believed before.
        commands: tuple[Command, ...] = _resolve(event.request_id, True)
        if state.state in (INITIALIZING, STARTING):
            commands += _resolve(state.active_request_id, False, ERROR_CONTEXT_LOST, "context_lost")
        if state.state in (ACTIVE, STOPPING):
            commands += (_notify(MessageType.RECOGNITION_ENDED),)
        new_state = replace(_to_idle(state), engine_initialized=False)
        return _finish(state, new_state, event, "stop_context_absent", commands)

    if state.state is IDLE:
        # Remote may still be running after a desync; stop it anyway.
        return _finish(
            state,
            state,
            event,
            "stop_while_idle",
            (SendStop(request_id=event.request_id),),
        )

    if state.state in (INITIALIZING, STARTING):
        new_state = replace(state, stop_requested=True)
        return _finish(
            state,
            new_state,
            event,
            "stop_deferred",
            _resolve(event.request_id, True),
        )

    if state.state is ACTIVE:
        new_state = _transition(state, STOPPING, active_request_id=event.request_id)
        return _finish(
            state,
            new_state,
            event,
            "stop_sent",
            (SendStop(request_id=event.request_id),),
        )

    # STOPPING: already on its way down.
    return _finish(
        state,
        state,
        event,
        "stop_already_in_progress",
        _resolve(event.request_id, True),
    )


def _on_set_language_requested(state: CoordinatorState, event: SetLanguageRequested) -> Result:
    new_state = replace(state, language=event.language)

    if event.context_exists and state.engine_initialized:
        return _finish(
            state,
            new_state,
            event,
            "language_forwarded",
            (SendSetLanguage(request_id=event.request_id, language=event.language),),
        )

    return _finish(
        state,
        new_state,
        event,
        "language_stored",
        _resolve(event.request_id, True),
    )


# =============================================================================
# Context lifecycle
# =============================================================================

def _on_start_task_dispatched(state: CoordinatorState, event: StartTaskDispatched) -> Result:
    if state.state is not INITIALIZING or state.active_request_id != event.request_id:
        return state, _logs_last(
            _resolve(event.request_id, False, ERROR_STOPPED_BEFORE_START, "stale")
            + (_log(state, event, "ignore", {
                "reason": "stale_start_task",
                "task_request_id": event.request_id,
            }),)
        )

    if state.stop_requested:
        new_state = _to_idle(state)
        return _finish(
            state,
            new_state,
            event,
            "start_abandoned_stop_requested",
            _resolve(event.request_id, False, ERROR_STOPPED_BEFORE_START, "stopped"),
        )

    return _finish(
        state,
        state,
        event,
        "initialize_sent",
        (SendInitialize(request_id=event.request_id, language=event.language),),
    )


def _on_context_setup_failed(
    state: CoordinatorState,
    event: ContextCreationFailed | ContextReadyTimeout,
) -> Result:
    if state.state is not INITIALIZING or state.active_request_id != event.request_id:
        return state, _logs_last(
            _resolve(event.request_id, False, event.error, "context_unavailable")
            + (_log(state, event, "ignore", {
                "reason": "stale_start_task",
                "task_request_id": event.request_id,
            }),)
        )

    new_state = _to_idle(state, error=event.error)
    return _finish(
        state,
        new_state,
        event,
        "context_setup_failed",
        _resolve(event.request_id, False, event.error, "context_unavailable")
        + (_notify(MessageType.RECOGNITION_INIT_FAILED, {"error": event.error}),),
        {"error": event.error},
    )


def _on_context_lost(state: CoordinatorState, event: ContextLost) -> Result:
    commands: tuple[Command, ...] = ()

    if state.state in (INITIALIZING, STARTING):
        commands += _resolve(state.active_request_id, False, ERROR_CONTEXT_LOST, "context_lost")
        commands += (_notify(MessageType.RECOGNITION_INIT_FAILED, {"error": ERROR_CONTEXT_LOST}),)
    elif state.state is ACTIVE:
        commands += (
            _notify(MessageType.RECOGNITION_ERROR, {
                "message": ERROR_CONTEXT_LOST,
                "code": "context_lost",
            }),
            _notify(MessageType.RECOGNITION_ENDED),
        )
    elif state.state is STOPPING:
        commands += _resolve(state.active_request_id, True)
        commands += (_notify(MessageType.RECOGNITION_ENDED),)

    error = ERROR_CONTEXT_LOST if state.state is not IDLE else state.last_error
    new_state = replace(_to_idle(state, error=error), engine_initialized=False)
    return _finish(state, new_state, event, "context_lost", commands, {"reason": event.reason})


# =============================================================================
# Round-trip completions
# =============================================================================

def _on_initialize_completed(state: CoordinatorState, event: InitializeCompleted) -> Result:
    if state.state is not INITIALIZING or state.active_request_id != event.request_id:
        return _ignore(state, event, "stale_initialize_response")

    if not event.success:
        error = _failure_message(event)
        new_state = replace(_to_idle(state, error=error), engine_initialized=False)
        return _finish(
            state,
            new_state,
            event,
            "initialize_failed",
            _resolve(event.request_id, False, error, event.code)
            + (_notify(MessageType.RECOGNITION_INIT_FAILED, {"error": error}),),
            {"error": error, "code": event.code, "delivery_failed": event.delivery_failed},
        )

    if state.stop_requested:
        new_state = replace(_to_idle(state), engine_initialized=True)
        return _finish(
            state,
            new_state,
            event,
            "start_abandoned_stop_requested",
            _resolve(event.request_id, False, ERROR_STOPPED_BEFORE_START, "stopped"),
        )

    new_state = _transition(state, STARTING, engine_initialized=True)
    return _finish(
        state,
        new_state,
        event,
        "start_sent",
        (SendStart(request_id=event.request_id, language=state.language),),
    )


def _on_start_completed(state: CoordinatorState, event: StartCompleted) -> Result:
    if state.state is not STARTING or state.active_request_id != event.request_id:
        return _ignore(state, event, "stale_start_response")

    if not event.success:
        error = _failure_message(event)
        new_state = _to_idle(state, error=error)
        if event.delivery_failed:
            new_state = replace(new_state, engine_initialized=False)
        payload: dict[str, Any] = {"message": error}
        if event.code:
            payload["code"] = event.code
        return _finish(
            state,
            new_state,
            event,
            "start_failed",
            _resolve(event.request_id, False, error, event.code)
            + (_notify(MessageType.RECOGNITION_ERROR, payload),),
            {"error": error, "code": event.code, "delivery_failed": event.delivery_failed},
        )

    if state.stop_requested:
        new_state = _transition(
            state,
            STOPPING,
            active_request_id=None,
            stop_requested=False,
            engine_running=True,
        )
        return _finish(
            state,
            new_state,
            event,
            "stale_start_stopped",
            _resolve(event.request_id, False, ERROR_STOPPED_BEFORE_START, "stopped")
            + (SendStop(request_id=None),),
        )

    new_state = _transition(state, ACTIVE, active_request_id=None, engine_running=True)
    return _finish(
        state,
        new_state,
        event,
        "recognition_started",
        _resolve(event.request_id, True)
        + (_notify(MessageType.RECOGNITION_STARTED, {"language": state.language}),),
    )


def _on_stop_completed(state: CoordinatorState, event: StopCompleted) -> Result:
    # A stop that could not be delivered found no context: already stopped.
    acked = event.success or event.delivery_failed
    commands = _resolve(event.request_id, acked, None if acked else event.error, event.code)

    if state.state is not STOPPING:
        return _finish(state, state, event, "stop_acknowledged", commands, {
            "success": event.success,
            "delivery_failed": event.delivery_failed,
        })

    if event.delivery_failed:
        # ENDED can never arrive now.
        new_state = replace(_to_idle(state), engine_initialized=False)
        return _finish(
            state,
            new_state,
            event,
            "stop_context_absent",
            commands + (_notify(MessageType.RECOGNITION_ENDED),),
        )

    if not event.success:
        new_state = _transition(state, ACTIVE, active_request_id=None)
        return _finish(state, new_state, event, "stop_failed", commands, {"error": event.error})

    # Acknowledged; IDLE waits for ENDED.
    new_state = replace(state, active_request_id=None)
    return _finish(state, new_state, event, "stop_acknowledged", commands)


def _on_set_language_completed(state: CoordinatorState, event: SetLanguageCompleted) -> Result:
    acked = event.success or event.delivery_failed
    return _finish(
        state,
        state,
        event,
        "language_acknowledged" if acked else "language_rejected",
        _resolve(event.request_id, acked, None if acked else event.error, event.code),
    )


# =============================================================================
# Restricted context events
# =============================================================================

def _on_engine_result(state: CoordinatorState, event: EngineResult) -> Result:
    if state.state not in _LIVE_STATES:
        return _ignore(state, event, "result_without_session")

    return state, (
        _notify(MessageType.RECOGNITION_RESULT, dict(event.payload)),
        _log(state, event, "result_forwarded", {
            "final_len": len(str(event.payload.get("finalTranscript", ""))),
        }),
    )


def _on_engine_error(state: CoordinatorState, event: EngineError) -> Result:
    payload: dict[str, Any] = {"message": event.message}
    if event.code is not None:
        payload["code"] = event.code

    new_state = replace(state, last_error=event.message)
    return _finish(
        state,
        new_state,
        event,
        "error_forwarded",
        (_notify(MessageType.RECOGNITION_ERROR, payload),),
        {"code": event.code},
    )


def _on_engine_ended(state: CoordinatorState, event: EngineEnded) -> Result:
    if state.state in (ACTIVE, STOPPING):
        new_state = _to_idle(state, error=state.last_error if state.state is ACTIVE else None)
        return _finish(
            state,
            new_state,
            event,
            "recognition_ended",
            _resolve(state.active_request_id, True)
            + (_notify(MessageType.RECOGNITION_ENDED),),
        )

    if state.state is STARTING:
        # Ended overtook the start acknowledgement.
        new_state = _to_idle(state, error=ERROR_ENDED_BEFORE_START)
        return _finish(
            state,
            new_state,
            event,
            "ended_before_start_ack",
            _resolve(state.active_request_id, False, ERROR_ENDED_BEFORE_START, "ended")
            + (_notify(MessageType.RECOGNITION_ENDED),),
        )

    return _ignore(state, event, "ended_without_session")


# =============================================================================
# Coordinator lifecycle
# =============================================================================

def _on_session_teardown(state: CoordinatorState, event: SessionTeardown) -> Result:
    commands: tuple[Command, ...] = ()
    if state.state in (INITIALIZING, STARTING):
        commands += _resolve(state.active_request_id, False, ERROR_SHUTDOWN, "shutdown")
    elif state.state is STOPPING:
        commands += _resolve(state.active_request_id, True)
    if state.state in (ACTIVE, STOPPING):
        commands += (_notify(MessageType.RECOGNITION_ENDED),)
    if state.engine_initialized:
        commands += (SendDestroy(),)

    new_state = replace(_to_idle(state), engine_initialized=False)
    return _finish(state, new_state, event, "teardown", commands)


# =============================================================================
# Entry point
# =============================================================================

_HANDLERS: dict[EventType, Callable[[CoordinatorState, Any], Result]] = {
    EventType.START_REQUESTED: _on_start_requested,
    EventType.STOP_REQUESTED: _on_stop_requested,
    EventType.SET_LANGUAGE_REQUESTED: _on_set_language_requested,
    EventType.START_TASK_DISPATCHED: _on_start_task_dispatched,
    EventType.CONTEXT_CREATION_FAILED: _on_context_setup_failed,
    EventType.CONTEXT_READY_TIMEOUT: _on_context_setup_failed,
    EventType.CONTEXT_LOST: _on_context_lost,
    EventType.INITIALIZE_COMPLETED: _on_initialize_completed,
    EventType.START_COMPLETED: _on_start_completed,
    EventType.STOP_COMPLETED: _on_stop_completed,
    EventType.SET_LANGUAGE_COMPLETED: _on_set_language_completed,
    EventType.ENGINE_RESULT: _on_engine_result,
    EventType.ENGINE_ERROR: _on_engine_error,
    EventType.ENGINE_ENDED: _on_engine_ended,
    EventType.SESSION_TEARDOWN: _on_session_teardown,
}


def reduce(state: CoordinatorState, event: Event) -> Result:
    """
    Apply one event to the session.

    Returns the new state and the commands the runtime must execute,
    in order. Logs are ordered after side effects, state changes last.
    """
    handler = _HANDLERS.get(event.event_type)
    if handler is None:
        return _ignore(state, event, "unhandled_event_type")
    return handler(state, event)
