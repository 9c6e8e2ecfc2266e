"""
Event definitions for the coordinator reducer.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- All reducer decisions are based on these events.
- No clocks, no timers, no async, no side effects.

Completion events carry the remote Response flattened into
(success, error, code) plus delivery_failed, which is True when the
restricted context could not be reached at all.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the reducer.

    Every (state, event_type) pair must be explicitly handled
    or explicitly ignored by the reducer.
    """

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------
    START_REQUESTED = "START_REQUESTED"
    STOP_REQUESTED = "STOP_REQUESTED"
    SET_LANGUAGE_REQUESTED = "SET_LANGUAGE_REQUESTED"

    # ------------------------------------------------------------------
    # Context lifecycle
    # ------------------------------------------------------------------
    START_TASK_DISPATCHED = "START_TASK_DISPATCHED"
    CONTEXT_CREATION_FAILED = "CONTEXT_CREATION_FAILED"
    CONTEXT_READY_TIMEOUT = "CONTEXT_READY_TIMEOUT"
    CONTEXT_LOST = "CONTEXT_LOST"

    # ------------------------------------------------------------------
    # Round-trip completions
    # ------------------------------------------------------------------
    INITIALIZE_COMPLETED = "INITIALIZE_COMPLETED"
    START_COMPLETED = "START_COMPLETED"
    STOP_COMPLETED = "STOP_COMPLETED"
    SET_LANGUAGE_COMPLETED = "SET_LANGUAGE_COMPLETED"

    # ------------------------------------------------------------------
    # Restricted context events
    # ------------------------------------------------------------------
    ENGINE_RESULT = "ENGINE_RESULT"
    ENGINE_ERROR = "ENGINE_ERROR"
    ENGINE_ENDED = "ENGINE_ENDED"

    # ------------------------------------------------------------------
    # Coordinator lifecycle
    # ------------------------------------------------------------------
    SESSION_TEARDOWN = "SESSION_TEARDOWN"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class Event:
    """
    Base event type.

    All events must specify:
    - event_type: discriminant
    - ts_ms: timestamp provided by the source (or fake in tests)
    """

    event_type: EventType
    ts_ms: int


@dataclass(frozen=True)
class Completion(Event):
    """Outcome of one coordinator -> restricted round trip."""
    request_id: int | None
    success: bool
    error: str | None = None
    code: str | None = None
    delivery_failed: bool = False


# =============================================================================
# Control Surface Events
# =============================================================================

@dataclass(frozen=True)
class StartRequested(Event):
    request_id: int
    language: str


@dataclass(frozen=True)
class StopRequested(Event):
    """context_exists is the lifecycle manager's answer at request time."""
    request_id: int
    context_exists: bool


@dataclass(frozen=True)
class SetLanguageRequested(Event):
    request_id: int
    language: str
    context_exists: bool


# =============================================================================
# Context Lifecycle Events
# =============================================================================

@dataclass(frozen=True)
class StartTaskDispatched(Event):
    """
    A start task reached the execution path, directly or by replay.

    Both routes produce this same event.
    """
    request_id: int
    language: str


@dataclass(frozen=True)
class ContextCreationFailed(Event):
    request_id: int
    error: str


@dataclass(frozen=True)
class ContextReadyTimeout(Event):
    """A queued start task was dropped because readiness never arrived."""
    request_id: int
    error: str


@dataclass(frozen=True)
class ContextLost(Event):
    """The link to the restricted context closed without notice."""
    reason: str | None = None


# =============================================================================
# Completion Events
# =============================================================================

@dataclass(frozen=True)
class InitializeCompleted(Completion):
    """INITIALIZE_RECOGNITION answered (or failed to deliver)."""


@dataclass(frozen=True)
class StartCompleted(Completion):
    """START_RECOGNITION answered (or failed to deliver)."""


@dataclass(frozen=True)
class StopCompleted(Completion):
    """
    STOP_RECOGNITION answered (or failed to deliver).

    request_id is None for stops the coordinator issued on its own
    (deferred stop after a handshake settled).
    """


@dataclass(frozen=True)
class SetLanguageCompleted(Completion):
    """SET_LANGUAGE answered (or failed to deliver)."""


# =============================================================================
# Restricted Context Events
# =============================================================================

@dataclass(frozen=True)
class EngineResult(Event):
    """Payload is forwarded to the control surface untouched."""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineError(Event):
    message: str
    code: str | None = None


@dataclass(frozen=True)
class EngineEnded(Event):
    """The engine stopped. Sole authority that recognition is over."""


# =============================================================================
# Coordinator Lifecycle Events
# =============================================================================

@dataclass(frozen=True)
class SessionTeardown(Event):
    """Coordinator is shutting down."""
