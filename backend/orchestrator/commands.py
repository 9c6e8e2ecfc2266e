"""
Side-effect command definitions for the coordinator.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by the runtime.
- No behavior, no async, no I/O, no clocks.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from protocol.messages import MessageType


# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """
    Canonical command types emitted by the reducer.

    Stable discriminants used for logging and runtime dispatch.
    """

    # Context lifecycle
    ENSURE_CONTEXT = "ENSURE_CONTEXT"

    # Restricted context requests
    SEND_INITIALIZE = "SEND_INITIALIZE"
    SEND_START = "SEND_START"
    SEND_STOP = "SEND_STOP"
    SEND_SET_LANGUAGE = "SEND_SET_LANGUAGE"
    SEND_DESTROY = "SEND_DESTROY"

    # Control surface
    RESOLVE_REQUEST = "RESOLVE_REQUEST"
    NOTIFY_CONTROL = "NOTIFY_CONTROL"

    # Observability
    LOG_EVENT = "LOG_EVENT"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


# =============================================================================
# Context Lifecycle Commands
# =============================================================================

@dataclass(frozen=True)
class EnsureContext(Command):
    """
    Make sure a restricted context exists, then run the start task
    directly (context ready) or queue it until readiness.
    """
    request_id: int
    language: str
    command_type: CommandType = CommandType.ENSURE_CONTEXT


# =============================================================================
# Restricted Context Commands
# =============================================================================

@dataclass(frozen=True)
class SendInitialize(Command):
    request_id: int
    language: str
    command_type: CommandType = CommandType.SEND_INITIALIZE


@dataclass(frozen=True)
class SendStart(Command):
    request_id: int
    language: str
    command_type: CommandType = CommandType.SEND_START


@dataclass(frozen=True)
class SendStop(Command):
    """request_id None: coordinator-initiated, nobody awaits the ack."""
    request_id: int | None
    command_type: CommandType = CommandType.SEND_STOP


@dataclass(frozen=True)
class SendSetLanguage(Command):
    request_id: int
    language: str
    command_type: CommandType = CommandType.SEND_SET_LANGUAGE


@dataclass(frozen=True)
class SendDestroy(Command):
    """Release the engine before the context is closed."""
    command_type: CommandType = CommandType.SEND_DESTROY


# =============================================================================
# Control Surface Commands
# =============================================================================

@dataclass(frozen=True)
class ResolveRequest(Command):
    """Settle the control-surface caller waiting on request_id."""
    request_id: int
    success: bool
    error: str | None = None
    code: str | None = None
    command_type: CommandType = CommandType.RESOLVE_REQUEST


@dataclass(frozen=True)
class NotifyControl(Command):
    """Push an unsolicited event to control-surface listeners."""
    message_type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)
    command_type: CommandType = CommandType.NOTIFY_CONTROL


# =============================================================================
# Observability Commands
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """Request to emit a structured observability event."""
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT
