"""
Authoritative coordinator state container.

Rules:
- This dataclass is a pure data model.
- It contains ALL state the reducer may ever need.
- No behavior, no helpers, no derived logic.
"""
from __future__ import annotations

from dataclasses import dataclass

from constants import DEFAULT_LANGUAGE
from orchestrator.enums.state import SessionState


@dataclass(frozen=True)
class CoordinatorState:
    """Immutable snapshot of the recognition session."""

    state: SessionState = SessionState.IDLE

    language: str = DEFAULT_LANGUAGE

    # Control-surface request currently driving the handshake (start or
    # stop). None when nothing is awaiting resolution.
    active_request_id: int | None = None

    # Stop arrived mid-handshake; honoured once the in-flight step settles.
    stop_requested: bool = False

    # Remote facts, tracked separately so a context that exists but was
    # never initialized is not confused with one that is running.
    engine_initialized: bool = False
    engine_running: bool = False

    # Set when the session last settled to IDLE through a failure.
    last_error: str | None = None
