"""
Authoritative session state enumeration.

Rules:
- This enum defines ONLY the control-plane states.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """
    Lifecycle of the single recognition session.

    IDLE doubles as the error sink: a terminal failure lands here with
    last_error set on the state container.
    """

    IDLE = "IDLE"
    INITIALIZING = "INITIALIZING"
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    STOPPING = "STOPPING"
