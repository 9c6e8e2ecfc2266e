"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for all behavioral invariants of the coordinator
and the restricted recognition context.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Deployment-specific values (hosts, ports, engines) live in config.py.
"""

from __future__ import annotations

from typing import Final

# =============================================================================
# Session defaults
# =============================================================================

DEFAULT_LANGUAGE: Final[str] = "ja-JP"

# At most one recognition session and one restricted context exist at a time.
MAX_CONCURRENT_SESSIONS: Final[int] = 1

# =============================================================================
# Engine construction (restricted context)
# =============================================================================

ENGINE_CONTINUOUS: Final[bool] = True
ENGINE_INTERIM_RESULTS: Final[bool] = True
ENGINE_MAX_ALTERNATIVES: Final[int] = 1

# =============================================================================
# Engine-local retry policy
# =============================================================================

# Retries excluding the initial attempt; the failure after the last retry
# is surfaced to the coordinator.
ENGINE_RETRY_MAX_ATTEMPTS: Final[int] = 3

# Linear backoff: delay = base * attempt (attempt is 1-based).
ENGINE_RETRY_BASE_DELAY_MS: Final[int] = 1_000

# Engine error codes by class. Anything unlisted is terminal.
SILENT_ENGINE_ERROR_CODES: Final[frozenset[str]] = frozenset({
    "no-speech",
})

RETRYABLE_ENGINE_ERROR_CODES: Final[frozenset[str]] = frozenset({
    "network",
})

TERMINAL_ENGINE_ERROR_CODES: Final[frozenset[str]] = frozenset({
    "not-allowed",
    "service-not-allowed",
    "audio-capture",
    "language-not-supported",
    "bad-grammar",
})

# =============================================================================
# Context lifecycle
# =============================================================================

# Queued start requests fail if CONTEXT_READY has not arrived by then.
CONTEXT_READY_TIMEOUT_MS: Final[int] = 10_000

# Grace period for a context worker process to exit before it is killed.
CONTEXT_PROCESS_EXIT_TIMEOUT_S: Final[float] = 2.0

# WebSocket close code used to refuse a second context link.
CONTEXT_LINK_REFUSED_CLOSE_CODE: Final[int] = 1008

# =============================================================================
# User-facing error messages
# =============================================================================

ERROR_ALREADY_ACTIVE: Final[str] = "Recognition already active"
ERROR_STOPPED_BEFORE_START: Final[str] = "Recognition stopped before it started"
ERROR_ENDED_BEFORE_START: Final[str] = "Recognition ended before start was acknowledged"
ERROR_CONTEXT_NOT_READY: Final[str] = "Recognition context did not become ready"
ERROR_CONTEXT_LOST: Final[str] = "Recognition context lost"
ERROR_CONTEXT_ABSENT: Final[str] = "Receiving end does not exist"
ERROR_SHUTDOWN: Final[str] = "Coordinator shutting down"
ERROR_MICROPHONE_DENIED: Final[str] = "Microphone access denied"
ERROR_ENGINE_UNSUPPORTED: Final[str] = "Speech recognition not supported on this host"
ERROR_NOT_INITIALIZED: Final[str] = "Recognition not initialized. Call initialize first."
