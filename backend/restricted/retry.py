"""
Engine-local retry policy.

Purpose:
- Classify engine error codes
- Decide whether a transient failure is retried or surfaced
- Compute linear backoff delays

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from constants import (
    ENGINE_RETRY_BASE_DELAY_MS,
    ENGINE_RETRY_MAX_ATTEMPTS,
    RETRYABLE_ENGINE_ERROR_CODES,
    SILENT_ENGINE_ERROR_CODES,
)


# =============================================================================
# Error classes
# =============================================================================

class ErrorClass(str, Enum):
    """
    How an engine error code is handled.

    SILENT:
        Benign under continuous mode (no speech heard). Never surfaced,
        never ends the session.

    RETRY:
        Transient. Retried inside the restricted context with backoff;
        surfaced only once retries are exhausted.

    TERMINAL:
        Permission revoked, device gone, unsupported language, or any
        code we do not recognise. Surfaced immediately; the session ends.
    """

    SILENT = "silent"
    RETRY = "retry"
    TERMINAL = "terminal"


def classify_error(code: str) -> ErrorClass:
    if code in SILENT_ENGINE_ERROR_CODES:
        return ErrorClass.SILENT
    if code in RETRYABLE_ENGINE_ERROR_CODES:
        return ErrorClass.RETRY
    return ErrorClass.TERMINAL


# =============================================================================
# Retry state
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    Semantics:
    - attempt == 0: no retry performed since the last good result.
    - attempt >= 1: the Nth retry has been scheduled.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

def should_retry(
    attempt: RetryAttempt,
    *,
    max_attempts: int = ENGINE_RETRY_MAX_ATTEMPTS,
) -> bool:
    """
    Returns True if another retry is allowed.

    attempt = number of retries already performed
    """
    return attempt.attempt < max_attempts


def get_retry_delay_ms(
    attempt: RetryAttempt,
    *,
    base_delay_ms: int = ENGINE_RETRY_BASE_DELAY_MS,
) -> int:
    """
    Delay before retry N (1-based): base * N.

    Strictly increasing in N for any positive base.
    """
    return base_delay_ms * max(attempt.attempt, 1)
