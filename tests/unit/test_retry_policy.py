# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from restricted.retry import (
    ErrorClass,
    RetryAttempt,
    classify_error,
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)


@pytest.mark.parametrize("code,expected", [
    ("no-speech", ErrorClass.SILENT),
    ("network", ErrorClass.RETRY),
    ("not-allowed", ErrorClass.TERMINAL),
    ("audio-capture", ErrorClass.TERMINAL),
    ("something-new", ErrorClass.TERMINAL),
])
def test_classify_error(code: str, expected: ErrorClass):
    assert classify_error(code) is expected


def test_three_retries_then_surface():
    attempt = reset_attempt()
    allowed = 0
    while should_retry(attempt):
        attempt = next_attempt(attempt)
        allowed += 1

    assert allowed == 3
    assert attempt == RetryAttempt(attempt=3)


def test_linear_backoff():
    delays = [
        get_retry_delay_ms(RetryAttempt(attempt=n), base_delay_ms=1000)
        for n in (1, 2, 3)
    ]

    assert delays == [1000, 2000, 3000]


def test_delay_never_zero_for_fresh_counter():
    assert get_retry_delay_ms(reset_attempt(), base_delay_ms=250) == 250
