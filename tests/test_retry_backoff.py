import asyncio

import pytest

from media_pipeline.errors import CircuitOpenError, ErrorKind, InferenceError, PipelineError, classify, is_terminal
from media_pipeline.retry import JobOptions, backoff_delay_ms, decide_retry


def test_backoff_is_monotonic_and_capped():
    delays = [backoff_delay_ms(n, 2000, 30000) for n in range(10)]
    assert delays[:4] == [2000, 4000, 8000, 16000]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 30000


def test_backoff_handles_large_and_negative_attempts():
    assert backoff_delay_ms(500, 1000, 8000) == 8000
    assert backoff_delay_ms(-3, 1000, 8000) == 1000


def test_classify_without_text_sniffing():
    assert classify(asyncio.TimeoutError()) is ErrorKind.TIMEOUT
    assert classify(RuntimeError("safety filter tripped")) is ErrorKind.GENERAL
    assert classify(InferenceError(ErrorKind.QUOTA, "429")) is ErrorKind.QUOTA
    assert classify(CircuitOpenError()) is ErrorKind.SERVICE_UNAVAILABLE


def test_terminal_override():
    assert is_terminal(PipelineError(ErrorKind.GENERAL, "remote failed", terminal=True))
    assert not is_terminal(PipelineError(ErrorKind.GENERAL, "flaky"))
    assert is_terminal(InferenceError(ErrorKind.SAFETY_BLOCKED))


def test_decide_retry_exponential():
    opts = JobOptions(max_attempts=3, backoff_base_ms=60000, backoff_cap_ms=600000)
    first = decide_retry(0, RuntimeError("boom"), opts)
    assert (first.should_retry, first.delay_ms, first.next_attempt) == (True, 60000, 1)
    second = decide_retry(1, asyncio.TimeoutError(), opts)
    assert (second.should_retry, second.delay_ms, second.kind) == (True, 120000, ErrorKind.TIMEOUT)


def test_decide_retry_exhausted_after_max_attempts():
    opts = JobOptions(max_attempts=3)
    d = decide_retry(2, RuntimeError("boom"), opts)
    assert d.should_retry is False
    assert d.reason == "exhausted"


def test_quota_waits_fixed_delay():
    opts = JobOptions(max_attempts=3, backoff_base_ms=10, quota_delay_ms=60000)
    d = decide_retry(1, InferenceError(ErrorKind.QUOTA, "rate limited"), opts)
    assert d.should_retry is True
    assert d.delay_ms == 60000
    assert d.reason == "quota"


@pytest.mark.parametrize(
    "kind",
    [
        ErrorKind.SAFETY_BLOCKED,
        ErrorKind.FILE_EXPIRED,
        ErrorKind.FILE_FORBIDDEN,
        ErrorKind.SERVICE_UNAVAILABLE,
        ErrorKind.FILE_TOO_LARGE,
        ErrorKind.UNSUPPORTED_FORMAT,
    ],
)
def test_non_retryable_kinds_never_retry(kind):
    d = decide_retry(0, InferenceError(kind), JobOptions(max_attempts=5))
    assert d.should_retry is False
    assert d.reason == "terminal"
    assert d.kind is kind
