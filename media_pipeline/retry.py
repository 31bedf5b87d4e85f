"""Backoff and retry decisions for stage jobs.

This module centralizes how long a job waits before it runs again and whether
a failed job runs again at all. Two sequences exist:

 - ProcessingCheck polls: ``delay = min(cap, base * 2**attempt)`` while the
   remote file is still being processed (not a failure, just not ready yet)
 - Failure retries: the shared job-options contract (max attempts, exponential
   base delay) applied to classified errors

Key entrypoints:
 - ``backoff_delay_ms``: capped exponential delay for a zero-based attempt
 - ``JobOptions``: the uniform per-stage options contract
 - ``decide_retry``: whether to retry a failed job, and after what delay

Examples
--------
>>> backoff_delay_ms(0, 1000, 8000)
1000
>>> backoff_delay_ms(5, 1000, 8000)
8000

>>> opts = JobOptions(max_attempts=3, backoff_base_ms=30000)
>>> d = decide_retry(0, RuntimeError("boom"), opts)
>>> (d.should_retry, d.delay_ms, d.next_attempt)
(True, 30000, 1)
"""
from __future__ import annotations

from dataclasses import dataclass

from media_pipeline.errors import ErrorKind, classify, is_terminal


def backoff_delay_ms(attempt: int, base_ms: int, cap_ms: int) -> int:
    """Return the capped exponential delay for a zero-based ``attempt``.

    Parameters
    ----------
    attempt: int
        Zero-based attempt counter; negative values are treated as 0.
    base_ms: int
        Delay for attempt 0.
    cap_ms: int
        Upper bound for any delay.

    Returns
    -------
    int
        ``min(cap_ms, base_ms * 2**attempt)`` in milliseconds.

    Examples
    --------
    >>> [backoff_delay_ms(n, 100, 500) for n in range(5)]
    [100, 200, 400, 500, 500]
    """
    n = max(int(attempt), 0)
    # Large exponents would only overflow past the cap anyway
    if n >= 62:
        return int(cap_ms)
    return int(min(cap_ms, base_ms * (2 ** n)))


@dataclass(frozen=True)
class JobOptions:
    """Options every stage queue applies to its jobs.

    Attributes
    ----------
    max_attempts: int
        Total executions allowed (first run included) before a job is terminal.
    backoff_base_ms: int
        Base of the exponential failure-retry backoff.
    backoff_cap_ms: int
        Upper bound of the failure-retry backoff.
    quota_delay_ms: int
        Fixed delay used when the backend reports a quota/rate limit.
    remove_on_success: bool
        Drop finished jobs from queue bookkeeping.
    remove_on_failure: bool
        Drop failed jobs instead of keeping them in the problem-jobs sink.
    """
    max_attempts: int = 3
    backoff_base_ms: int = 30000
    backoff_cap_ms: int = 600000
    quota_delay_ms: int = 60000
    remove_on_success: bool = True
    remove_on_failure: bool = False


@dataclass
class RetryDecision:
    """Decision computed for a failed job.

    Attributes
    ----------
    should_retry: bool
        Whether the job should be enqueued again.
    delay_ms: int
        Delay before the retry runs. 0 when ``should_retry`` is False.
    next_attempt: int
        Attempt counter to persist on the retried job.
    kind: ErrorKind
        Classification that led to this decision.
    reason: str
        Short label for logs and metrics ("retry", "quota", "terminal", "exhausted").

    Examples
    --------
    >>> RetryDecision(False, 0, 2, ErrorKind.SAFETY_BLOCKED, "terminal").should_retry
    False
    """
    should_retry: bool
    delay_ms: int
    next_attempt: int
    kind: ErrorKind
    reason: str


def decide_retry(attempt: int, exc: BaseException, options: JobOptions) -> RetryDecision:
    """Decide retry behaviour for a job that failed on zero-based ``attempt``.

    Terminal classifications never retry. Quota errors wait a fixed delay.
    Everything else backs off exponentially until ``max_attempts`` executions
    have been used. The input job is never mutated.

    Examples
    --------
    >>> opts = JobOptions(max_attempts=3, backoff_base_ms=100)
    >>> decide_retry(2, RuntimeError("boom"), opts).reason
    'exhausted'
    """
    kind = classify(exc)
    next_attempt = attempt + 1

    if is_terminal(exc):
        return RetryDecision(False, 0, attempt, kind, "terminal")

    if next_attempt >= options.max_attempts:
        return RetryDecision(False, 0, attempt, kind, "exhausted")

    if kind is ErrorKind.QUOTA:
        return RetryDecision(True, options.quota_delay_ms, next_attempt, kind, "quota")

    delay = backoff_delay_ms(attempt, options.backoff_base_ms, options.backoff_cap_ms)
    return RetryDecision(True, delay, next_attempt, kind, "retry")
