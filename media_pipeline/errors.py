"""Typed failure classification for pipeline stages.

Collaborators at the edge of the pipeline (inference client, transport) raise
``PipelineError`` subclasses carrying an explicit ``ErrorKind``. Stage workers
never inspect exception text: they call ``classify`` and act on the enum.

Example:
    >>> classify(InferenceError(ErrorKind.SAFETY_BLOCKED, "blocked by policy"))
    <ErrorKind.SAFETY_BLOCKED: 'safety_blocked'>
    >>> classify(RuntimeError("boom"))
    <ErrorKind.GENERAL: 'general'>
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    SAFETY_BLOCKED = "safety_blocked"
    FILE_EXPIRED = "file_expired"
    FILE_FORBIDDEN = "file_forbidden"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    QUOTA = "quota"
    FILE_TOO_LARGE = "file_too_large"
    UNSUPPORTED_FORMAT = "unsupported_format"
    GENERAL = "general"


# Never retried: the outcome would not change on a second try
NON_RETRYABLE_KINDS = frozenset({
    ErrorKind.SAFETY_BLOCKED,
    ErrorKind.FILE_EXPIRED,
    ErrorKind.FILE_FORBIDDEN,
    ErrorKind.SERVICE_UNAVAILABLE,
    ErrorKind.FILE_TOO_LARGE,
    ErrorKind.UNSUPPORTED_FORMAT,
})

# Failures that say nothing about the health of the inference backend
CONTENT_KINDS = frozenset({
    ErrorKind.SAFETY_BLOCKED,
    ErrorKind.FILE_TOO_LARGE,
    ErrorKind.UNSUPPORTED_FORMAT,
})


class PipelineError(Exception):
    """Base error for stage failures with an explicit classification.

    ``terminal`` forces a no-retry outcome even for kinds that would normally
    be retried (e.g. a remote file reported ``FAILED``).
    """

    def __init__(self, kind: ErrorKind, message: str = "", *, terminal: Optional[bool] = None) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.terminal = terminal


class InferenceError(PipelineError):
    """Raised by the inference client boundary."""


class CircuitOpenError(PipelineError):
    """Raised when the circuit breaker rejects a call."""

    def __init__(self, message: str = "inference service temporarily unavailable") -> None:
        super().__init__(ErrorKind.SERVICE_UNAVAILABLE, message, terminal=True)


class DeliveryError(Exception):
    """Raised by a transport when a message could not be sent."""


def classify(exc: BaseException) -> ErrorKind:
    """Return the ``ErrorKind`` for any exception; unknown errors are ``GENERAL``."""
    if isinstance(exc, PipelineError):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.GENERAL


def is_terminal(exc: BaseException) -> bool:
    """Return True when the failure must not be retried."""
    if isinstance(exc, PipelineError) and exc.terminal is not None:
        return exc.terminal
    return classify(exc) in NON_RETRYABLE_KINDS
