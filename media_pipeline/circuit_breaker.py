"""Circuit breaker guarding calls into the inference client.

A single instance is shared by every stage that talks to the inference
backend. After ``failure_limit`` failures the circuit opens and calls are
rejected until ``reset_ms`` has passed since the last failure; then exactly
one trial call is let through (half-open). The trial's outcome closes the
circuit again or reopens it with a fresh timer.

Callers treat a rejection as a terminal ``service_unavailable`` failure for
the job attempt; see ``guard``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from media_pipeline.errors import CircuitOpenError
from media_pipeline.metrics import CIRCUIT_STATE, CIRCUIT_TRANSITION_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_GAUGE_VALUE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    """Failure counter with closed/open/half-open states.

    Example:
        >>> breaker = CircuitBreaker(failure_limit=5, reset_ms=60000)
        >>> breaker.can_execute()
        True
        >>> for _ in range(5):
        ...     opened = breaker.record_failure()
        >>> opened, breaker.can_execute()
        (True, False)
    """

    def __init__(
        self,
        failure_limit: int = 5,
        reset_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_limit = failure_limit
        self.reset_ms = reset_ms
        self._clock = clock
        self._lock = threading.Lock()
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        CIRCUIT_STATE.set(_GAUGE_VALUE[self.state])

    def _set_state(self, state: CircuitState) -> None:
        if state is self.state:
            return
        logger.warning("Circuit breaker %s -> %s (failures=%d)", self.state.value, state.value, self.failure_count)
        self.state = state
        CIRCUIT_STATE.set(_GAUGE_VALUE[state])
        CIRCUIT_TRANSITION_TOTAL.labels(state=state.value).inc()

    def can_execute(self) -> bool:
        """Return True if a call may proceed now.

        While open, the first call after the reset window moves the circuit to
        half-open and is allowed; every other call is rejected until that trial
        reports back.
        """
        with self._lock:
            if self.state is CircuitState.CLOSED:
                return True
            if self.state is CircuitState.HALF_OPEN:
                return False
            elapsed_ms = (self._clock() - (self.last_failure_time or 0.0)) * 1000
            if elapsed_ms > self.reset_ms:
                self._set_state(CircuitState.HALF_OPEN)
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            self._set_state(CircuitState.CLOSED)

    def record_failure(self) -> bool:
        """Count a failure; return True if this failure opened the circuit."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state is CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
                return True
            if self.state is CircuitState.CLOSED and self.failure_count >= self.failure_limit:
                self._set_state(CircuitState.OPEN)
                return True
            return False

    async def guard(
        self,
        call: Callable[[], Awaitable[T]],
        counts_as_failure: Callable[[BaseException], bool] = lambda exc: True,
    ) -> T:
        """Run ``call`` through the breaker.

        Raises ``CircuitOpenError`` without calling when the circuit rejects.
        Exceptions from ``call`` are re-raised after being recorded, unless
        ``counts_as_failure`` says they are not about backend health; those
        still close a half-open circuit.
        """
        if not self.can_execute():
            raise CircuitOpenError()
        try:
            result = await call()
        except asyncio.CancelledError:
            # A cancelled trial must not leave the circuit stuck half-open
            with self._lock:
                trial = self.state is CircuitState.HALF_OPEN
            if trial:
                self.record_failure()
            raise
        except Exception as exc:
            if counts_as_failure(exc):
                self.record_failure()
            elif self.state is CircuitState.HALF_OPEN:
                self.record_success()
            raise
        self.record_success()
        return result
