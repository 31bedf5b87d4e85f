"""Short-lived duplicate guard for inbound events.

Keeps ``submission_id -> first_seen`` for a fixed window so an event the
transport redelivers within seconds is not enqueued twice. This is advisory
only: an evicted entry says nothing about whether the submission was
processed. The ledger, not this cache, is what makes delivery exactly-once.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable

from media_pipeline.metrics import DEDUP_HIT_TOTAL

logger = logging.getLogger(__name__)


class DedupCache:
    """In-memory ``submission_id`` window, safe to share between workers.

    Example:
        >>> cache = DedupCache(window_s=900)
        >>> cache.check_and_mark("m-1")
        True
        >>> cache.check_and_mark("m-1")
        False
    """

    def __init__(self, window_s: float = 900.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = window_s
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def _fresh(self, first_seen: float, now: float) -> bool:
        return now - first_seen < self.window_s

    def seen(self, submission_id: str) -> bool:
        """Return True if ``submission_id`` was marked within the window."""
        now = self._clock()
        with self._lock:
            first_seen = self._entries.get(submission_id)
            return first_seen is not None and self._fresh(first_seen, now)

    def mark(self, submission_id: str) -> None:
        with self._lock:
            self._entries[submission_id] = self._clock()

    def check_and_mark(self, submission_id: str) -> bool:
        """Atomically mark ``submission_id``; return False if it is a recent duplicate."""
        now = self._clock()
        with self._lock:
            first_seen = self._entries.get(submission_id)
            if first_seen is not None and self._fresh(first_seen, now):
                DEDUP_HIT_TOTAL.inc()
                return False
            self._entries[submission_id] = now
            return True

    def forget(self, submission_id: str) -> None:
        """Drop a mark so a redelivery of a submission that was never accepted gets through."""
        with self._lock:
            self._entries.pop(submission_id, None)

    def sweep(self) -> int:
        """Evict expired entries and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, ts in self._entries.items() if not self._fresh(ts, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Dedup sweep evicted %d entries", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_s: float, stopping: asyncio.Event) -> None:
        """Sweep every ``interval_s`` seconds until ``stopping`` is set."""
        while not stopping.is_set():
            try:
                await asyncio.wait_for(stopping.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                self.sweep()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
