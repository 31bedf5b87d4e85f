"""Stage queue interface and the in-process backend.

A stage queue is a named worker pool with bounded concurrency. Workers pull
one job at a time and pass it to the stage handler, which returns an outcome
label:

- ``"completed"``: the job finished (including hand-off to the next stage)
- ``"retried"``: the handler re-enqueued the job with a delay
- ``"failed"``: the job ended terminally and went to the problem-jobs sink

Delayed jobs do not occupy a worker slot; they are held by a timer task and
put back on the queue when the delay expires.

Both backends (``InMemoryStageQueue`` here, ``RabbitStageQueue`` in
``media_pipeline.rabbit``) expose the same surface:
``enqueue(job, delay_ms)``, ``start(handler)``, ``stop()``, ``counts()``,
``active_jobs()``, ``pending_jobs()``, ``remove(job_id)`` and ``purge(mode)``.
``KindLanes`` puts one queue per media kind behind that same surface.

Example:
    >>> q = InMemoryStageQueue("upload", workers=3)
    >>> await q.start(handler)
    >>> await q.enqueue(job)
    >>> await q.enqueue(job.with_attempt(1), delay_ms=30000)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal, Optional, Protocol

from media_pipeline.jobs import JobBase
from media_pipeline.metrics import QUEUE_DEPTH

logger = logging.getLogger(__name__)

Outcome = Literal["completed", "retried", "failed"]
Handler = Callable[[JobBase], Awaitable[Outcome]]
PurgeMode = Literal["completed", "all"]


@dataclass
class QueueCounts:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def __add__(self, other: "QueueCounts") -> "QueueCounts":
        return QueueCounts(
            waiting=self.waiting + other.waiting,
            active=self.active + other.active,
            completed=self.completed + other.completed,
            failed=self.failed + other.failed,
            delayed=self.delayed + other.delayed,
        )


@dataclass
class ActiveJob:
    job: JobBase
    started_at: float = field(default_factory=time.time)

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def running_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.started_at


class StageQueue(Protocol):
    name: str

    async def enqueue(self, job: JobBase, delay_ms: int = 0) -> None: ...

    async def start(self, handler: Handler) -> None: ...

    async def stop(self) -> None: ...

    async def counts(self) -> QueueCounts: ...

    def active_jobs(self) -> list[ActiveJob]: ...

    async def pending_jobs(self) -> list[JobBase]: ...

    async def remove(self, job_id: str) -> bool: ...

    async def purge(self, mode: PurgeMode) -> int: ...


class InMemoryStageQueue:
    """``asyncio`` worker pool for one stage.

    Waiting jobs are mirrored in a dict so they can be listed and removed
    before a worker picks them up; removed jobs are skipped on dequeue.
    """

    def __init__(self, name: str, workers: int = 1) -> None:
        self.name = name
        self._workers = max(1, int(workers))
        self._queue: asyncio.Queue[JobBase] = asyncio.Queue()
        self._waiting: dict[str, JobBase] = {}
        self._delayed: dict[str, tuple[JobBase, asyncio.Task[None]]] = {}
        self._active: dict[str, ActiveJob] = {}
        self._completed = 0
        self._failed = 0
        self._tasks: list[asyncio.Task[None]] = []
        self._handler: Optional[Handler] = None

    def _update_depth(self) -> None:
        QUEUE_DEPTH.labels(stage=self.name).set(len(self._waiting) + len(self._delayed))

    async def enqueue(self, job: JobBase, delay_ms: int = 0) -> None:
        if delay_ms > 0:
            task = asyncio.create_task(self._release_later(job, delay_ms), name=f"{self.name}-delay-{job.job_id}")
            self._delayed[job.job_id] = (job, task)
        else:
            self._put(job)
        self._update_depth()

    def _put(self, job: JobBase) -> None:
        self._waiting[job.job_id] = job
        self._queue.put_nowait(job)

    async def _release_later(self, job: JobBase, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        if self._delayed.pop(job.job_id, None) is None:
            return
        self._put(job)
        self._update_depth()

    async def start(self, handler: Handler) -> None:
        if self._tasks:
            return
        self._handler = handler
        for i in range(self._workers):
            self._tasks.append(asyncio.create_task(self._run(), name=f"{self.name}-worker-{i}"))
        logger.info("Queue %s started with %d workers", self.name, self._workers)

    async def _run(self) -> None:
        assert self._handler is not None
        while True:
            job = await self._queue.get()
            try:
                if self._waiting.pop(job.job_id, None) is None:
                    # Removed while waiting
                    continue
                self._update_depth()
                self._active[job.job_id] = ActiveJob(job)
                try:
                    outcome = await self._handler(job)
                except asyncio.CancelledError:
                    raise
                except Exception:  # noqa: BLE001
                    logger.exception("Unhandled error in %s handler for job %s", self.name, job.job_id)
                    outcome = "failed"
                if outcome == "completed":
                    self._completed += 1
                elif outcome == "failed":
                    self._failed += 1
            finally:
                self._active.pop(job.job_id, None)
                self._queue.task_done()

    async def stop(self) -> None:
        tasks = list(self._tasks) + [task for _, task in self._delayed.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._delayed.clear()
        logger.info("Queue %s stopped", self.name)

    async def counts(self) -> QueueCounts:
        return QueueCounts(
            waiting=len(self._waiting),
            active=len(self._active),
            completed=self._completed,
            failed=self._failed,
            delayed=len(self._delayed),
        )

    def active_jobs(self) -> list[ActiveJob]:
        return list(self._active.values())

    async def pending_jobs(self) -> list[JobBase]:
        """Waiting and delayed jobs, not yet picked up by a worker."""
        return list(self._waiting.values()) + [job for job, _ in self._delayed.values()]

    async def remove(self, job_id: str) -> bool:
        if self._waiting.pop(job_id, None) is not None:
            self._update_depth()
            return True
        entry = self._delayed.pop(job_id, None)
        if entry is not None:
            entry[1].cancel()
            self._update_depth()
            return True
        return False

    async def purge(self, mode: PurgeMode) -> int:
        if mode == "completed":
            removed = self._completed + self._failed
            self._completed = 0
            self._failed = 0
            return removed
        removed = len(self._waiting) + len(self._delayed)
        self._waiting.clear()
        for _, task in self._delayed.values():
            task.cancel()
        self._delayed.clear()
        self._update_depth()
        logger.warning("Queue %s purged (%d jobs removed)", self.name, removed)
        return removed

    def is_idle(self) -> bool:
        return not (self._waiting or self._delayed or self._active)


class KindLanes:
    """One stage queue made of a separate worker pool per media kind.

    Jobs are routed to the lane for ``job.kind`` so a backlog of one kind
    never occupies the workers of another. Counts, listings and purges cover
    every lane; the stage still appears as a single queue to its callers.

    Example:
        >>> lanes = KindLanes("analysis", {"video": InMemoryStageQueue("analysis.video", 3),
        ...                                "image": InMemoryStageQueue("analysis.image", 5)})
        >>> await lanes.enqueue(image_job)  # handled by the image pool
    """

    def __init__(self, name: str, lanes: dict[str, StageQueue]) -> None:
        if not lanes:
            raise ValueError(f"queue {name} needs at least one lane")
        self.name = name
        self.lanes = lanes

    def lane_for(self, job: JobBase) -> StageQueue:
        try:
            return self.lanes[job.kind]
        except KeyError:
            raise ValueError(f"no {self.name} lane for kind {job.kind}") from None

    async def enqueue(self, job: JobBase, delay_ms: int = 0) -> None:
        await self.lane_for(job).enqueue(job, delay_ms=delay_ms)

    async def start(self, handler: Handler) -> None:
        for lane in self.lanes.values():
            await lane.start(handler)

    async def stop(self) -> None:
        for lane in self.lanes.values():
            await lane.stop()

    async def counts(self) -> QueueCounts:
        total = QueueCounts()
        for lane in self.lanes.values():
            total = total + await lane.counts()
        return total

    def active_jobs(self) -> list[ActiveJob]:
        return [active for lane in self.lanes.values() for active in lane.active_jobs()]

    async def pending_jobs(self) -> list[JobBase]:
        jobs: list[JobBase] = []
        for lane in self.lanes.values():
            jobs.extend(await lane.pending_jobs())
        return jobs

    async def remove(self, job_id: str) -> bool:
        for lane in self.lanes.values():
            if await lane.remove(job_id):
                return True
        return False

    async def purge(self, mode: PurgeMode) -> int:
        return sum([await lane.purge(mode) for lane in self.lanes.values()])

    def is_idle(self) -> bool:
        return all(getattr(lane, "is_idle", lambda: True)() for lane in self.lanes.values())
