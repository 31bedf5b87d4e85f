"""Problem-jobs sink: failed stage jobs kept for inspection and replay.

Jobs that end terminally are written here with their classification and the
last error text. Payload fields that could carry large binary content are
stripped before storage; jobs only ever hold references (paths, remote file
names), so in practice the stored document is the full job.

Example:
    >>> store = ProblemJobStore()
    >>> await store.record(job, ErrorKind.TIMEOUT, "analysis timed out")
    >>> [p["job_id"] for p in await store.recent(limit=5)]
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import func, select, update

from media_pipeline.constants import STAGES, TERMINAL_STATUSES
from media_pipeline.db import get_session
from media_pipeline.errors import ErrorKind
from media_pipeline.jobs import JobBase, ProcessingCheckJob, dump_job, parse_job
from media_pipeline.ledger import TransactionLedger
from media_pipeline.metrics import PROBLEM_JOB_TOTAL
from media_pipeline.notifications import PendingNotificationStore
from media_pipeline.orm_models import ProblemJobRow
from media_pipeline.queues import StageQueue

logger = logging.getLogger(__name__)

_BINARY_FIELDS = ("data", "buffer", "content_bytes")


def _strip_binary(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in _BINARY_FIELDS}


def _row_to_dict(row: ProblemJobRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "stage": row.stage,
        "job_id": row.job_id,
        "transaction_id": row.transaction_id,
        "classification": row.classification,
        "error": row.error,
        "job": row.job,
        "can_replay": row.can_replay,
        "failed_at": row.failed_at,
    }


class ProblemJobStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    async def record(self, job: JobBase, kind: ErrorKind, error: str, *, can_replay: bool = True) -> int:
        stage = getattr(job, "stage", "unknown")
        row = ProblemJobRow(
            stage=stage,
            job_id=job.job_id,
            transaction_id=job.transaction_id,
            classification=kind.value,
            error=error[:2000],
            job=_strip_binary(dump_job(job)),
            can_replay=can_replay,
            failed_at=int(self._clock() * 1000),
        )
        async with get_session() as session:
            session.add(row)
            await session.commit()
        PROBLEM_JOB_TOTAL.labels(stage=stage, classification=kind.value).inc()
        logger.warning(
            "Job %s (%s, transaction %s) moved to problem jobs: %s",
            job.job_id,
            stage,
            job.transaction_id,
            kind.value,
        )
        return row.id

    async def recent(self, limit: int = 10, stage: Optional[str] = None) -> list[dict[str, Any]]:
        """Most recent problem jobs first."""
        async with get_session() as session:
            query = select(ProblemJobRow)
            if stage:
                query = query.where(ProblemJobRow.stage == stage)
            query = query.order_by(ProblemJobRow.failed_at.desc(), ProblemJobRow.id.desc()).limit(limit)
            res = await session.execute(query)
            return [_row_to_dict(r) for r in res.scalars().all()]

    async def count_by_stage(self) -> dict[str, int]:
        async with get_session() as session:
            res = await session.execute(
                select(ProblemJobRow.stage, func.count()).group_by(ProblemJobRow.stage)
            )
            return {stage: int(count) for stage, count in res.all()}

    async def fetch_replayable(self, limit: int = 10, stage: Optional[str] = None) -> list[dict[str, Any]]:
        """Oldest replayable problem jobs first."""
        async with get_session() as session:
            query = select(ProblemJobRow).where(ProblemJobRow.can_replay.is_(True))
            if stage:
                query = query.where(ProblemJobRow.stage == stage)
            query = query.order_by(ProblemJobRow.failed_at.asc(), ProblemJobRow.id.asc()).limit(limit)
            res = await session.execute(query)
            return [_row_to_dict(r) for r in res.scalars().all()]

    async def mark_replayed(self, problem_id: int) -> None:
        async with get_session() as session:
            await session.execute(
                update(ProblemJobRow).where(ProblemJobRow.id == problem_id).values(can_replay=False)
            )
            await session.commit()


async def replay_problem_jobs(
    problems: ProblemJobStore,
    queues: Mapping[str, StageQueue],
    ledger: TransactionLedger,
    *,
    notifications: Optional[PendingNotificationStore] = None,
    limit: int = 10,
    stage: Optional[str] = None,
    dry_run: bool = False,
) -> list[dict[str, Any]]:
    """Re-enqueue problem jobs whose user never got an answer, with attempt 0.

    A terminal transaction (``delivered`` or ``failure_permanent``) has
    already sent its one user message, so its rows are marked replayed without
    being enqueued. Rows whose terminal message still sits in the pending
    notifications are left alone until the sweep sends or abandons it. What
    remains is replayable: the message was abandoned, or the process died
    before sending it. Returns the rows that were (or, with ``dry_run``,
    would be) replayed.
    """
    replayed: list[dict[str, Any]] = []
    for row in await problems.fetch_replayable(limit=limit, stage=stage):
        if row["stage"] not in STAGES:
            logger.warning("Problem job %s has unknown stage %s", row["id"], row["stage"])
            continue
        tx = await ledger.get(row["transaction_id"])
        if tx is None or tx.status in TERMINAL_STATUSES:
            if not dry_run:
                await problems.mark_replayed(row["id"])
            continue
        if notifications is not None and await notifications.has_pending(tx.id):
            logger.info("Problem job %s skipped: transaction %s has a pending notification", row["id"], tx.id)
            continue
        replayed.append(row)
        if dry_run:
            continue
        job = parse_job(row["job"]).with_attempt(0)
        if isinstance(job, ProcessingCheckJob):
            # Restart the expiry clock as well
            job = job.model_copy(update={"poll_attempt": 0, "upload_timestamp": time.time(), "last_progress_at": None})
        await queues[row["stage"]].enqueue(job)
        await problems.mark_replayed(row["id"])
        logger.info("Problem job %s replayed into %s for transaction %s", job.job_id, row["stage"], job.transaction_id)
    return replayed
