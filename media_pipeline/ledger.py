"""Transaction ledger: the durable record of every submission's progress.

Why this exists:
- Delivery must survive crashes. Every accepted submission gets a transaction
  whose status, reply text and recovery data are persisted before the user
  sees anything, so a restarted process can finish what the previous one
  started without the original inbound event.

How it works:
- Each mutation is one conditional ``UPDATE ... WHERE id = :id AND status IN
  (...)`` followed by an insert into ``transaction_history`` inside the same
  database transaction. No read-modify-write crosses a process boundary.
- Invalid transitions and unknown IDs are logged and skipped (the operation
  returns ``None``); only ``create`` always succeeds.
- Failures accumulate in ``attempts``; reaching ``ledger_max_attempts`` moves
  the transaction to ``failure_permanent``, which is terminal.

Example:
    >>> ledger = TransactionLedger(Settings())
    >>> tx = await ledger.create(event)
    >>> await ledger.mark_processing(tx.id)
    >>> await ledger.attach_response(tx.id, "A cat on a sofa.")
    >>> await ledger.mark_delivered(tx.id)
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import case, delete, func, select, update

from media_pipeline.config import Settings
from media_pipeline.constants import (
    DETAIL_CREATED,
    DETAIL_DELIVERED,
    DETAIL_RECOVERY,
    DETAIL_RECOVERY_DATA,
    DETAIL_RESPONSE,
    INCOMPLETE_STATUSES,
    KIND_AUDIO,
    KIND_IMAGE,
    KIND_TEXT,
    KIND_VIDEO,
    RECOVERABLE_STATUSES,
    STATUS_CREATED,
    STATUS_DELIVERED,
    STATUS_FAILURE_PERMANENT,
    STATUS_FAILURE_TEMPORARY,
    STATUS_PROCESSING,
    STATUS_RECOVERY_IN_PROGRESS,
    STATUS_RESPONSE_GENERATED,
    TERMINAL_STATUSES,
    TRANSITIONS,
    ALL_STATUSES,
)
from media_pipeline.db import get_session
from media_pipeline.errors import ErrorKind
from media_pipeline.metrics import LEDGER_REJECTED_TOTAL, LEDGER_TRANSITION_TOTAL
from media_pipeline.models import HistoryEntry, InboundEvent, RecoveryData, Transaction
from media_pipeline.orm_models import TransactionHistoryRow, TransactionRow

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = tuple(s for s in ALL_STATUSES if s not in TERMINAL_STATUSES)
_MAX_DETAIL_CHARS = 500


def new_transaction_id(now_ms: int) -> str:
    """Return a time-ordered, globally unique transaction id."""
    return f"tx_{now_ms}_{secrets.token_hex(4)}"


def infer_kind(mime_type: Optional[str]) -> str:
    """Map a mime type to a submission kind; anything unknown is text."""
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return KIND_IMAGE
    if mime.startswith("video/"):
        return KIND_VIDEO
    if mime.startswith("audio/"):
        return KIND_AUDIO
    return KIND_TEXT


def _sources_for(target: str) -> list[str]:
    return [status for status, targets in TRANSITIONS.items() if target in targets]


def _to_model(row: TransactionRow, history: Iterable[TransactionHistoryRow]) -> Transaction:
    return Transaction(
        id=row.id,
        submission_id=row.submission_id,
        conversation_id=row.conversation_id,
        origin_id=row.origin_id,
        kind=row.kind,
        status=row.status,
        attempts=row.attempts,
        recovery_data=row.recovery_data,
        response=row.response,
        last_error=row.last_error,
        history=[HistoryEntry(timestamp=h.timestamp, status=h.status, detail=h.detail) for h in history],
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class TransactionLedger:
    """Domain operations over the ``transactions`` table.

    Parameters:
        settings: Source of the failure threshold.
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings or Settings()
        self._max_attempts = self._settings.ledger_max_attempts
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # -------------------------
    # Reads
    # -------------------------

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        async with get_session() as session:
            row = await session.get(TransactionRow, transaction_id)
            if row is None:
                return None
            res = await session.execute(
                select(TransactionHistoryRow)
                .where(TransactionHistoryRow.transaction_id == transaction_id)
                .order_by(TransactionHistoryRow.id.asc())
            )
            return _to_model(row, res.scalars().all())

    async def _load_many(self, rows: list[TransactionRow]) -> list[Transaction]:
        if not rows:
            return []
        ids = [r.id for r in rows]
        async with get_session() as session:
            res = await session.execute(
                select(TransactionHistoryRow)
                .where(TransactionHistoryRow.transaction_id.in_(ids))
                .order_by(TransactionHistoryRow.id.asc())
            )
            by_tx: dict[str, list[TransactionHistoryRow]] = {}
            for h in res.scalars().all():
                by_tx.setdefault(h.transaction_id, []).append(h)
        return [_to_model(r, by_tx.get(r.id, [])) for r in rows]

    async def find_incomplete(self, include_claimed: bool = False) -> list[Transaction]:
        """Transactions that can be resumed from their stored reply and recovery data.

        ``include_claimed`` also returns ``recovery_in_progress`` transactions,
        so startup recovery can take over a claim orphaned by a crash.
        """
        statuses = RECOVERABLE_STATUSES if include_claimed else INCOMPLETE_STATUSES
        async with get_session() as session:
            res = await session.execute(
                select(TransactionRow)
                .where(
                    TransactionRow.status.in_(statuses),
                    TransactionRow.response.is_not(None),
                    TransactionRow.recovery_data.is_not(None),
                )
                .order_by(TransactionRow.created_at.asc())
            )
            rows = list(res.scalars().all())
        return await self._load_many(rows)

    async def find_pending_retries(self, min_age_s: float) -> list[Transaction]:
        """Temporarily failed transactions idle for ``min_age_s`` with attempts left."""
        cutoff = self._now_ms() - int(min_age_s * 1000)
        async with get_session() as session:
            res = await session.execute(
                select(TransactionRow)
                .where(
                    TransactionRow.status == STATUS_FAILURE_TEMPORARY,
                    TransactionRow.updated_at < cutoff,
                    TransactionRow.attempts < self._max_attempts,
                    TransactionRow.response.is_not(None),
                    TransactionRow.recovery_data.is_not(None),
                )
                .order_by(TransactionRow.updated_at.asc())
            )
            rows = list(res.scalars().all())
        return await self._load_many(rows)

    async def stats(self) -> dict[str, Any]:
        """Counts per status, total, and delivered share as a percentage."""
        async with get_session() as session:
            res = await session.execute(
                select(TransactionRow.status, func.count()).group_by(TransactionRow.status)
            )
            counts = {status: 0 for status in ALL_STATUSES}
            for status, count in res.all():
                counts[status] = int(count)
        total = sum(counts.values())
        success_rate = round(counts[STATUS_DELIVERED] / total * 100, 2) if total else 0.0
        return {"total": total, "by_status": counts, "success_rate": success_rate}

    # -------------------------
    # Mutations
    # -------------------------

    async def create(self, event: InboundEvent) -> Transaction:
        now = self._now_ms()
        kind = event.kind or infer_kind(event.mime_type)
        row = TransactionRow(
            id=new_transaction_id(now),
            submission_id=event.submission_id,
            conversation_id=event.conversation_id,
            origin_id=event.origin_id,
            kind=kind,
            status=STATUS_CREATED,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        async with get_session() as session:
            session.add(row)
            session.add(
                TransactionHistoryRow(transaction_id=row.id, timestamp=now, status=STATUS_CREATED, detail=DETAIL_CREATED)
            )
            await session.commit()
        LEDGER_TRANSITION_TOTAL.labels(status=STATUS_CREATED).inc()
        logger.info("Transaction %s created for submission %s (%s)", row.id, event.submission_id, kind)
        return Transaction(
            id=row.id,
            submission_id=row.submission_id,
            conversation_id=row.conversation_id,
            origin_id=row.origin_id,
            kind=kind,
            status=STATUS_CREATED,
            attempts=0,
            history=[HistoryEntry(timestamp=now, status=STATUS_CREATED, detail=DETAIL_CREATED)],
            created_at=now,
            updated_at=now,
        )

    async def mark_processing(self, transaction_id: str) -> Optional[Transaction]:
        return await self._apply(
            "mark_processing",
            transaction_id,
            allowed_from=_sources_for(STATUS_PROCESSING),
            values={"status": STATUS_PROCESSING},
            detail="processing started",
        )

    async def attach_recovery_data(self, transaction_id: str, data: RecoveryData | dict[str, Any]) -> Optional[Transaction]:
        payload = data.model_dump() if isinstance(data, RecoveryData) else dict(data)
        return await self._apply(
            "attach_recovery_data",
            transaction_id,
            allowed_from=NON_TERMINAL_STATUSES,
            values={"recovery_data": payload},
            detail=DETAIL_RECOVERY_DATA,
        )

    async def attach_response(self, transaction_id: str, text: str) -> Optional[Transaction]:
        """Store the reply once; a processing transaction becomes response_generated."""
        return await self._apply(
            "attach_response",
            transaction_id,
            allowed_from=NON_TERMINAL_STATUSES,
            values={
                "response": text,
                "status": case(
                    (TransactionRow.status == STATUS_PROCESSING, STATUS_RESPONSE_GENERATED),
                    else_=TransactionRow.status,
                ),
            },
            detail=DETAIL_RESPONSE,
            extra_where=(TransactionRow.response.is_(None),),
        )

    async def mark_delivered(self, transaction_id: str) -> Optional[Transaction]:
        return await self._apply(
            "mark_delivered",
            transaction_id,
            allowed_from=_sources_for(STATUS_DELIVERED),
            values={"status": STATUS_DELIVERED},
            detail=DETAIL_DELIVERED,
        )

    async def claim_for_redelivery(
        self,
        transaction_id: str,
        *,
        min_idle_s: float,
        from_statuses: Iterable[str] = RECOVERABLE_STATUSES,
    ) -> Optional[Transaction]:
        """Move a resumable transaction to ``recovery_in_progress`` for one caller.

        The claim is a single conditional update: the transaction must be in
        ``from_statuses``, carry a response and be untouched for ``min_idle_s``.
        Claiming refreshes ``updated_at``, so a concurrent claimer (another
        process, or the stage worker still delivering) loses. A claim left
        behind by a crashed process becomes claimable again once it is idle.
        """
        cutoff = self._now_ms() - int(min_idle_s * 1000)
        return await self._apply(
            "claim_for_redelivery",
            transaction_id,
            allowed_from=from_statuses,
            values={"status": STATUS_RECOVERY_IN_PROGRESS},
            detail=DETAIL_RECOVERY,
            extra_where=(
                TransactionRow.updated_at <= cutoff,
                TransactionRow.response.is_not(None),
            ),
        )

    async def record_delivery_failure(
        self,
        transaction_id: str,
        error_text: str,
        classification: ErrorKind = ErrorKind.GENERAL,
        *,
        count_attempt: bool = True,
    ) -> Optional[Transaction]:
        """Record a failure; the threshold-th counted failure is permanent.

        ``count_attempt=False`` records the failure without spending an attempt
        (used when the circuit breaker rejected the call).
        """
        increment = 1 if count_attempt else 0
        detail = f"{classification.value}: {error_text}"[:_MAX_DETAIL_CHARS]
        return await self._apply(
            "record_delivery_failure",
            transaction_id,
            allowed_from=NON_TERMINAL_STATUSES,
            values={
                "attempts": TransactionRow.attempts + increment,
                "status": case(
                    (TransactionRow.attempts + increment >= self._max_attempts, STATUS_FAILURE_PERMANENT),
                    else_=STATUS_FAILURE_TEMPORARY,
                ),
                "last_error": detail,
            },
            detail=detail,
        )

    async def purge_expired(self, retention_days: Optional[int] = None) -> int:
        """Delete terminal transactions (and their history) idle past retention."""
        days = self._settings.transaction_retention_days if retention_days is None else retention_days
        cutoff = self._now_ms() - days * 24 * 3600 * 1000
        async with get_session() as session:
            res = await session.execute(
                select(TransactionRow.id).where(
                    TransactionRow.status.in_(TERMINAL_STATUSES),
                    TransactionRow.updated_at < cutoff,
                )
            )
            ids = [r[0] for r in res.all()]
            if not ids:
                return 0
            await session.execute(
                delete(TransactionHistoryRow).where(TransactionHistoryRow.transaction_id.in_(ids))
            )
            await session.execute(delete(TransactionRow).where(TransactionRow.id.in_(ids)))
            await session.commit()
        logger.info("Purged %d terminal transactions older than %d days", len(ids), days)
        return len(ids)

    # -------------------------
    # Internals
    # -------------------------

    async def _apply(
        self,
        operation: str,
        transaction_id: str,
        *,
        allowed_from: Iterable[str],
        values: dict[str, Any],
        detail: str,
        extra_where: tuple[Any, ...] = (),
    ) -> Optional[Transaction]:
        now = self._now_ms()
        async with get_session() as session:
            stmt = (
                update(TransactionRow)
                .where(
                    TransactionRow.id == transaction_id,
                    TransactionRow.status.in_(list(allowed_from)),
                    *extra_where,
                )
                .values(updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                await self._log_rejected(operation, transaction_id)
                return None
            status = (
                await session.execute(select(TransactionRow.status).where(TransactionRow.id == transaction_id))
            ).scalar_one()
            session.add(TransactionHistoryRow(transaction_id=transaction_id, timestamp=now, status=status, detail=detail))
            await session.commit()
        LEDGER_TRANSITION_TOTAL.labels(status=status).inc()
        logger.debug("Transaction %s %s -> %s", transaction_id, operation, status)
        return await self.get(transaction_id)

    async def _log_rejected(self, operation: str, transaction_id: str) -> None:
        LEDGER_REJECTED_TOTAL.labels(operation=operation).inc()
        async with get_session() as session:
            current = (
                await session.execute(select(TransactionRow.status).where(TransactionRow.id == transaction_id))
            ).scalar_one_or_none()
        if current is None:
            logger.warning("%s skipped: transaction %s not found", operation, transaction_id)
        else:
            logger.info("%s skipped for transaction %s in status %s", operation, transaction_id, current)
