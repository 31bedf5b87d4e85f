"""Durable pending-notification records.

When the dispatcher cannot send a reply, it stores destination, text and
recovery data here so a later sweep can retry without the original request.
Records are deleted after a confirmed send; a record that keeps failing is
marked ``abandoned`` once it reaches the attempt ceiling and stays in the
table (the error sink) until the retention purge removes it.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from sqlalchemy import case, delete, func, select, update

from media_pipeline.config import Settings
from media_pipeline.constants import DELIVERY_ABANDONED, DELIVERY_PENDING
from media_pipeline.db import get_session
from media_pipeline.metrics import PENDING_NOTIFICATION_TOTAL
from media_pipeline.models import PendingNotification
from media_pipeline.orm_models import PendingNotificationRow

logger = logging.getLogger(__name__)


def _to_model(row: PendingNotificationRow) -> PendingNotification:
    return PendingNotification(
        id=row.id,
        transaction_id=row.transaction_id,
        destination=row.destination,
        content=row.content,
        quote_id=row.quote_id,
        recovery_data=row.recovery_data,
        attempts=row.attempts,
        created_at=row.created_at,
        last_attempt_at=row.last_attempt_at,
        delivery_status=row.delivery_status,
        last_error=row.last_error,
    )


class PendingNotificationStore:
    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings or Settings()
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def save(
        self,
        destination: str,
        content: str,
        *,
        transaction_id: Optional[str] = None,
        quote_id: Optional[str] = None,
        recovery_data: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> PendingNotification:
        row = PendingNotificationRow(
            transaction_id=transaction_id,
            destination=destination,
            content=content,
            quote_id=quote_id,
            recovery_data=recovery_data,
            attempts=0,
            created_at=self._now_ms(),
            last_attempt_at=None,
            delivery_status=DELIVERY_PENDING,
            last_error=error,
        )
        async with get_session() as session:
            session.add(row)
            await session.commit()
        PENDING_NOTIFICATION_TOTAL.labels(event="saved").inc()
        logger.info("Pending notification %s saved for %s (transaction %s)", row.id, destination, transaction_id)
        return _to_model(row)

    async def list_pending(self) -> list[PendingNotification]:
        async with get_session() as session:
            res = await session.execute(
                select(PendingNotificationRow)
                .where(PendingNotificationRow.delivery_status == DELIVERY_PENDING)
                .order_by(PendingNotificationRow.created_at.asc(), PendingNotificationRow.id.asc())
            )
            return [_to_model(r) for r in res.scalars().all()]

    async def list_abandoned(self, limit: int = 50) -> list[PendingNotification]:
        async with get_session() as session:
            res = await session.execute(
                select(PendingNotificationRow)
                .where(PendingNotificationRow.delivery_status == DELIVERY_ABANDONED)
                .order_by(PendingNotificationRow.last_attempt_at.desc())
                .limit(limit)
            )
            return [_to_model(r) for r in res.scalars().all()]

    async def has_pending(self, transaction_id: str) -> bool:
        async with get_session() as session:
            res = await session.execute(
                select(func.count())
                .select_from(PendingNotificationRow)
                .where(
                    PendingNotificationRow.transaction_id == transaction_id,
                    PendingNotificationRow.delivery_status == DELIVERY_PENDING,
                )
            )
            return int(res.scalar_one()) > 0

    async def record_attempt(self, notification_id: int, error: str) -> Optional[PendingNotification]:
        """Count a failed retry; the record is abandoned at the attempt ceiling."""
        ceiling = self._settings.notification_max_attempts
        async with get_session() as session:
            result = await session.execute(
                update(PendingNotificationRow)
                .where(
                    PendingNotificationRow.id == notification_id,
                    PendingNotificationRow.delivery_status == DELIVERY_PENDING,
                )
                .values(
                    attempts=PendingNotificationRow.attempts + 1,
                    last_attempt_at=self._now_ms(),
                    last_error=error[:500],
                    delivery_status=case(
                        (PendingNotificationRow.attempts + 1 >= ceiling, DELIVERY_ABANDONED),
                        else_=DELIVERY_PENDING,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            row = await session.get(PendingNotificationRow, notification_id)
            if row is None:
                return None
            await session.refresh(row)
            record = _to_model(row)
        if record.delivery_status == DELIVERY_ABANDONED:
            PENDING_NOTIFICATION_TOTAL.labels(event="abandoned").inc()
            logger.error(
                "Pending notification %s abandoned after %d attempts: %s",
                notification_id,
                record.attempts,
                error,
            )
        else:
            PENDING_NOTIFICATION_TOTAL.labels(event="retry_failed").inc()
        return record

    async def delete(self, notification_id: int) -> None:
        async with get_session() as session:
            await session.execute(delete(PendingNotificationRow).where(PendingNotificationRow.id == notification_id))
            await session.commit()

    async def purge_older_than(self, days: Optional[int] = None) -> int:
        """Remove records (pending or abandoned) created more than ``days`` ago."""
        retention = self._settings.notification_retention_days if days is None else days
        cutoff = self._now_ms() - retention * 24 * 3600 * 1000
        async with get_session() as session:
            result = await session.execute(
                delete(PendingNotificationRow).where(PendingNotificationRow.created_at < cutoff)
            )
            await session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("Purged %d pending notifications older than %d days", removed, retention)
        return removed
