"""Result dispatcher: the one place where pipeline outcomes leave the process.

Why this exists:
- Stage workers, startup recovery and the pending-transaction sweep all need
  to hand a reply (or a terminal error message) to the user and record the
  outcome in the ledger. Doing it in one place keeps the "answered exactly
  once" bookkeeping consistent.

How it works:
- ``deliver`` resolves destination and quote target from the transaction's
  recovery data, tries a direct send a few times, then the quoted-reply
  form, and finally persists a pending notification. It never raises.
- ``process_pending_notifications`` is the periodic sweep over those records.
- ``send_notice`` is for progress messages that are not deliveries.

Example:
    >>> dispatcher = ResultDispatcher(transport, ledger, notifications, settings)
    >>> await dispatcher.deliver(tx.id, response="A dog on a beach.")
    True
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from media_pipeline.config import Settings
from media_pipeline.constants import STATUS_DELIVERED, TERMINAL_STATUSES
from media_pipeline.errors import ErrorKind
from media_pipeline.ledger import TransactionLedger
from media_pipeline.messages import user_message_for
from media_pipeline.metrics import DELIVERY_TOTAL, PENDING_NOTIFICATION_TOTAL
from media_pipeline.models import Transaction
from media_pipeline.notifications import PendingNotificationStore
from media_pipeline.transport import Transport

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def resolve_route(tx: Transaction) -> tuple[str, Optional[str]]:
    """Return ``(destination, quote_id)`` using recovery data first."""
    data = tx.recovery_data or {}
    destination = data.get("destination") or tx.conversation_id
    quote_id = data.get("origin_id") or tx.origin_id or None
    return destination, quote_id


class ResultDispatcher:
    def __init__(
        self,
        transport: Transport,
        ledger: TransactionLedger,
        notifications: PendingNotificationStore,
        settings: Optional[Settings] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._ledger = ledger
        self._notifications = notifications
        self._settings = settings or Settings()
        self._sleep = sleep
        self._clock = clock

    async def deliver(
        self,
        transaction_id: str,
        *,
        response: Optional[str] = None,
        error: Optional[ErrorKind] = None,
        media_kind: Optional[str] = None,
    ) -> bool:
        """Send a reply or the user message for ``error``; return True once sent.

        On success a non-terminal transaction is marked delivered. When every
        send fails a pending notification is stored and, for replies, the
        failure is counted in the ledger.
        """
        tx = await self._ledger.get(transaction_id)
        if tx is None:
            logger.warning("Delivery skipped: transaction %s not found", transaction_id)
            return False
        if tx.status == STATUS_DELIVERED:
            logger.info("Delivery skipped: transaction %s already delivered", transaction_id)
            return True

        if response is not None:
            text = response
        else:
            text = user_message_for(error or ErrorKind.GENERAL, media_kind or tx.kind)
        destination, quote_id = resolve_route(tx)

        last_exc: Optional[BaseException] = None
        attempts = max(1, self._settings.direct_send_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self._transport.deliver(destination, text)
                DELIVERY_TOTAL.labels(form="direct", result="ok").inc()
                await self._finish(transaction_id)
                return True
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                DELIVERY_TOTAL.labels(form="direct", result="error").inc()
                logger.warning(
                    "Direct send %d/%d for transaction %s failed: %s", attempt, attempts, transaction_id, exc
                )
                if attempt < attempts:
                    await self._sleep(self._settings.direct_send_pause_ms / 1000.0)

        if quote_id:
            try:
                await self._transport.deliver(destination, text, quote_id=quote_id)
                DELIVERY_TOTAL.labels(form="quote", result="ok").inc()
                await self._finish(transaction_id)
                return True
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                DELIVERY_TOTAL.labels(form="quote", result="error").inc()
                logger.warning("Quoted send for transaction %s failed: %s", transaction_id, exc)

        error_text = str(last_exc) if last_exc is not None else "delivery failed"
        await self._notifications.save(
            destination,
            text,
            transaction_id=transaction_id,
            quote_id=quote_id,
            recovery_data=tx.recovery_data,
            error=error_text,
        )
        if response is not None:
            await self._ledger.record_delivery_failure(transaction_id, error_text, ErrorKind.GENERAL)
        logger.error("Delivery for transaction %s deferred to pending notifications", transaction_id)
        return False

    async def send_notice(self, destination: str, text: str, quote_id: Optional[str] = None) -> bool:
        """Best-effort informational message; failures are logged only."""
        try:
            await self._transport.deliver(destination, text, quote_id=quote_id)
        except Exception as exc:  # noqa: BLE001
            DELIVERY_TOTAL.labels(form="notice", result="error").inc()
            logger.warning("Notice to %s failed: %s", destination, exc)
            return False
        DELIVERY_TOTAL.labels(form="notice", result="ok").inc()
        return True

    async def process_pending_notifications(self) -> dict[str, int]:
        """Retry stored notifications once each; return counts per outcome."""
        summary = {"sent": 0, "failed": 0, "skipped": 0, "dropped": 0}
        records = await self._notifications.list_pending()
        min_age_ms = int(self._settings.notification_min_age_s * 1000)
        now_ms = int(self._clock() * 1000)
        for index, record in enumerate(records):
            if now_ms - record.created_at < min_age_ms:
                summary["skipped"] += 1
                continue
            if index > 0:
                await self._sleep(self._settings.notification_pause_ms / 1000.0)

            if record.transaction_id:
                tx = await self._ledger.get(record.transaction_id)
                if tx is not None and tx.status == STATUS_DELIVERED:
                    # Answered through another path already
                    await self._notifications.delete(record.id)
                    PENDING_NOTIFICATION_TOTAL.labels(event="dropped").inc()
                    summary["dropped"] += 1
                    continue

            try:
                await self._transport.deliver(record.destination, record.content, quote_id=record.quote_id)
            except Exception as exc:  # noqa: BLE001
                DELIVERY_TOTAL.labels(form="pending", result="error").inc()
                await self._notifications.record_attempt(record.id, str(exc))
                summary["failed"] += 1
                continue

            DELIVERY_TOTAL.labels(form="pending", result="ok").inc()
            PENDING_NOTIFICATION_TOTAL.labels(event="sent").inc()
            await self._notifications.delete(record.id)
            if record.transaction_id:
                await self._finish(record.transaction_id)
            summary["sent"] += 1

        if summary["sent"] or summary["failed"] or summary["dropped"]:
            logger.info("Pending notification sweep: %s", summary)
        return summary

    async def _finish(self, transaction_id: str) -> None:
        tx = await self._ledger.get(transaction_id)
        if tx is None or tx.status in TERMINAL_STATUSES:
            return
        await self._ledger.mark_delivered(transaction_id)
