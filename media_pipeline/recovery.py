"""Crash recovery and periodic maintenance.

``RecoveryService`` replaces event-driven recovery signalling with explicit
queries against the ledger:

- ``recover_incomplete`` runs once at startup and re-delivers every
  transaction that already has its reply and recovery data
- ``retry_pending_transactions`` re-delivers temporarily failed
  transactions that have been idle for a while
- ``run_retention`` purges old terminal transactions and notifications

Transactions with an outstanding pending notification are left to the
notification sweep so a reply is never sent by two paths. Every redelivery
first claims its transaction (``TransactionLedger.claim_for_redelivery``);
only the caller whose conditional update wins sends the reply, so two worker
processes starting together, or a recoverer racing a stage worker that is
still delivering, answer once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from media_pipeline.config import Settings
from media_pipeline.constants import STATUS_FAILURE_TEMPORARY
from media_pipeline.dedup import DedupCache
from media_pipeline.dispatcher import ResultDispatcher
from media_pipeline.ledger import TransactionLedger
from media_pipeline.metrics import RECOVERY_REPLAY_TOTAL
from media_pipeline.models import Transaction
from media_pipeline.notifications import PendingNotificationStore

logger = logging.getLogger(__name__)


class RecoveryService:
    def __init__(
        self,
        ledger: TransactionLedger,
        dispatcher: ResultDispatcher,
        notifications: PendingNotificationStore,
        settings: Optional[Settings] = None,
        dedup: Optional[DedupCache] = None,
    ) -> None:
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._notifications = notifications
        self._settings = settings or Settings()
        self._dedup = dedup
        self._tasks: list[asyncio.Task[None]] = []

    async def recover_incomplete(self) -> dict[str, int]:
        """Deliver every resumable transaction from its stored reply."""
        summary = {"delivered": 0, "failed": 0, "skipped": 0}
        incomplete = await self._ledger.find_incomplete(include_claimed=True)
        if incomplete:
            logger.info("Startup recovery: %d incomplete transactions", len(incomplete))
        for tx in incomplete:
            if await self._notifications.has_pending(tx.id):
                summary["skipped"] += 1
                continue
            claimed = await self._ledger.claim_for_redelivery(tx.id, min_idle_s=self._settings.recovery_min_idle_s)
            if claimed is None:
                # Another recoverer or a live worker owns it
                summary["skipped"] += 1
                continue
            await self._redeliver(claimed, "startup", summary)
        return summary

    async def retry_pending_transactions(self) -> dict[str, int]:
        summary = {"delivered": 0, "failed": 0, "skipped": 0}
        candidates = await self._ledger.find_pending_retries(self._settings.pending_transaction_age_s)
        for tx in candidates:
            if await self._notifications.has_pending(tx.id):
                summary["skipped"] += 1
                continue
            claimed = await self._ledger.claim_for_redelivery(
                tx.id,
                min_idle_s=self._settings.pending_transaction_age_s,
                from_statuses=(STATUS_FAILURE_TEMPORARY,),
            )
            if claimed is None:
                summary["skipped"] += 1
                continue
            await self._redeliver(claimed, "pending", summary)
        if candidates:
            logger.info("Pending transaction sweep: %s", summary)
        return summary

    async def _redeliver(self, tx: Transaction, source: str, summary: dict[str, int]) -> None:
        if tx.response is None:
            logger.warning("Transaction %s has no stored reply; leaving it for its stage worker", tx.id)
            summary["skipped"] += 1
            return
        ok = await self._dispatcher.deliver(tx.id, response=tx.response)
        result = "delivered" if ok else "failed"
        summary[result] += 1
        RECOVERY_REPLAY_TOTAL.labels(source=source, result=result).inc()
        if ok:
            logger.info("Transaction %s re-delivered (%s)", tx.id, source)
        else:
            logger.warning("Transaction %s re-delivery failed (%s)", tx.id, source)

    async def run_retention(self) -> dict[str, int]:
        result = {
            "transactions": await self._ledger.purge_expired(),
            "notifications": await self._notifications.purge_older_than(),
        }
        if self._dedup is not None:
            result["dedup"] = self._dedup.sweep()
        return result

    async def start(self, stopping: asyncio.Event) -> None:
        """Schedule startup recovery and the periodic sweeps."""
        s = self._settings
        self._tasks = [
            asyncio.create_task(self._startup(stopping), name="startup-recovery"),
            asyncio.create_task(
                run_every(s.notification_sweep_interval_s, self._dispatcher.process_pending_notifications, stopping),
                name="notification-sweep",
            ),
            asyncio.create_task(
                run_every(s.pending_transaction_interval_s, self.retry_pending_transactions, stopping),
                name="pending-transaction-sweep",
            ),
            asyncio.create_task(
                run_every(s.retention_sweep_interval_s, self.run_retention, stopping),
                name="retention-sweep",
            ),
        ]
        if self._dedup is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._dedup.run_sweeper(s.dedup_sweep_interval_s, stopping), name="dedup-sweep"
                )
            )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _startup(self, stopping: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stopping.wait(), timeout=self._settings.recovery_delay_s)
            return
        except asyncio.TimeoutError:
            pass
        await self.recover_incomplete()


async def run_every(interval_s: float, job: Callable[[], Awaitable[object]], stopping: asyncio.Event) -> None:
    """Run ``job`` every ``interval_s`` seconds until ``stopping`` is set."""
    name = getattr(job, "__name__", "sweep")
    while not stopping.is_set():
        try:
            await asyncio.wait_for(stopping.wait(), timeout=interval_s)
            return
        except asyncio.TimeoutError:
            pass
        try:
            await job()
        except Exception:  # noqa: BLE001
            logger.exception("Periodic %s failed; will retry next interval", name)
