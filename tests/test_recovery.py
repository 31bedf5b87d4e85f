import asyncio
import time

import pytest

from fakes import FakeTransport
from media_pipeline.config import Settings
from media_pipeline.dispatcher import ResultDispatcher
from media_pipeline.errors import ErrorKind
from media_pipeline.ledger import TransactionLedger
from media_pipeline.models import InboundEvent, RecoveryData, Transaction
from media_pipeline.notifications import PendingNotificationStore
from media_pipeline.recovery import RecoveryService


async def _no_sleep(_seconds):
    return None


def _service(transport, settings=None, clock=None):
    settings = settings or Settings(notification_min_age_s=0, pending_transaction_age_s=0, recovery_min_idle_s=0)
    ledger = TransactionLedger(settings, clock=clock or time.time)
    notifications = PendingNotificationStore(settings)
    dispatcher = ResultDispatcher(transport, ledger, notifications, settings, sleep=_no_sleep)
    return RecoveryService(ledger, dispatcher, notifications, settings), ledger, notifications


async def _crashed_before_delivery(ledger: TransactionLedger, n: int = 1):
    tx = await ledger.create(
        InboundEvent(submission_id=f"m{n}", conversation_id="c1", origin_id=f"m{n}", mime_type="image/jpeg")
    )
    await ledger.attach_recovery_data(
        tx.id, RecoveryData(destination="c1", origin_id=f"m{n}", submission_id=f"m{n}")
    )
    # The reply landed before processing was recorded; the status stays "created"
    assert (await ledger.attach_response(tx.id, "Stored reply")).status == "created"
    await ledger.mark_processing(tx.id)
    return tx


@pytest.mark.asyncio
async def test_startup_recovery_delivers_exactly_once(db):
    transport = FakeTransport()
    recovery, ledger, _ = _service(transport)
    tx = await _crashed_before_delivery(ledger)

    first = await recovery.recover_incomplete()
    assert first["delivered"] == 1
    assert transport.texts == ["Stored reply"]
    recovered = await ledger.get(tx.id)
    assert recovered.status == "delivered"
    assert "recovery_in_progress" in [h.status for h in recovered.history]

    second = await recovery.recover_incomplete()
    assert second == {"delivered": 0, "failed": 0, "skipped": 0}
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_recovery_leaves_pending_notifications_to_the_sweep(db):
    transport = FakeTransport()
    recovery, ledger, notifications = _service(transport)
    tx = await _crashed_before_delivery(ledger)
    await notifications.save("c1", "Stored reply", transaction_id=tx.id, quote_id="m1")

    summary = await recovery.recover_incomplete()
    assert summary["skipped"] == 1
    assert transport.sent == []


@pytest.mark.asyncio
async def test_pending_transaction_retry(db):
    now = [1_700_000_000.0]
    transport = FakeTransport()
    recovery, ledger, _ = _service(transport, clock=lambda: now[0])
    tx = await _crashed_before_delivery(ledger)
    await ledger.record_delivery_failure(tx.id, "send failed", ErrorKind.GENERAL)
    now[0] += 1

    summary = await recovery.retry_pending_transactions()
    assert summary["delivered"] == 1
    assert (await ledger.get(tx.id)).status == "delivered"
    assert transport.texts == ["Stored reply"]


@pytest.mark.asyncio
async def test_retention_reports_each_store(db):
    recovery, _, _ = _service(FakeTransport())
    assert await recovery.run_retention() == {"transactions": 0, "notifications": 0}


def _idle_settings() -> Settings:
    return Settings(notification_min_age_s=0, pending_transaction_age_s=0, recovery_min_idle_s=60)


@pytest.mark.asyncio
async def test_concurrent_recoverers_deliver_once(db):
    now = [1_700_000_000.0]
    transport = FakeTransport()
    first, ledger, _ = _service(transport, settings=_idle_settings(), clock=lambda: now[0])
    second, _, _ = _service(transport, settings=_idle_settings(), clock=lambda: now[0])
    tx = await _crashed_before_delivery(ledger)
    now[0] += 120

    summaries = await asyncio.gather(first.recover_incomplete(), second.recover_incomplete())

    assert sum(s["delivered"] for s in summaries) == 1
    assert transport.texts == ["Stored reply"]
    assert (await ledger.get(tx.id)).status == "delivered"


@pytest.mark.asyncio
async def test_recently_touched_transaction_is_left_to_its_worker(db):
    now = [1_700_000_000.0]
    transport = FakeTransport()
    recovery, ledger, _ = _service(transport, settings=_idle_settings(), clock=lambda: now[0])
    tx = await _crashed_before_delivery(ledger)
    now[0] += 5

    summary = await recovery.recover_incomplete()

    assert summary == {"delivered": 0, "failed": 0, "skipped": 1}
    assert transport.sent == []
    assert (await ledger.get(tx.id)).status == "processing"


@pytest.mark.asyncio
async def test_orphaned_claim_is_taken_over_once_idle(db):
    now = [1_700_000_000.0]
    transport = FakeTransport()
    recovery, ledger, _ = _service(transport, settings=_idle_settings(), clock=lambda: now[0])
    tx = await _crashed_before_delivery(ledger)
    # A recoverer claimed it and died before sending
    assert (await ledger.claim_for_redelivery(tx.id, min_idle_s=0)).status == "recovery_in_progress"
    assert await ledger.claim_for_redelivery(tx.id, min_idle_s=60) is None
    now[0] += 120

    summary = await recovery.recover_incomplete()

    assert summary["delivered"] == 1
    assert transport.texts == ["Stored reply"]


@pytest.mark.asyncio
async def test_redelivery_without_stored_reply_is_skipped(db):
    transport = FakeTransport()
    recovery, _, _ = _service(transport)
    tx = Transaction(
        id="tx_1", submission_id="m1", conversation_id="c1", origin_id="m1",
        kind="image", status="recovery_in_progress", created_at=0, updated_at=0,
    )
    summary = {"delivered": 0, "failed": 0, "skipped": 0}

    await recovery._redeliver(tx, "startup", summary)

    assert summary["skipped"] == 1
    assert transport.sent == []
