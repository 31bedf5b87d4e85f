import pytest

from fakes import FakeTransport
from media_pipeline.config import Settings
from media_pipeline.dispatcher import ResultDispatcher, resolve_route
from media_pipeline.errors import ErrorKind
from media_pipeline.ledger import TransactionLedger
from media_pipeline.models import InboundEvent, RecoveryData
from media_pipeline.notifications import PendingNotificationStore


def _settings(**overrides) -> Settings:
    values = dict(direct_send_attempts=3, direct_send_pause_ms=2000, notification_pause_ms=0, notification_min_age_s=0)
    values.update(overrides)
    return Settings(**values)


async def _transaction(ledger: TransactionLedger, *, response: str | None = "A red bicycle."):
    tx = await ledger.create(
        InboundEvent(submission_id="m1", conversation_id="chat-1", origin_id="m1", content_ref="/tmp/a.jpg", mime_type="image/jpeg")
    )
    await ledger.attach_recovery_data(
        tx.id, RecoveryData(destination="chat-1", origin_id="m1", submission_id="m1", content_ref="/tmp/a.jpg")
    )
    await ledger.mark_processing(tx.id)
    if response is not None:
        await ledger.attach_response(tx.id, response)
    return await ledger.get(tx.id)


def _dispatcher(transport, settings):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    ledger = TransactionLedger(settings)
    notifications = PendingNotificationStore(settings)
    dispatcher = ResultDispatcher(transport, ledger, notifications, settings, sleep=sleep)
    return dispatcher, ledger, notifications, sleeps


@pytest.mark.asyncio
async def test_direct_send_marks_delivered(db):
    transport = FakeTransport()
    dispatcher, ledger, _, _ = _dispatcher(transport, _settings())
    tx = await _transaction(ledger)

    assert await dispatcher.deliver(tx.id, response=tx.response) is True
    assert transport.sent == [("chat-1", "A red bicycle.", None)]
    assert (await ledger.get(tx.id)).status == "delivered"
    # Already delivered: no second send
    assert await dispatcher.deliver(tx.id, response=tx.response) is True
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_falls_back_to_quoted_reply_after_direct_attempts(db):
    transport = FakeTransport(fail_times=3)
    dispatcher, ledger, _, sleeps = _dispatcher(transport, _settings())
    tx = await _transaction(ledger)

    assert await dispatcher.deliver(tx.id, response=tx.response) is True
    assert transport.calls == 4
    assert transport.sent == [("chat-1", "A red bicycle.", "m1")]
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_total_failure_saves_pending_notification(db):
    transport = FakeTransport(fail_all=True)
    dispatcher, ledger, notifications, _ = _dispatcher(transport, _settings())
    tx = await _transaction(ledger)

    assert await dispatcher.deliver(tx.id, response=tx.response) is False
    pending = await notifications.list_pending()
    assert len(pending) == 1
    assert pending[0].content == "A red bicycle."
    assert pending[0].quote_id == "m1"
    assert await notifications.has_pending(tx.id)
    updated = await ledger.get(tx.id)
    assert updated.status == "failure_temporary"
    assert updated.attempts == 1


@pytest.mark.asyncio
async def test_error_delivery_uses_user_message(db):
    transport = FakeTransport()
    dispatcher, ledger, _, _ = _dispatcher(transport, _settings())
    tx = await _transaction(ledger, response=None)

    assert await dispatcher.deliver(tx.id, error=ErrorKind.FILE_TOO_LARGE, media_kind="image") is True
    assert "too large" in transport.texts[0]
    assert (await ledger.get(tx.id)).status == "delivered"


@pytest.mark.asyncio
async def test_sweep_sends_pending_and_marks_delivered(db):
    transport = FakeTransport(fail_all=True)
    dispatcher, ledger, notifications, _ = _dispatcher(transport, _settings())
    tx = await _transaction(ledger)
    await dispatcher.deliver(tx.id, response=tx.response)

    transport.fail_all = False
    summary = await dispatcher.process_pending_notifications()
    assert summary["sent"] == 1
    assert transport.sent[-1] == ("chat-1", "A red bicycle.", "m1")
    assert await notifications.list_pending() == []
    assert (await ledger.get(tx.id)).status == "delivered"


@pytest.mark.asyncio
async def test_sweep_drops_records_already_delivered(db):
    transport = FakeTransport()
    dispatcher, ledger, notifications, _ = _dispatcher(transport, _settings())
    tx = await _transaction(ledger)
    await notifications.save("chat-1", "A red bicycle.", transaction_id=tx.id, quote_id="m1")
    await ledger.mark_delivered(tx.id)

    summary = await dispatcher.process_pending_notifications()
    assert summary["dropped"] == 1
    assert transport.sent == []
    assert await notifications.list_pending() == []


@pytest.mark.asyncio
async def test_sweep_abandons_at_attempt_ceiling(db):
    transport = FakeTransport(fail_all=True)
    dispatcher, _, notifications, _ = _dispatcher(transport, _settings(notification_max_attempts=2))
    await notifications.save("chat-9", "hello", error="down")

    await dispatcher.process_pending_notifications()
    assert len(await notifications.list_pending()) == 1
    await dispatcher.process_pending_notifications()
    assert await notifications.list_pending() == []
    abandoned = await notifications.list_abandoned()
    assert [n.attempts for n in abandoned] == [2]


@pytest.mark.asyncio
async def test_sweep_skips_fresh_records(db):
    transport = FakeTransport()
    dispatcher, _, notifications, _ = _dispatcher(transport, _settings(notification_min_age_s=60))
    await notifications.save("chat-9", "hello")

    summary = await dispatcher.process_pending_notifications()
    assert summary["skipped"] == 1
    assert transport.sent == []


def test_resolve_route_prefers_recovery_data():
    from media_pipeline.models import Transaction

    tx = Transaction(
        id="tx_1",
        submission_id="m1",
        conversation_id="fallback-chat",
        origin_id="orig",
        kind="image",
        status="processing",
        recovery_data={"destination": "chat-1", "origin_id": "m1"},
        created_at=0,
        updated_at=0,
    )
    assert resolve_route(tx) == ("chat-1", "m1")
    assert resolve_route(tx.model_copy(update={"recovery_data": None})) == ("fallback-chat", "orig")
