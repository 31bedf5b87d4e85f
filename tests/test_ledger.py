import pytest

from media_pipeline.config import Settings
from media_pipeline.errors import ErrorKind
from media_pipeline.ledger import TransactionLedger, infer_kind
from media_pipeline.models import InboundEvent, RecoveryData


class Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _event(n: int = 1, mime: str = "image/jpeg") -> InboundEvent:
    return InboundEvent(
        submission_id=f"m{n}",
        conversation_id="c1",
        origin_id=f"m{n}",
        content_ref=f"/tmp/f{n}.jpg",
        mime_type=mime,
    )


def _recovery(n: int = 1) -> RecoveryData:
    return RecoveryData(destination="c1", origin_id=f"m{n}", submission_id=f"m{n}", content_ref=f"/tmp/f{n}.jpg")


def test_infer_kind():
    assert infer_kind("image/png") == "image"
    assert infer_kind("VIDEO/mp4") == "video"
    assert infer_kind("audio/ogg") == "audio"
    assert infer_kind(None) == "text"


@pytest.mark.asyncio
async def test_create_and_happy_path(db):
    ledger = TransactionLedger(Settings())
    tx = await ledger.create(_event())
    assert tx.id.startswith("tx_")
    assert tx.status == "created"
    assert tx.kind == "image"

    await ledger.attach_recovery_data(tx.id, _recovery())
    await ledger.mark_processing(tx.id)
    tx = await ledger.attach_response(tx.id, "A cat.")
    assert tx.status == "response_generated"
    tx = await ledger.mark_delivered(tx.id)
    assert tx.status == "delivered"
    assert [h.status for h in tx.history] == [
        "created",
        "created",
        "processing",
        "response_generated",
        "delivered",
    ]


@pytest.mark.asyncio
async def test_history_is_append_only(db):
    ledger = TransactionLedger(Settings())
    tx = await ledger.create(_event())
    before = (await ledger.get(tx.id)).history
    await ledger.mark_processing(tx.id)
    await ledger.record_delivery_failure(tx.id, "boom", ErrorKind.GENERAL)
    after = (await ledger.get(tx.id)).history
    assert len(after) == len(before) + 2
    assert after[: len(before)] == before


@pytest.mark.asyncio
async def test_invalid_transitions_are_rejected(db):
    ledger = TransactionLedger(Settings())
    tx = await ledger.create(_event())
    # created -> delivered is not a valid transition
    assert await ledger.mark_delivered(tx.id) is None
    assert await ledger.mark_processing("tx_missing") is None

    await ledger.mark_processing(tx.id)
    await ledger.attach_response(tx.id, "first")
    await ledger.mark_delivered(tx.id)
    # Terminal: nothing moves it anymore
    assert await ledger.mark_processing(tx.id) is None
    assert await ledger.record_delivery_failure(tx.id, "late", ErrorKind.GENERAL) is None
    assert (await ledger.get(tx.id)).status == "delivered"


@pytest.mark.asyncio
async def test_response_is_set_once(db):
    ledger = TransactionLedger(Settings())
    tx = await ledger.create(_event())
    await ledger.mark_processing(tx.id)
    assert await ledger.attach_response(tx.id, "first") is not None
    assert await ledger.attach_response(tx.id, "second") is None
    assert (await ledger.get(tx.id)).response == "first"


@pytest.mark.asyncio
async def test_permanent_failure_iff_threshold_reached(db):
    ledger = TransactionLedger(Settings(ledger_max_attempts=3))
    tx = await ledger.create(_event())
    await ledger.mark_processing(tx.id)

    first = await ledger.record_delivery_failure(tx.id, "e1", ErrorKind.TIMEOUT)
    assert (first.status, first.attempts) == ("failure_temporary", 1)
    second = await ledger.record_delivery_failure(tx.id, "e2", ErrorKind.TIMEOUT)
    assert (second.status, second.attempts) == ("failure_temporary", 2)
    third = await ledger.record_delivery_failure(tx.id, "e3", ErrorKind.TIMEOUT)
    assert (third.status, third.attempts) == ("failure_permanent", 3)
    assert third.last_error.startswith("timeout: e3")


@pytest.mark.asyncio
async def test_uncounted_failure_keeps_attempts(db):
    ledger = TransactionLedger(Settings(ledger_max_attempts=1))
    tx = await ledger.create(_event())
    updated = await ledger.record_delivery_failure(
        tx.id, "circuit open", ErrorKind.SERVICE_UNAVAILABLE, count_attempt=False
    )
    assert updated.attempts == 0
    assert updated.status == "failure_temporary"


@pytest.mark.asyncio
async def test_find_incomplete_needs_response_and_recovery_data(db):
    ledger = TransactionLedger(Settings())
    resumable = await ledger.create(_event(1))
    await ledger.attach_recovery_data(resumable.id, _recovery(1))
    await ledger.mark_processing(resumable.id)
    await ledger.attach_response(resumable.id, "reply")

    no_response = await ledger.create(_event(2))
    await ledger.attach_recovery_data(no_response.id, _recovery(2))
    await ledger.mark_processing(no_response.id)

    found = await ledger.find_incomplete()
    assert [t.id for t in found] == [resumable.id]
    assert found[0].recovery_data["destination"] == "c1"


@pytest.mark.asyncio
async def test_find_pending_retries_respects_age_and_attempts(db):
    clock = Clock()
    ledger = TransactionLedger(Settings(ledger_max_attempts=3), clock=clock)
    tx = await ledger.create(_event())
    await ledger.attach_recovery_data(tx.id, _recovery())
    await ledger.mark_processing(tx.id)
    await ledger.attach_response(tx.id, "reply")
    await ledger.record_delivery_failure(tx.id, "send failed", ErrorKind.GENERAL)

    assert await ledger.find_pending_retries(300) == []
    clock.now += 301
    assert [t.id for t in await ledger.find_pending_retries(300)] == [tx.id]


@pytest.mark.asyncio
async def test_purge_expired_only_removes_old_terminal(db):
    clock = Clock()
    ledger = TransactionLedger(Settings(transaction_retention_days=7), clock=clock)
    done = await ledger.create(_event(1))
    await ledger.mark_processing(done.id)
    await ledger.mark_delivered(done.id)
    in_flight = await ledger.create(_event(2))
    await ledger.mark_processing(in_flight.id)

    clock.now += 8 * 24 * 3600
    assert await ledger.purge_expired() == 1
    assert await ledger.get(done.id) is None
    assert (await ledger.get(in_flight.id)).status == "processing"


@pytest.mark.asyncio
async def test_stats(db):
    ledger = TransactionLedger(Settings())
    a = await ledger.create(_event(1))
    await ledger.mark_processing(a.id)
    await ledger.mark_delivered(a.id)
    await ledger.create(_event(2))

    stats = await ledger.stats()
    assert stats["total"] == 2
    assert stats["by_status"]["delivered"] == 1
    assert stats["by_status"]["created"] == 1
    assert stats["success_rate"] == 50.0
