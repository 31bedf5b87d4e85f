import time

import pytest

from media_pipeline.config import Settings
from media_pipeline.errors import ErrorKind
from media_pipeline.jobs import EntryJob, ProcessingCheckJob, UploadJob
from media_pipeline.ledger import TransactionLedger
from media_pipeline.models import InboundEvent
from media_pipeline.notifications import PendingNotificationStore
from media_pipeline.problems import ProblemJobStore, replay_problem_jobs
from media_pipeline.queues import ActiveJob, InMemoryStageQueue, QueueCounts
from media_pipeline.report import build_status_report, compute_alerts, format_report, success_rate


class StaticQueue:
    def __init__(self, name, counts, active=()):
        self.name = name
        self._counts = counts
        self._active = list(active)

    async def counts(self):
        return QueueCounts(**vars(self._counts))

    def active_jobs(self):
        return self._active


def _entry(tx_id: str = "tx_1") -> EntryJob:
    return EntryJob(
        transaction_id=tx_id,
        submission_id="m1",
        conversation_id="c1",
        origin_id="m1",
        kind="video",
        content_ref="/tmp/v.mp4",
        mime_type="video/mp4",
    )


def test_success_rate():
    assert success_rate(QueueCounts()) is None
    assert success_rate(QueueCounts(completed=9, failed=1)) == 90.0
    assert success_rate(QueueCounts(completed=2, failed=1)) == 66.7


def test_alert_thresholds():
    s = Settings()
    assert compute_alerts(QueueCounts(waiting=10), s) == []
    assert [a.level for a in compute_alerts(QueueCounts(waiting=11), s)] == ["warning"]
    assert [a.level for a in compute_alerts(QueueCounts(waiting=21), s)] == ["critical"]
    # No fail-rate alert until something completed
    assert compute_alerts(QueueCounts(failed=5), s) == []
    assert [a.level for a in compute_alerts(QueueCounts(completed=85, failed=15), s)] == ["warning"]
    assert [a.level for a in compute_alerts(QueueCounts(completed=70, failed=30), s)] == ["critical"]


@pytest.mark.asyncio
async def test_status_report_totals_and_long_running(db):
    problems = ProblemJobStore()
    await problems.record(_entry(), ErrorKind.GENERAL, "boom")
    now = time.time()
    stuck = ActiveJob(_entry("tx_9"), started_at=now - 600)
    queues = {
        "entry": StaticQueue("entry", QueueCounts(waiting=2, completed=15)),
        "analysis": StaticQueue("analysis", QueueCounts(active=1, completed=3, delayed=1), [stuck]),
    }

    report = await build_status_report(queues, problems, Settings(), circuit_state="closed", now=now)

    assert list(report.stages) == ["entry", "upload", "processing_check", "analysis"]
    assert report.stages["entry"].failed == 1
    assert report.totals == QueueCounts(waiting=2, active=1, completed=18, failed=1, delayed=1)
    assert report.success_rate == 94.7
    assert [j["transaction_id"] for j in report.long_running] == ["tx_9"]
    assert report.recent_problems[0]["classification"] == "general"
    assert report.alerts == []

    text = format_report(report)
    assert "| TOTAL" in text
    assert "Success rate: 94.7%" in text
    assert "Circuit breaker: closed" in text
    assert "LONG-RUNNING JOBS" in text
    assert "none (2 waiting)" in text


@pytest.mark.asyncio
async def test_empty_report_has_no_success_rate(db):
    report = await build_status_report({}, ProblemJobStore(), Settings())
    assert report.success_rate is None
    assert "Success rate: N/A" in format_report(report)


@pytest.mark.asyncio
async def test_replay_problem_jobs(db):
    ledger = TransactionLedger(Settings())
    problems = ProblemJobStore()
    live = await ledger.create(InboundEvent(submission_id="m1", conversation_id="c1", origin_id="m1", mime_type="video/mp4"))
    done = await ledger.create(InboundEvent(submission_id="m2", conversation_id="c1", origin_id="m2", mime_type="video/mp4"))
    await ledger.mark_processing(done.id)
    await ledger.mark_delivered(done.id)

    check = ProcessingCheckJob.from_upload(
        UploadJob.from_entry(_entry(live.id)), file_name="files/1", upload_timestamp=0.0
    ).model_copy(update={"poll_attempt": 12, "attempt": 2})
    await problems.record(check, ErrorKind.FILE_EXPIRED, "expired")
    await problems.record(_entry(done.id), ErrorKind.GENERAL, "boom")

    queues = {"processing_check": InMemoryStageQueue("processing_check"), "entry": InMemoryStageQueue("entry")}
    dry = await replay_problem_jobs(problems, queues, ledger, dry_run=True)
    assert [r["transaction_id"] for r in dry] == [live.id]
    assert await queues["processing_check"].pending_jobs() == []

    replayed = await replay_problem_jobs(problems, queues, ledger)
    assert [r["transaction_id"] for r in replayed] == [live.id]
    [job] = await queues["processing_check"].pending_jobs()
    assert job.attempt == 0
    assert job.poll_attempt == 0
    assert job.upload_timestamp > 0
    assert await queues["entry"].pending_jobs() == []
    # Both rows are consumed
    assert await problems.fetch_replayable() == []


async def _failed_transaction(ledger: TransactionLedger, n: int, failures: int):
    tx = await ledger.create(
        InboundEvent(submission_id=f"m{n}", conversation_id="c1", origin_id=f"m{n}", mime_type="video/mp4")
    )
    await ledger.mark_processing(tx.id)
    for _ in range(failures):
        await ledger.record_delivery_failure(tx.id, "analysis timed out", ErrorKind.TIMEOUT)
    return tx


@pytest.mark.asyncio
async def test_replay_only_reaches_users_without_an_answer(db):
    settings = Settings(notification_max_attempts=1)
    ledger = TransactionLedger(settings)
    problems = ProblemJobStore()
    notifications = PendingNotificationStore(settings)

    answered = await _failed_transaction(ledger, 1, failures=3)
    queued = await _failed_transaction(ledger, 2, failures=1)
    abandoned = await _failed_transaction(ledger, 3, failures=1)
    assert (await ledger.get(answered.id)).status == "failure_permanent"
    await notifications.save("c1", "Processing took too long", transaction_id=queued.id)
    lost = await notifications.save("c1", "Processing took too long", transaction_id=abandoned.id)
    assert (await notifications.record_attempt(lost.id, "transport down")).delivery_status == "abandoned"

    for tx in (answered, queued, abandoned):
        await problems.record(_entry(tx.id), ErrorKind.TIMEOUT, "analysis timed out")

    queues = {"entry": InMemoryStageQueue("entry")}
    replayed = await replay_problem_jobs(problems, queues, ledger, notifications=notifications)

    assert [r["transaction_id"] for r in replayed] == [abandoned.id]
    assert [j.transaction_id for j in await queues["entry"].pending_jobs()] == [abandoned.id]
    # The answered row is consumed; the queued one waits for the notification sweep
    assert [r["transaction_id"] for r in await problems.fetch_replayable()] == [queued.id]
