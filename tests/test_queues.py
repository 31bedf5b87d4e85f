import asyncio

import pytest

from media_pipeline.jobs import EntryJob, UploadJob, parse_job, dump_job
from media_pipeline.queues import InMemoryStageQueue, KindLanes, QueueCounts


def _job(n: int = 1) -> EntryJob:
    return EntryJob(
        transaction_id=f"tx_{n}",
        submission_id=f"m{n}",
        conversation_id="c1",
        origin_id=f"m{n}",
        kind="image",
        content_ref=f"/tmp/f{n}.jpg",
        mime_type="image/jpeg",
    )


async def _wait_idle(queue: InMemoryStageQueue, timeout: float = 2.0) -> None:
    async def _poll():
        while not queue.is_idle():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


def test_job_hand_off_resets_attempt_and_keeps_routing():
    entry = _job().with_attempt(2)
    upload = UploadJob.from_entry(entry)
    assert upload.stage == "upload"
    assert upload.attempt == 0
    assert upload.transaction_id == entry.transaction_id
    assert upload.job_id != entry.job_id

    parsed = parse_job(dump_job(upload))
    assert isinstance(parsed, UploadJob)
    assert parsed == upload


@pytest.mark.asyncio
async def test_jobs_are_handled_and_counted():
    seen = []

    async def handler(job):
        seen.append(job.transaction_id)
        return "failed" if job.transaction_id == "tx_3" else "completed"

    queue = InMemoryStageQueue("entry", workers=2)
    await queue.start(handler)
    for n in (1, 2, 3):
        await queue.enqueue(_job(n))
    await _wait_idle(queue)
    await queue.stop()

    assert sorted(seen) == ["tx_1", "tx_2", "tx_3"]
    assert await queue.counts() == QueueCounts(completed=2, failed=1)


@pytest.mark.asyncio
async def test_handler_exception_counts_as_failed():
    async def handler(job):
        raise RuntimeError("boom")

    queue = InMemoryStageQueue("entry")
    await queue.start(handler)
    await queue.enqueue(_job())
    await _wait_idle(queue)
    await queue.stop()
    assert (await queue.counts()).failed == 1


@pytest.mark.asyncio
async def test_delayed_job_waits_without_a_worker_slot():
    handled = asyncio.Event()

    async def handler(job):
        handled.set()
        return "completed"

    queue = InMemoryStageQueue("upload")
    await queue.start(handler)
    await queue.enqueue(_job(), delay_ms=50)
    counts = await queue.counts()
    assert counts.delayed == 1
    assert counts.waiting == 0
    assert not queue.is_idle()

    await asyncio.wait_for(handled.wait(), 2)
    await _wait_idle(queue)
    await queue.stop()
    assert (await queue.counts()).completed == 1


@pytest.mark.asyncio
async def test_remove_waiting_and_delayed_jobs():
    queue = InMemoryStageQueue("entry")
    waiting = _job(1)
    delayed = _job(2)
    await queue.enqueue(waiting)
    await queue.enqueue(delayed, delay_ms=10_000)
    assert {j.job_id for j in await queue.pending_jobs()} == {waiting.job_id, delayed.job_id}

    assert await queue.remove(waiting.job_id) is True
    assert await queue.remove(delayed.job_id) is True
    assert await queue.remove("missing") is False
    assert queue.is_idle()

    # The removed job is skipped when a worker dequeues it
    handled = []

    async def handler(job):
        handled.append(job.job_id)
        return "completed"

    await queue.start(handler)
    await asyncio.sleep(0.02)
    await queue.stop()
    assert handled == []


@pytest.mark.asyncio
async def test_purge_modes():
    async def handler(job):
        return "completed"

    queue = InMemoryStageQueue("entry")
    await queue.start(handler)
    await queue.enqueue(_job(1))
    await _wait_idle(queue)
    await queue.stop()

    await queue.enqueue(_job(2))
    await queue.enqueue(_job(3), delay_ms=10_000)

    assert await queue.purge("completed") == 1
    assert (await queue.counts()).completed == 0
    assert await queue.purge("all") == 2
    assert await queue.counts() == QueueCounts()


@pytest.mark.asyncio
async def test_kind_lanes_route_by_media_kind():
    video = InMemoryStageQueue("analysis.video")
    image = InMemoryStageQueue("analysis.image")
    lanes = KindLanes("analysis", {"video": video, "image": image})

    await lanes.enqueue(_job(1))
    await lanes.enqueue(_job(2).model_copy(update={"kind": "video"}), delay_ms=10_000)

    assert [j.transaction_id for j in await image.pending_jobs()] == ["tx_1"]
    assert [j.transaction_id for j in await video.pending_jobs()] == ["tx_2"]
    assert await lanes.counts() == QueueCounts(waiting=1, delayed=1)
    assert await lanes.remove((await video.pending_jobs())[0].job_id) is True
    assert await lanes.purge("all") == 1
    assert lanes.is_idle()
