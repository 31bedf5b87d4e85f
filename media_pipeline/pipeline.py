"""Pipeline assembly: queues, stage workers and the inbound entry point.

``MediaPipeline`` wires the collaborators together, owns one queue per stage
and exposes ``submit`` for inbound events. Everything else (recovery sweeps,
status reports, scripts) works through the objects it exposes.

Example:
    >>> pipeline = MediaPipeline(settings, transport=transport, inference=client)
    >>> await pipeline.start()
    >>> tx = await pipeline.submit(InboundEvent(submission_id="m1", conversation_id="c1",
    ...                                         origin_id="m1", content_ref="/tmp/cat.jpg",
    ...                                         mime_type="image/jpeg"))
    >>> await pipeline.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from media_pipeline.circuit_breaker import CircuitBreaker
from media_pipeline.config import Settings
from media_pipeline.constants import (
    KIND_IMAGE,
    KIND_VIDEO,
    MEDIA_KINDS,
    STAGE_ANALYSIS,
    STAGE_ENTRY,
    STAGE_PROCESSING_CHECK,
    STAGE_UPLOAD,
    STAGES,
)
from media_pipeline.conversation_config import ConfigProvider, SqlConfigProvider
from media_pipeline.dedup import DedupCache
from media_pipeline.dispatcher import ResultDispatcher
from media_pipeline.errors import ErrorKind, PipelineError
from media_pipeline.inference import InferenceClient
from media_pipeline.jobs import EntryJob
from media_pipeline.ledger import TransactionLedger, infer_kind
from media_pipeline.messages import media_disabled_message
from media_pipeline.models import InboundEvent, RecoveryData, Transaction
from media_pipeline.notifications import PendingNotificationStore
from media_pipeline.problems import ProblemJobStore, replay_problem_jobs
from media_pipeline.queues import ActiveJob, InMemoryStageQueue, KindLanes, QueueCounts, StageQueue
from media_pipeline.report import StatusReport, build_status_report
from media_pipeline.stages import StageContext, StageWorker, build_stage_workers
from media_pipeline.transport import Transport

logger = logging.getLogger(__name__)

QueueFactory = Callable[[str, int], StageQueue]

_DEFAULT_MIME = {KIND_IMAGE: "image/jpeg", KIND_VIDEO: "video/mp4"}

# Stages whose jobs still need the local media file
_LOCAL_FILE_STAGES = (STAGE_ENTRY, STAGE_UPLOAD)


def analysis_lane(kind: str) -> str:
    return f"{STAGE_ANALYSIS}.{kind}"


def workers_for(settings: Settings, stage: str) -> int:
    if stage == STAGE_ENTRY:
        return settings.entry_workers
    if stage == STAGE_UPLOAD:
        return settings.upload_workers
    if stage == STAGE_PROCESSING_CHECK:
        return settings.processing_check_workers
    if stage == analysis_lane(KIND_VIDEO):
        return settings.video_analysis_workers
    if stage == analysis_lane(KIND_IMAGE):
        return settings.image_analysis_workers
    raise ValueError(f"unknown stage queue: {stage}")


def build_stage_queues(settings: Settings, factory: QueueFactory) -> dict[str, StageQueue]:
    """One queue per stage; analysis gets a separate pool per media kind."""
    queues: dict[str, StageQueue] = {
        stage: factory(stage, workers_for(settings, stage)) for stage in STAGES if stage != STAGE_ANALYSIS
    }
    queues[STAGE_ANALYSIS] = KindLanes(
        STAGE_ANALYSIS,
        {kind: factory(analysis_lane(kind), workers_for(settings, analysis_lane(kind))) for kind in (KIND_VIDEO, KIND_IMAGE)},
    )
    return queues


class MediaPipeline:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Transport,
        inference: InferenceClient,
        config_provider: Optional[ConfigProvider] = None,
        queue_factory: Optional[QueueFactory] = None,
        ledger: Optional[TransactionLedger] = None,
        notifications: Optional[PendingNotificationStore] = None,
        problems: Optional[ProblemJobStore] = None,
        dedup: Optional[DedupCache] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        s = self.settings
        self.ledger = ledger or TransactionLedger(s, clock=clock)
        self.notifications = notifications or PendingNotificationStore(s, clock=clock)
        self.problems = problems or ProblemJobStore(clock=clock)
        self.dedup = dedup or DedupCache(s.dedup_window_s)
        self.breaker = breaker or CircuitBreaker(s.breaker_failure_limit, s.breaker_reset_ms)
        self.config_provider = config_provider or SqlConfigProvider()
        self.dispatcher = ResultDispatcher(transport, self.ledger, self.notifications, s, clock=clock)

        factory = queue_factory or (lambda name, workers: InMemoryStageQueue(name, workers))
        self.queues = build_stage_queues(s, factory)
        self.ctx = StageContext(
            settings=s,
            ledger=self.ledger,
            dispatcher=self.dispatcher,
            inference=inference,
            breaker=self.breaker,
            config_provider=self.config_provider,
            problems=self.problems,
            queues=self.queues,
            clock=clock,
        )
        self.workers: dict[str, StageWorker] = build_stage_workers(self.ctx)
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        for stage in STAGES:
            await self.queues[stage].start(self.workers[stage].handle)
        self._started = True
        logger.info("Media pipeline started (%s)", ", ".join(STAGES))

    async def stop(self) -> None:
        for stage in STAGES:
            await self.queues[stage].stop()
        self._started = False
        logger.info("Media pipeline stopped")

    async def submit(self, event: InboundEvent) -> Optional[Transaction]:
        """Accept an inbound event; returns the new transaction, or None when dropped."""
        if not self.dedup.check_and_mark(event.submission_id):
            logger.info("Duplicate submission %s ignored", event.submission_id)
            return None
        try:
            return await self._accept(event)
        except Exception:
            # Nothing was enqueued; a redelivery must not be taken for a duplicate
            self.dedup.forget(event.submission_id)
            raise

    async def _accept(self, event: InboundEvent) -> Optional[Transaction]:
        kind = event.kind or infer_kind(event.mime_type)
        if kind not in MEDIA_KINDS:
            logger.info("Submission %s of kind %s is not handled by the media pipeline", event.submission_id, kind)
            return None
        if not event.content_ref:
            logger.warning("Submission %s has no content reference", event.submission_id)
            return None

        config = await self.config_provider.get_config(event.conversation_id)
        enabled = config.media_image_enabled if kind == KIND_IMAGE else config.media_video_enabled
        if not enabled:
            await self.dispatcher.send_notice(
                event.conversation_id, media_disabled_message(kind), quote_id=event.origin_id
            )
            return None

        mime_type = event.mime_type or _DEFAULT_MIME[kind]
        tx = await self.ledger.create(event.model_copy(update={"kind": kind, "mime_type": mime_type}))
        await self.ledger.attach_recovery_data(
            tx.id,
            RecoveryData(
                destination=event.conversation_id,
                origin_id=event.origin_id,
                submission_id=event.submission_id,
                content_ref=event.content_ref,
                mime_type=mime_type,
                user_prompt=event.text or "",
                sender_name=event.sender_name,
            ),
        )
        job = EntryJob(
            transaction_id=tx.id,
            submission_id=event.submission_id,
            conversation_id=event.conversation_id,
            origin_id=event.origin_id,
            kind=kind,
            content_ref=event.content_ref,
            mime_type=mime_type,
            user_prompt=event.text or "",
            description_mode=config.description_mode,
            sender_name=event.sender_name,
        )
        await self.queues[STAGE_ENTRY].enqueue(job)
        logger.info("Submission %s accepted as %s (%s)", event.submission_id, tx.id, kind)
        return tx

    async def clean_stalled_jobs(self) -> dict[str, int]:
        """Fail jobs whose local media is gone; flag long-running active jobs.

        Ghost jobs are removed from their queue and failed through the
        stage's terminal path, so the user still gets one message. Active
        jobs are only reported.
        """
        summary = {"ghosts": 0, "stalled": 0}
        now = time.time()
        for stage in _LOCAL_FILE_STAGES:
            queue = self.queues[stage]
            for job in await queue.pending_jobs():
                if Path(job.content_ref).exists():
                    continue
                if not await queue.remove(job.job_id):
                    continue
                summary["ghosts"] += 1
                logger.warning("[%s] ghost job %s: %s no longer exists", stage, job.job_id, job.content_ref)
                await self.workers[stage].fail(
                    job, PipelineError(ErrorKind.GENERAL, f"local media {job.content_ref} missing", terminal=True)
                )
        for stage in STAGES:
            for active in self.queues[stage].active_jobs():
                if active.running_for(now) > self.settings.stalled_job_age_s:
                    summary["stalled"] += 1
                    logger.warning(
                        "[%s] job %s for transaction %s active for %.0fs",
                        stage,
                        active.job_id,
                        active.job.transaction_id,
                        active.running_for(now),
                    )
        if summary["ghosts"] or summary["stalled"]:
            logger.info("Stalled job cleanup: %s", summary)
        return summary

    async def queue_counts(self) -> dict[str, QueueCounts]:
        return {stage: await self.queues[stage].counts() for stage in STAGES}

    def active_jobs(self) -> dict[str, list[ActiveJob]]:
        return {stage: self.queues[stage].active_jobs() for stage in STAGES}

    async def purge_queues(self, mode: str) -> dict[str, int]:
        if mode not in ("completed", "all"):
            raise ValueError(f"unknown purge mode: {mode}")
        return {stage: await self.queues[stage].purge(mode) for stage in STAGES}  # type: ignore[arg-type]

    async def wait_idle(self, poll_s: float = 0.01) -> None:
        """Wait until every in-process queue is empty and idle."""
        while True:
            idle = True
            for queue in self.queues.values():
                check = getattr(queue, "is_idle", None)
                if check is not None and not check():
                    idle = False
                    break
            if idle:
                return
            await asyncio.sleep(poll_s)

    async def status_report(self) -> StatusReport:
        return await build_status_report(
            self.queues,
            self.problems,
            self.settings,
            ledger=self.ledger,
            circuit_state=self.breaker.state.value,
        )

    async def replay_problem_jobs(self, limit: int = 10, stage: Optional[str] = None) -> list[dict]:
        return await replay_problem_jobs(
            self.problems, self.queues, self.ledger, notifications=self.notifications, limit=limit, stage=stage
        )
