"""Stage workers: Entry, Upload, ProcessingCheck and Analysis.

Each worker handles the jobs of one stage queue and hands successors to the
next queue. The lifecycle around every job lives in ``StageWorker.handle``:

1. Open a span and run the stage's ``process``.
2. On failure, classify the exception and record it in the ledger.
3. Decide retry vs. terminal from the classification, the job's attempt
   counter and the ledger's own failure accounting (a transaction that is
   ``failure_permanent`` never retries).
4. Retry: re-enqueue the job on its own queue with a backoff delay.
   Terminal: clean up artifacts, store the job in the problem-jobs sink and
   send the user exactly one message derived from the classification.

``StageContext`` carries the collaborators every worker needs so they can be
swapped for fakes in tests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from media_pipeline.circuit_breaker import CircuitBreaker
from media_pipeline.config import Settings
from media_pipeline.constants import (
    FILE_ACTIVE,
    FILE_FAILED,
    FILE_PROCESSING,
    FILE_SUCCEEDED,
    KIND_VIDEO,
    STAGE_ANALYSIS,
    STAGE_ENTRY,
    STAGE_PROCESSING_CHECK,
    STAGE_UPLOAD,
    STATUS_DELIVERED,
    STATUS_FAILURE_PERMANENT,
)
from media_pipeline.conversation_config import ConfigProvider
from media_pipeline.dispatcher import ResultDispatcher
from media_pipeline.errors import CONTENT_KINDS, ErrorKind, PipelineError, classify
from media_pipeline.inference import FilePart, InferenceClient, clean_response_text, model_config_from_settings
from media_pipeline.jobs import AnalysisJob, EntryJob, JobBase, ProcessingCheckJob, UploadJob
from media_pipeline.ledger import TransactionLedger
from media_pipeline.messages import empty_response_fallback, long_wait_message, progress_message
from media_pipeline.metrics import (
    STAGE_JOB_LATENCY_SECONDS,
    STAGE_JOB_TOTAL,
    STAGE_RESCHEDULE_TOTAL,
    STAGE_RETRY_TOTAL,
)
from media_pipeline.problems import ProblemJobStore
from media_pipeline.prompts import SYSTEM_INSTRUCTION, build_prompt
from media_pipeline.queues import Outcome, StageQueue
from media_pipeline.retry import JobOptions, backoff_delay_ms, decide_retry
from media_pipeline.tracing import get_tracer

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Collaborators shared by all stage workers."""

    settings: Settings
    ledger: TransactionLedger
    dispatcher: ResultDispatcher
    inference: InferenceClient
    breaker: CircuitBreaker
    config_provider: ConfigProvider
    problems: ProblemJobStore
    queues: dict[str, StageQueue] = field(default_factory=dict)
    clock: Callable[[], float] = time.time


def job_options_for(settings: Settings, kind: str) -> JobOptions:
    """Job options for a media kind; videos back off from a longer base delay."""
    base = settings.video_retry_base_ms if kind == KIND_VIDEO else settings.image_retry_base_ms
    return JobOptions(
        max_attempts=settings.job_max_attempts,
        backoff_base_ms=base,
        backoff_cap_ms=settings.retry_cap_ms,
        quota_delay_ms=settings.quota_retry_delay_ms,
    )


class StageWorker:
    stage: str = ""

    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx
        self.settings = ctx.settings

    @property
    def queue(self) -> StageQueue:
        return self.ctx.queues[self.stage]

    def next_queue(self, stage: str) -> StageQueue:
        return self.ctx.queues[stage]

    async def process(self, job: Any) -> Optional[Outcome]:
        raise NotImplementedError

    async def handle(self, job: JobBase) -> Outcome:
        """Run one job through ``process`` and the failure policy."""
        start = time.perf_counter()
        tracer = get_tracer()
        with tracer.start_as_current_span(f"stage.{self.stage}") as span:
            span.set_attribute("job_id", job.job_id)
            span.set_attribute("transaction_id", job.transaction_id)
            span.set_attribute("attempt", job.attempt)
            logger.info(
                "[%s] job %s for transaction %s (attempt %d)",
                self.stage,
                job.job_id,
                job.transaction_id,
                job.attempt + 1,
            )
            try:
                outcome: Outcome = await self.process(job) or "completed"
            except Exception as exc:  # noqa: BLE001
                span.set_attribute("error.kind", classify(exc).value)
                outcome = await self.fail(job, exc)
        STAGE_JOB_TOTAL.labels(stage=self.stage, outcome=outcome).inc()
        STAGE_JOB_LATENCY_SECONDS.labels(stage=self.stage).observe(time.perf_counter() - start)
        return outcome

    async def fail(self, job: JobBase, exc: Exception) -> Outcome:
        """Apply the failure policy to ``job``; returns "retried" or "failed"."""
        kind = classify(exc)
        error_text = str(exc) or kind.value
        logger.warning(
            "[%s] job %s for transaction %s failed (%s): %s",
            self.stage,
            job.job_id,
            job.transaction_id,
            kind.value,
            error_text,
        )

        # A rejected call says nothing about this submission; don't spend an attempt on it
        tx = await self.ctx.ledger.record_delivery_failure(
            job.transaction_id,
            error_text,
            kind,
            count_attempt=kind is not ErrorKind.SERVICE_UNAVAILABLE,
        )
        if tx is None:
            current = await self.ctx.ledger.get(job.transaction_id)
            if current is None or current.status == STATUS_DELIVERED:
                logger.info("[%s] transaction %s already closed; dropping job %s", self.stage, job.transaction_id, job.job_id)
                await self.ctx.problems.record(job, kind, error_text, can_replay=False)
                return "failed"
            ledger_terminal = True
        else:
            ledger_terminal = tx.status == STATUS_FAILURE_PERMANENT

        decision = decide_retry(job.attempt, exc, job_options_for(self.settings, job.kind))
        if decision.should_retry and not ledger_terminal:
            await self.queue.enqueue(job.with_attempt(decision.next_attempt), delay_ms=decision.delay_ms)
            STAGE_RETRY_TOTAL.labels(stage=self.stage, classification=kind.value).inc()
            logger.info(
                "[%s] job %s retry %d scheduled in %d ms (%s)",
                self.stage,
                job.job_id,
                decision.next_attempt + 1,
                decision.delay_ms,
                decision.reason,
            )
            return "retried"

        await self.on_terminal(job, kind, error_text)
        await self.ctx.problems.record(job, kind, error_text)
        await self.ctx.dispatcher.deliver(job.transaction_id, error=kind, media_kind=job.kind)
        return "failed"

    # -------------------------
    # Artifact cleanup
    # -------------------------

    async def on_terminal(self, job: JobBase, kind: ErrorKind, error_text: str) -> None:
        """Terminal cleanup; safety-blocked media is kept and copied for audit."""
        if kind is ErrorKind.SAFETY_BLOCKED:
            await self.quarantine_blocked(job, error_text)
            return
        self.remove_local(job.content_ref)
        file_name = getattr(job, "file_name", None)
        if file_name:
            await self.delete_remote(file_name)

    def remove_local(self, path: str) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove local file %s: %s", path, exc)

    async def delete_remote(self, file_name: str) -> None:
        try:
            await self.ctx.inference.delete_file(file_name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not delete remote file %s: %s", file_name, exc)

    async def quarantine_blocked(self, job: JobBase, error_text: str) -> Optional[Path]:
        """Copy blocked media into the blocked directory with a JSON sidecar."""
        source = Path(job.content_ref)
        if not source.is_file():
            logger.warning("Blocked media %s is gone; nothing to keep", source)
            return None
        target_dir = Path(self.settings.blocked_media_dir)
        target = target_dir / f"{job.transaction_id}{source.suffix}"
        metadata = {
            "original_path": str(source),
            "blocked_at": self.ctx.clock(),
            "mime_type": job.mime_type,
            "classification": ErrorKind.SAFETY_BLOCKED.value,
            "error": error_text,
            "stage": self.stage,
            "origin_id": job.origin_id,
            "conversation_id": job.conversation_id,
            "submission_id": job.submission_id,
            "user_prompt": job.user_prompt,
            "transaction_id": job.transaction_id,
            "job_id": job.job_id,
        }

        def write() -> None:
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            target.with_suffix(".json").write_text(json.dumps(metadata, indent=2), encoding="utf-8")

        try:
            await asyncio.to_thread(write)
        except OSError as exc:
            logger.error("Could not keep blocked media %s: %s", source, exc)
            return None
        logger.warning("Blocked media for transaction %s kept at %s", job.transaction_id, target)
        return target

    async def notify(self, job: JobBase, text: str) -> bool:
        return await self.ctx.dispatcher.send_notice(job.conversation_id, text, quote_id=job.origin_id)


class EntryStage(StageWorker):
    """Pass-through kept so producers have one stable enqueue target."""

    stage = STAGE_ENTRY

    async def process(self, job: EntryJob) -> Optional[Outcome]:
        await self.next_queue(STAGE_UPLOAD).enqueue(UploadJob.from_entry(job))
        return None


class UploadStage(StageWorker):
    stage = STAGE_UPLOAD

    async def process(self, job: UploadJob) -> Optional[Outcome]:
        if job.attempt == 0:
            await self.ctx.ledger.mark_processing(job.transaction_id)

        path = Path(job.content_ref)
        if not path.is_file():
            raise PipelineError(ErrorKind.GENERAL, f"local media {path} not found", terminal=True)

        ref = await asyncio.wait_for(
            self.ctx.inference.upload(str(path), job.mime_type),
            timeout=self.settings.upload_timeout_s,
        )
        logger.info("[%s] transaction %s uploaded as %s", self.stage, job.transaction_id, ref.name)
        await self.next_queue(STAGE_PROCESSING_CHECK).enqueue(
            ProcessingCheckJob.from_upload(job, ref.name, self.ctx.clock())
        )
        return None


class ProcessingCheckStage(StageWorker):
    """Polls the remote file until it is ready.

    Waiting never holds a worker: a file still in ``PROCESSING`` is
    rescheduled as a delayed job with ``poll_attempt + 1``.
    """

    stage = STAGE_PROCESSING_CHECK

    async def process(self, job: ProcessingCheckJob) -> Optional[Outcome]:
        s = self.settings
        status = await self.ctx.inference.get_file_status(job.file_name)

        if status.state in (FILE_ACTIVE, FILE_SUCCEEDED):
            logger.info("[%s] %s is %s", self.stage, job.file_name, status.state)
            await self.next_queue(STAGE_ANALYSIS).enqueue(
                AnalysisJob.from_check(job, status.uri, status.mime_type)
            )
            return None
        if status.state == FILE_FAILED:
            raise PipelineError(ErrorKind.GENERAL, f"remote processing failed for {job.file_name}", terminal=True)
        if status.state != FILE_PROCESSING:
            raise PipelineError(ErrorKind.GENERAL, f"unexpected remote file state {status.state}")

        now = self.ctx.clock()
        elapsed = now - job.upload_timestamp
        if job.poll_attempt >= s.max_poll_attempts:
            raise PipelineError(
                ErrorKind.FILE_EXPIRED, f"still processing after {job.poll_attempt} polls", terminal=True
            )
        if elapsed >= s.expiry_elapsed_s and job.poll_attempt >= s.expiry_min_attempts:
            raise PipelineError(
                ErrorKind.FILE_EXPIRED, f"still processing {elapsed:.0f}s after upload", terminal=True
            )

        last_progress_at = job.last_progress_at
        if now - (last_progress_at or job.upload_timestamp) >= s.progress_window_s:
            await self.notify(job, progress_message(job.kind))
            last_progress_at = now

        long_notice_sent = job.long_notice_sent
        if not long_notice_sent and job.poll_attempt >= s.long_notice_attempt:
            await self.notify(job, long_wait_message(job.kind))
            long_notice_sent = True

        delay = backoff_delay_ms(job.poll_attempt, s.poll_base_ms, s.poll_cap_ms)
        rescheduled = job.model_copy(
            update={
                "poll_attempt": job.poll_attempt + 1,
                "last_progress_at": last_progress_at,
                "long_notice_sent": long_notice_sent,
                "enqueued_at": now,
            }
        )
        await self.queue.enqueue(rescheduled, delay_ms=delay)
        STAGE_RESCHEDULE_TOTAL.inc()
        logger.info(
            "[%s] %s still processing; poll %d in %d ms", self.stage, job.file_name, job.poll_attempt + 2, delay
        )
        return None


def _counts_against_breaker(exc: BaseException) -> bool:
    return classify(exc) not in CONTENT_KINDS


class AnalysisStage(StageWorker):
    """Runs inference through the circuit breaker and dispatches the reply.

    The analysis queue runs one worker pool per media kind (see
    ``KindLanes``), so a slow video never holds a worker an image could use.
    """

    stage = STAGE_ANALYSIS

    def timeout_for(self, kind: str) -> float:
        if kind == KIND_VIDEO:
            return self.settings.video_analysis_timeout_s
        return self.settings.image_analysis_timeout_s

    async def process(self, job: AnalysisJob) -> Optional[Outcome]:
        # Read fresh: the mode may have changed since the job was enqueued
        config = await self.ctx.config_provider.get_config(job.conversation_id)
        prompt = build_prompt(job.kind, config.description_mode, job.user_prompt)
        model_config = model_config_from_settings(self.settings, config.system_instruction or SYSTEM_INSTRUCTION)
        parts = [FilePart(job.file_uri, job.file_mime_type), prompt]
        timeout = self.timeout_for(job.kind)

        raw = await self.ctx.breaker.guard(
            lambda: asyncio.wait_for(self.ctx.inference.generate(parts, model_config), timeout=timeout),
            counts_as_failure=_counts_against_breaker,
        )

        text = clean_response_text(raw, self.settings.assistant_name)
        if not text:
            logger.info("[%s] empty response for transaction %s; using fallback", self.stage, job.transaction_id)
            text = empty_response_fallback(job.kind)

        tx = await self.ctx.ledger.attach_response(job.transaction_id, text)
        if tx is None:
            current = await self.ctx.ledger.get(job.transaction_id)
            if current is not None and current.response:
                text = current.response
        await self.ctx.dispatcher.deliver(job.transaction_id, response=text)

        self.remove_local(job.content_ref)
        await self.delete_remote(job.file_name)
        return None


def build_stage_workers(ctx: StageContext) -> dict[str, StageWorker]:
    return {
        STAGE_ENTRY: EntryStage(ctx),
        STAGE_UPLOAD: UploadStage(ctx),
        STAGE_PROCESSING_CHECK: ProcessingCheckStage(ctx),
        STAGE_ANALYSIS: AnalysisStage(ctx),
    }
