"""
Media pipeline worker process.

- Consumes inbound submission events from RabbitMQ and feeds them to the pipeline
- Runs the Entry, Upload, ProcessingCheck and Analysis stages on the configured
  queue backend (in-process ``memory`` or durable ``rabbitmq``)
- Publishes replies to the outbound exchange consumed by the chat transport
- Runs startup cleanup and recovery, then the periodic sweeps, until SIGINT/SIGTERM

Usage:
  uv run python -m scripts.worker
  QUEUE_BACKEND=rabbitmq IMAGE_ANALYSIS_WORKERS=8 uv run python -m scripts.worker
"""

import asyncio
import logging
import signal
from typing import Optional

from aio_pika.abc import AbstractRobustConnection

from media_pipeline.config import Settings, get_settings
from media_pipeline.db import dispose_engine, init_models
from media_pipeline.inference import GeminiInferenceClient
from media_pipeline.metrics import start_metrics_server
from media_pipeline.pipeline import MediaPipeline, QueueFactory
from media_pipeline.rabbit import RabbitStageQueue, RabbitTransport, connect, consume_inbound
from media_pipeline.recovery import RecoveryService, run_every
from media_pipeline.report import format_report
from media_pipeline.tracing import start_tracing

logger = logging.getLogger("media_pipeline.worker")


class PipelineWorker:
    """Owns one pipeline and everything running around it.

    Startup order matters: ghost jobs are cleaned before the stage queues
    start, and recovery runs only after ``recovery_delay_s`` so in-flight
    jobs from the previous process have settled.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self.pipeline: Optional[MediaPipeline] = None

    def _queue_factory(self, connection: AbstractRobustConnection) -> Optional[QueueFactory]:
        if self.settings.queue_backend != "rabbitmq":
            return None
        return lambda name, workers: RabbitStageQueue(name, workers, self.settings, connection)

    async def run(self) -> None:
        s = self.settings
        try:
            start_metrics_server(s.metrics_port)
            print(f"Metrics server listening on :{s.metrics_port} /metrics")
        except OSError:
            # Already started in this process
            pass
        start_tracing("media-pipeline")
        await init_models()

        connection = await connect(settings=s)
        transport = RabbitTransport(s, connection)
        pipeline = MediaPipeline(
            s,
            transport=transport,
            inference=GeminiInferenceClient(s),
            queue_factory=self._queue_factory(connection),
        )
        self.pipeline = pipeline
        recovery = RecoveryService(pipeline.ledger, pipeline.dispatcher, pipeline.notifications, s, pipeline.dedup)

        try:
            await pipeline.clean_stalled_jobs()
            await pipeline.start()
            await recovery.start(self._stopping)
            self._tasks = [
                asyncio.create_task(
                    run_every(s.stalled_check_interval_s, pipeline.clean_stalled_jobs, self._stopping),
                    name="stalled-job-check",
                ),
                asyncio.create_task(
                    run_every(s.status_report_interval_s, self.log_status, self._stopping),
                    name="status-report",
                ),
            ]

            channel = await connection.channel()
            await channel.set_qos(prefetch_count=s.prefetch_count)
            await consume_inbound(channel, s, pipeline.submit)
            print(f"Worker consuming {s.inbound_queue} (queue backend: {s.queue_backend})")

            await self._stopping.wait()
        finally:
            print("Worker shutting down")
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            await recovery.stop()
            await pipeline.stop()
            await transport.close()
            await connection.close()
            await dispose_engine()

    async def log_status(self) -> None:
        if self.pipeline is None:
            return
        report = await self.pipeline.status_report()
        logger.info("Queue status\n%s", format_report(report))
        for alert in report.alerts:
            log = logger.error if alert.level == "critical" else logger.warning
            log("Queue alert: %s", alert.message)

    def stop(self) -> None:
        """Signal the run loop to stop (used by signal handlers)."""
        self._stopping.set()


async def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    worker = PipelineWorker(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
