"""
Print the media pipeline status report.

Why:
- Gives operators a read-only view of per-stage counts, the success rate,
  long-running jobs, recent problem jobs and alerts.

How:
- With ``QUEUE_BACKEND=rabbitmq`` the stage counts come from the RabbitMQ
  management API. The ``memory`` backend lives inside the worker process, so
  only the durable columns (failed, problem jobs, transactions) are shown;
  the worker logs the full report every ``STATUS_REPORT_INTERVAL_S``.

Usage:
  uv run python -m scripts.queue_status
  uv run python -m scripts.queue_status --json
"""

import argparse
import asyncio
import json
from dataclasses import asdict

from media_pipeline.config import Settings
from media_pipeline.db import dispose_engine, init_models
from media_pipeline.ledger import TransactionLedger
from media_pipeline.pipeline import build_stage_queues
from media_pipeline.problems import ProblemJobStore
from media_pipeline.queues import StageQueue
from media_pipeline.rabbit import RabbitStageQueue
from media_pipeline.report import build_status_report, format_report


async def show(as_json: bool) -> None:
    s = Settings()
    await init_models()
    queues: dict[str, StageQueue] = {}
    if s.queue_backend == "rabbitmq":
        # Not started: counts only go through the management API
        queues = build_stage_queues(s, lambda name, workers: RabbitStageQueue(name, workers, s))
    else:
        print("Queue backend is 'memory'; live counts are only available in the worker log")
    try:
        report = await build_status_report(queues, ProblemJobStore(), s, ledger=TransactionLedger(s))
    finally:
        await dispose_engine()
    if as_json:
        print(json.dumps(asdict(report), indent=2, default=str))
    else:
        print(format_report(report))


def main() -> None:
    parser = argparse.ArgumentParser(description="Show media pipeline queue status")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()
    asyncio.run(show(args.json))


if __name__ == "__main__":
    main()
