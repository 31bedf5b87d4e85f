"""
Replay problem jobs back into their stage queues.

Why:
- Lets operators retry jobs that failed terminally (for example after an
  inference outage) without resubmitting from the chat side.

How:
- Reads replayable rows from the ``problem_jobs`` table oldest-first,
  optionally filtered by stage, and re-enqueues each job with its attempt
  counter reset. Rows whose transaction already sent its terminal message
  (or still has it in the pending notifications) are skipped.
- Requires ``QUEUE_BACKEND=rabbitmq``: the in-process backend has no queue a
  separate process could publish to.

Usage examples:
- Preview the next 10 replayable jobs:
  uv run python -m scripts.replay_problem_jobs --limit 10 --dry-run
- Replay analysis jobs only:
  uv run python -m scripts.replay_problem_jobs --stage analysis --limit 50
"""

import argparse
import asyncio

from media_pipeline.config import Settings
from media_pipeline.constants import STAGES
from media_pipeline.db import dispose_engine, init_models
from media_pipeline.ledger import TransactionLedger
from media_pipeline.notifications import PendingNotificationStore
from media_pipeline.pipeline import build_stage_queues
from media_pipeline.problems import ProblemJobStore, replay_problem_jobs
from media_pipeline.rabbit import RabbitStageQueue, connect


async def replay(limit: int, stage: str | None, *, dry_run: bool) -> None:
    s = Settings()
    if s.queue_backend != "rabbitmq" and not dry_run:
        print("Replay needs QUEUE_BACKEND=rabbitmq; use --dry-run to preview")
        return
    await init_models()
    problems = ProblemJobStore()
    ledger = TransactionLedger(s)
    notifications = PendingNotificationStore(s)
    try:
        if dry_run:
            rows = await replay_problem_jobs(
                problems, {}, ledger, notifications=notifications, limit=limit, stage=stage, dry_run=True
            )
            if not rows:
                print("No replayable problem jobs found")
                return
            print(f"Dry-run: would replay {len(rows)} problem jobs")
            for row in rows:
                print(f"  {row['job_id']} ({row['stage']}, transaction {row['transaction_id']}): {row['classification']}")
            return

        connection = await connect(settings=s)
        async with connection:
            queues = build_stage_queues(s, lambda name, workers: RabbitStageQueue(name, workers, s, connection))
            rows = await replay_problem_jobs(
                problems, queues, ledger, notifications=notifications, limit=limit, stage=stage
            )
            total = len(rows)
            if not total:
                print("No replayable problem jobs found")
            for idx, row in enumerate(rows, start=1):
                print(f"[{idx}/{total}] Replayed {row['job_id']} into {row['stage']}")
    finally:
        await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay problem jobs")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--stage", choices=STAGES, help="Only replay jobs from this stage")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    asyncio.run(replay(args.limit, args.stage, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
