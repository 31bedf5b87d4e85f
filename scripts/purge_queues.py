"""
Purge media pipeline stage queues.

Modes:
  - completed: reset the completed/failed bookkeeping only
  - all: drop every waiting and delayed job in every stage (requires --yes)

Only meaningful for ``QUEUE_BACKEND=rabbitmq``; the in-process backend is
emptied by restarting the worker.

Usage:
  uv run python -m scripts.purge_queues --mode completed
  uv run python -m scripts.purge_queues --mode all --yes
"""

import argparse
import asyncio

from media_pipeline.config import Settings
from media_pipeline.pipeline import build_stage_queues
from media_pipeline.rabbit import RabbitStageQueue, connect


async def purge(mode: str, *, yes: bool) -> None:
    s = Settings()
    if s.queue_backend != "rabbitmq":
        print("Queue backend is 'memory'; restart the worker to empty its queues")
        return
    if mode == "all" and not yes:
        print("Refusing to drop every queued job without --yes confirmation.")
        return

    connection = await connect(settings=s)
    async with connection:
        queues = build_stage_queues(s, lambda name, workers: RabbitStageQueue(name, workers, s, connection))
        for stage, queue in queues.items():
            removed = await queue.purge(mode)  # type: ignore[arg-type]
            await queue.stop()
            print(f"{stage}: purged {removed} ({mode})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Purge media pipeline stage queues")
    parser.add_argument("--mode", choices=["completed", "all"], default="completed")
    parser.add_argument("--yes", action="store_true", help="Confirm purging waiting and delayed jobs")
    args = parser.parse_args()
    asyncio.run(purge(args.mode, yes=args.yes))


if __name__ == "__main__":
    main()
