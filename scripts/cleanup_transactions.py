"""
Purge old transactions and pending notifications based on retention policy.

Environment:
  - TRANSACTION_RETENTION_DAYS (default 7)
  - NOTIFICATION_RETENTION_DAYS (default 7)
  - DATABASE_URL

Usage:
  uv run python -m scripts.cleanup_transactions [--days N] [--notification-days N] [--stats]
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from media_pipeline.config import Settings
from media_pipeline.db import dispose_engine, init_models
from media_pipeline.ledger import TransactionLedger
from media_pipeline.notifications import PendingNotificationStore


async def purge(days: Optional[int] = None, notification_days: Optional[int] = None, *, stats: bool = False) -> dict[str, int]:
    """Delete terminal transactions and notifications older than retention.

    Only ``delivered`` and ``failure_permanent`` transactions are purged;
    anything still in flight is left for recovery.
    """
    s = Settings()
    await init_models()
    ledger = TransactionLedger(s)
    notifications = PendingNotificationStore(s)
    try:
        result = {
            "transactions": await ledger.purge_expired(days),
            "notifications": await notifications.purge_older_than(notification_days),
        }
        print(
            f"Deleted {result['transactions']} transactions older than "
            f"{days if days is not None else s.transaction_retention_days} days"
        )
        print(
            f"Deleted {result['notifications']} pending notifications older than "
            f"{notification_days if notification_days is not None else s.notification_retention_days} days"
        )
        if stats:
            summary = await ledger.stats()
            print(f"Transactions remaining: {summary['total']} (success rate {summary['success_rate']}%)")
            for status, count in summary["by_status"].items():
                print(f"  {status}: {count}")
        return result
    finally:
        await dispose_engine()


def main() -> None:
    """CLI entrypoint; intended to be run as a cron job."""
    parser = argparse.ArgumentParser(description="Cleanup old transactions and pending notifications")
    parser.add_argument("--days", type=int, help="Override TRANSACTION_RETENTION_DAYS")
    parser.add_argument("--notification-days", type=int, help="Override NOTIFICATION_RETENTION_DAYS")
    parser.add_argument("--stats", action="store_true", help="Print ledger statistics afterwards")
    args = parser.parse_args()
    asyncio.run(purge(args.days, args.notification_days, stats=args.stats))


if __name__ == "__main__":
    main()
