"""
Purge audit log entries older than the retention window.

Environment:
  - LOG_RETENTION_DAYS (default 30)
  - DATABASE_URL

Usage:
  python -m scripts.cleanup_logs [--days N]
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from messaging.audit import MessageLogger
from messaging.config import Settings
from messaging.db import dispose_engine, get_session_factory
from messaging.sql_stores import SqlMessageLogStore
from messaging.utils.logging import setup_logging


async def purge(days: Optional[int] = None) -> int:
    """Delete audit entries older than ``days`` (default ``LOG_RETENTION_DAYS``).

    Returns the number of rows deleted.
    """
    s = Settings()
    if not s.is_database_configured:
        print("DATABASE_URL not configured; skipping audit log cleanup")
        return 0
    retention = days if days is not None else s.log_retention_days
    try:
        deleted = await MessageLogger(SqlMessageLogStore(get_session_factory())).clean_old_logs(retention)
    finally:
        await dispose_engine()
    print(f"Deleted {deleted} audit log entries older than {retention} days")
    return deleted


def main() -> None:
    """CLI entrypoint for audit log retention. Intended to be run as a cron/job."""
    parser = argparse.ArgumentParser(description="Cleanup old audit log entries")
    parser.add_argument("--days", type=int, default=None, help="Retention in days (overrides LOG_RETENTION_DAYS)")
    args = parser.parse_args()
    setup_logging(Settings().log_level)
    asyncio.run(purge(args.days))


if __name__ == "__main__":
    main()
