"""Print DLQ statistics and live DLQ queue depths as JSON.

Combines the persisted DLQ records (counts by status, original queue and
error type, newest failures of the last 24h) with the RabbitMQ Management
API view of each ``dlq.<queue>``. A non-zero depth means messages are
waiting for the DLQ manager to ingest them.

Usage:
  python -m scripts.dlq_stats
  python -m scripts.dlq_stats --no-depths
"""

import argparse
import asyncio
import json
from typing import Any

from messaging.config import Settings
from messaging.db import dispose_engine, get_session_factory
from messaging.dlq import summarize_records
from messaging.management import get_queue_depths
from messaging.sql_stores import SqlDLQStore
from messaging.topology import build_default_topology


async def collect(include_depths: bool = True) -> dict[str, Any]:
    settings = Settings()
    out: dict[str, Any] = {}
    if settings.is_database_configured:
        try:
            records = await SqlDLQStore(get_session_factory()).list_all()
        finally:
            await dispose_engine()
        stats = summarize_records(records)
        stats["recent_failures"] = [
            {
                "dlqId": r.dlq_id,
                "originalQueue": r.metadata.original_queue,
                "status": r.status,
                "error": r.error.message,
                "receivedAt": r.received_at.isoformat(),
            }
            for r in stats["recent_failures"]
        ]
        out["records"] = stats
    else:
        out["records"] = None
        print("DATABASE_URL is not set; skipping persisted DLQ records")
    if include_depths:
        dlq_names = [q.name for q in build_default_topology().dlq_queues()]
        out["queue_depths"] = get_queue_depths(dlq_names, settings)
    return out


def main() -> None:
    parser = argparse.ArgumentParser(description="Show DLQ statistics")
    parser.add_argument("--no-depths", action="store_true", help="Skip the RabbitMQ Management API lookup")
    args = parser.parse_args()
    print(json.dumps(asyncio.run(collect(not args.no_depths)), indent=2, default=str))


if __name__ == "__main__":
    main()
