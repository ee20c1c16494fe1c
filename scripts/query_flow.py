"""Query and print the audit trail of one business transaction.

Usage:
  - ``--correlation-id``: every PUBLISHED/CONSUMED/FAILED/RETRIED entry of the
    trace, oldest first
  - ``--message-id``: entries for one envelope id
  - ``--stats 1h|24h|7d``: aggregate counts instead of a flow

Outputs JSON. Requires ``DATABASE_URL``.
"""

import argparse
import asyncio
import json
from typing import Any, Optional

from messaging.audit import MessageLogger
from messaging.config import Settings
from messaging.db import dispose_engine, get_session_factory
from messaging.sql_stores import SqlMessageLogStore
from messaging.stores import LogFilters


def _entry(entry: Any) -> dict[str, Any]:
    return {
        "messageId": entry.message_id,
        "action": entry.action,
        "exchange": entry.exchange,
        "routingKey": entry.routing_key,
        "queue": entry.queue,
        "timestamp": entry.timestamp.isoformat(),
        "causationId": entry.metadata.causation_id,
        "retryCount": entry.metadata.retry_count,
        "errorMessage": entry.metadata.error_message,
    }


async def query(correlation_id: Optional[str], message_id: Optional[str], stats: Optional[str]) -> dict[str, Any]:
    audit = MessageLogger(SqlMessageLogStore(get_session_factory()))
    try:
        if stats:
            return await audit.get_message_stats(stats)
        if correlation_id:
            flow = await audit.get_message_flow(correlation_id)
            return {"correlationId": correlation_id, "entries": [_entry(e) for e in flow]}
        page = await audit.get_message_logs(LogFilters(message_id=message_id), limit=200, sort_order="asc")
        return {"messageId": message_id, "entries": [_entry(e) for e in page["logs"]]}
    finally:
        await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Query the message audit trail")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--correlation-id", dest="correlation_id")
    group.add_argument("--message-id", dest="message_id")
    group.add_argument("--stats", choices=["1h", "24h", "7d"])
    args = parser.parse_args()

    if not Settings().is_database_configured:
        raise SystemExit("DATABASE_URL must be set")
    result = asyncio.run(query(args.correlation_id, args.message_id, args.stats))
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
