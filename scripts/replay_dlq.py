"""
Reprocess DLQ records back onto their original exchange and routing key.

Why:
- Enables operators to recover from terminal failures by selectively
  republishing records captured by the DLQ manager once the root cause is fixed.

How:
- Reads records from the ``dlq_entries`` table (``DATABASE_URL`` must be set),
  filters by id, status and original queue, and republishes each one through
  the DLQ manager so status, attempts and reprocess headers are recorded.

Usage examples:
- Dry run the 10 newest failed records of the orders queue:
  python -m scripts.replay_dlq --queue orders.events.queue --limit 10 --dry-run

- Reprocess specific records:
  python -m scripts.replay_dlq --dlq-id dlq_1718000000000_k3j9x0a1b --dlq-id dlq_1718000000001_a8b7c6d5e

- Reprocess a bounded batch (more than one record needs --yes):
  python -m scripts.replay_dlq --status reprocess_failed --limit 50 --yes
"""

import argparse
import asyncio
from typing import Optional

from messaging.bootstrap import build_messaging
from messaging.config import Settings
from messaging.constants import DLQ_STATUS_FAILED
from messaging.db import dispose_engine, get_session_factory
from messaging.models import DLQRecord
from messaging.rabbit import RabbitBroker
from messaging.sql_stores import SqlDLQStore, SqlMessageLogStore
from messaging.utils.logging import setup_logging


async def select_records(
    store: SqlDLQStore,
    dlq_ids: list[str],
    status: Optional[str],
    queue_name: Optional[str],
    limit: int,
) -> list[DLQRecord]:
    """Return explicit ids in the given order, else the newest records matching the filters."""
    if dlq_ids:
        found = [await store.get(dlq_id) for dlq_id in dlq_ids]
        missing = [dlq_id for dlq_id, rec in zip(dlq_ids, found) if rec is None]
        for dlq_id in missing:
            print(f"DLQ message not found: {dlq_id}")
        return [rec for rec in found if rec is not None]
    records = await store.list_all()
    if status:
        records = [r for r in records if r.status == status]
    if queue_name:
        records = [r for r in records if queue_name in (r.metadata.original_queue, r.queue_name)]
    return records[:limit]


async def replay(
    dlq_ids: list[str],
    status: Optional[str],
    queue_name: Optional[str],
    limit: int,
    *,
    dry_run: bool,
    yes: bool,
) -> int:
    """Reprocess the selected records; return how many the broker accepted.

    Prefer a dry run first to inspect the batch, then re-run with ``--yes``.
    """
    settings = Settings()
    if not settings.is_database_configured:
        print("DATABASE_URL is not set; there is no persisted DLQ to replay from")
        return 0

    factory = get_session_factory()
    store = SqlDLQStore(factory)
    try:
        records = await select_records(store, dlq_ids, status, queue_name, limit)
        if not records:
            print("No DLQ messages found")
            return 0

        if dry_run:
            print(f"Dry-run: would reprocess {len(records)} messages")
            for rec in records:
                print(f"  {rec.dlq_id} queue={rec.metadata.original_queue} status={rec.status} error={rec.error.name}: {rec.error.message}")
            return 0

        if len(records) > 1 and not dlq_ids and not yes:
            print(f"Refusing to reprocess {len(records)} messages without --yes confirmation.")
            return 0

        broker = await RabbitBroker.connect(settings)
        system = build_messaging(broker, settings, dlq_store=store, log_store=SqlMessageLogStore(factory))
        try:
            await system.bus.initialize()
            batch = await system.dlq_manager.bulk_reprocess([rec.dlq_id for rec in records])
            for idx, result in enumerate(batch.results, start=1):
                outcome = "Reprocessed" if result.success else f"Failed ({result.error})"
                print(f"[{idx}/{batch.total}] {outcome} {result.dlq_id}")
            print(f"Done: {batch.succeeded} succeeded, {batch.failed} failed")
            return batch.succeeded
        finally:
            await system.close()
    finally:
        await dispose_engine()


def main() -> None:
    """CLI entrypoint for reprocessing DLQ records. See module docstring for examples."""
    parser = argparse.ArgumentParser(description="Reprocess DLQ messages")
    parser.add_argument("--dlq-id", dest="dlq_ids", action="append", default=[], help="Record id (repeatable)")
    parser.add_argument("--status", default=DLQ_STATUS_FAILED, help="Filter by status (default: failed)")
    parser.add_argument("--queue", dest="queue_name", help="Filter by original queue or DLQ name")
    parser.add_argument("--limit", type=int, default=1)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--yes", action="store_true", help="Confirm reprocessing more than one record")
    args = parser.parse_args()

    setup_logging(Settings().log_level)
    asyncio.run(
        replay(args.dlq_ids, args.status, args.queue_name, args.limit, dry_run=args.dry_run, yes=args.yes)
    )


if __name__ == "__main__":
    main()
