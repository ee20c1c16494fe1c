"""SQLAlchemy implementations of the retry, DLQ and audit log stores.

Use these when retry counters, DLQ records and the audit trail must survive
a restart. Every method opens its own short session from the injected
``async_sessionmaker`` and commits before returning.

Example:
    >>> engine, factory = create_session_factory("sqlite+aiosqlite:///:memory:")
    >>> await create_schema(engine)
    >>> dlq_store = SqlDLQStore(factory)
    >>> retry_state = SqlRetryStateStore(factory)
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from messaging.constants import DLQ_STATUS_REPROCESSING
from messaging.models import DLQRecord, LogEntry, LogMetadata, utc_now
from messaging.orm_models import DLQEntry, MessageLog, RetryCounter
from messaging.stores import LogFilters


def _as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes returned by drivers without tz support (sqlite)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRetryStateStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str, owner: Optional[str] = None) -> int:
        async with self._session_factory() as session:
            row = await session.get(RetryCounter, key)
            if row is None or (owner is not None and row.envelope_id != owner):
                return 0
            return row.attempts

    async def set(self, key: str, attempts: int, owner: Optional[str] = None) -> None:
        async with self._session_factory() as session:
            row = await session.get(RetryCounter, key)
            if row is None:
                session.add(RetryCounter(key=key, attempts=attempts, envelope_id=owner, updated_at=utc_now()))
            else:
                row.attempts = attempts
                row.envelope_id = owner
                row.updated_at = utc_now()
            await session.commit()

    async def delete(self, key: str, owner: Optional[str] = None) -> bool:
        stmt = delete(RetryCounter).where(RetryCounter.key == key)
        if owner is not None:
            stmt = stmt.where(RetryCounter.envelope_id == owner)
        async with self._session_factory() as session:
            res = await session.execute(stmt)
            await session.commit()
            return res.rowcount > 0

    async def items(self) -> dict[str, int]:
        async with self._session_factory() as session:
            res = await session.execute(select(RetryCounter.key, RetryCounter.attempts))
            return {key: attempts for key, attempts in res.all()}


def _dlq_row(record: DLQRecord) -> dict[str, Any]:
    return {
        "queue_name": record.queue_name,
        "original_queue": record.metadata.original_queue,
        "status": record.status,
        "reprocess_attempts": record.reprocess_attempts,
        "record": record.model_dump(by_alias=True, mode="json"),
        "received_at": record.received_at,
    }


class SqlDLQStore:
    """DLQ records in ``dlq_entries``; the JSON ``record`` column is authoritative."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def put(self, record: DLQRecord) -> None:
        async with self._session_factory() as session:
            session.add(DLQEntry(dlq_id=record.dlq_id, **_dlq_row(record)))
            await session.commit()

    async def get(self, dlq_id: str) -> Optional[DLQRecord]:
        async with self._session_factory() as session:
            row = await session.get(DLQEntry, dlq_id)
            return DLQRecord.model_validate(row.record) if row else None

    async def update(self, record: DLQRecord) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(DLQEntry).where(DLQEntry.dlq_id == record.dlq_id).values(**_dlq_row(record))
            )
            await session.commit()

    async def begin_reprocess(self, dlq_id: str, at: datetime) -> Optional[DLQRecord]:
        """Conditionally move a record to ``reprocessing``.

        The status column is updated with a guarded ``UPDATE ... WHERE status
        != 'reprocessing'`` so two concurrent callers cannot both win.
        """
        async with self._session_factory() as session:
            res = await session.execute(
                update(DLQEntry)
                .where(DLQEntry.dlq_id == dlq_id, DLQEntry.status != DLQ_STATUS_REPROCESSING)
                .values(status=DLQ_STATUS_REPROCESSING, reprocess_attempts=DLQEntry.reprocess_attempts + 1)
            )
            if res.rowcount == 0:
                await session.rollback()
                return None
            row = await session.get(DLQEntry, dlq_id)
            assert row is not None
            await session.refresh(row)
            record = DLQRecord.model_validate(row.record)
            record.status = DLQ_STATUS_REPROCESSING
            record.reprocess_attempts = row.reprocess_attempts
            record.last_reprocess_at = at
            row.record = record.model_dump(by_alias=True, mode="json")
            await session.commit()
            return record

    async def delete(self, dlq_id: str) -> bool:
        async with self._session_factory() as session:
            res = await session.execute(delete(DLQEntry).where(DLQEntry.dlq_id == dlq_id))
            await session.commit()
            return res.rowcount > 0

    async def list_all(self) -> list[DLQRecord]:
        async with self._session_factory() as session:
            res = await session.execute(select(DLQEntry.record).order_by(DLQEntry.received_at.desc()))
            return [DLQRecord.model_validate(doc) for doc in res.scalars().all()]


def _to_entry(row: MessageLog) -> LogEntry:
    return LogEntry(
        message_id=row.message_id,
        action=row.action,  # type: ignore[arg-type]
        exchange=row.exchange,
        routing_key=row.routing_key,
        queue=row.queue,
        message=row.message,
        timestamp=_as_utc(row.timestamp),
        metadata=LogMetadata.model_validate(row.meta or {}),
    )


class SqlMessageLogStore:
    """Audit entries in ``message_logs``, ordered by timestamp then insertion id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, entry: LogEntry) -> None:
        async with self._session_factory() as session:
            session.add(
                MessageLog(
                    message_id=entry.message_id,
                    action=entry.action,
                    exchange=entry.exchange,
                    routing_key=entry.routing_key,
                    queue=entry.queue,
                    correlation_id=entry.metadata.correlation_id,
                    message=entry.message,
                    meta=entry.metadata.model_dump(by_alias=True, mode="json"),
                    timestamp=entry.timestamp,
                )
            )
            await session.commit()

    @staticmethod
    def _conditions(filters: LogFilters) -> list[Any]:
        conds: list[Any] = []
        if filters.message_id:
            conds.append(MessageLog.message_id == filters.message_id)
        if filters.action:
            conds.append(MessageLog.action == filters.action)
        if filters.exchange:
            conds.append(MessageLog.exchange == filters.exchange)
        if filters.routing_key:
            conds.append(MessageLog.routing_key.ilike(f"%{filters.routing_key}%"))
        if filters.correlation_id:
            conds.append(MessageLog.correlation_id == filters.correlation_id)
        if filters.start_date:
            conds.append(MessageLog.timestamp >= filters.start_date)
        if filters.end_date:
            conds.append(MessageLog.timestamp <= filters.end_date)
        return conds

    async def query(
        self, filters: LogFilters, offset: int, limit: int, descending: bool = True
    ) -> tuple[list[LogEntry], int]:
        conds = self._conditions(filters)
        order = (
            (MessageLog.timestamp.desc(), MessageLog.id.desc())
            if descending
            else (MessageLog.timestamp.asc(), MessageLog.id.asc())
        )
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(MessageLog).where(*conds))
            res = await session.execute(select(MessageLog).where(*conds).order_by(*order).offset(offset).limit(limit))
            return [_to_entry(row) for row in res.scalars().all()], int(total or 0)

    async def by_correlation(self, correlation_id: str) -> list[LogEntry]:
        async with self._session_factory() as session:
            res = await session.execute(
                select(MessageLog)
                .where(MessageLog.correlation_id == correlation_id)
                .order_by(MessageLog.timestamp.asc(), MessageLog.id.asc())
            )
            return [_to_entry(row) for row in res.scalars().all()]

    async def since(self, cutoff: datetime) -> list[LogEntry]:
        async with self._session_factory() as session:
            res = await session.execute(select(MessageLog).where(MessageLog.timestamp >= cutoff))
            return [_to_entry(row) for row in res.scalars().all()]

    async def recent(self, limit: int) -> list[LogEntry]:
        async with self._session_factory() as session:
            res = await session.execute(
                select(MessageLog).order_by(MessageLog.timestamp.desc(), MessageLog.id.desc()).limit(limit)
            )
            return [_to_entry(row) for row in res.scalars().all()]

    async def delete_before(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            res = await session.execute(delete(MessageLog).where(MessageLog.timestamp < cutoff))
            await session.commit()
            return int(res.rowcount or 0)

    async def count(self) -> int:
        async with self._session_factory() as session:
            return int(await session.scalar(select(func.count()).select_from(MessageLog)) or 0)
