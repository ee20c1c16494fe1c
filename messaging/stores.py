"""Storage contracts for retry state, DLQ records and audit log entries.

Each store is a small async protocol with an in-memory implementation used
by default and in tests. ``messaging.sql_stores`` provides SQLAlchemy
implementations with the same behavior for deployments that need state to
survive restarts.

The in-memory stores never await between reading and writing a record, so
each call is atomic with respect to other coroutines on the same loop.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from messaging.constants import DLQ_STATUS_REPROCESSING
from messaging.models import DLQRecord, LogEntry


class RetryStateStore(Protocol):
    """Attempt counts per retry key, each tagged with the envelope id that owns it.

    ``get`` and ``delete`` given an ``owner`` only see an entry written by that
    envelope, so unrelated messages sharing a key cannot read or clear it.
    """

    async def get(self, key: str, owner: Optional[str] = None) -> int: ...

    async def set(self, key: str, attempts: int, owner: Optional[str] = None) -> None: ...

    async def delete(self, key: str, owner: Optional[str] = None) -> bool: ...

    async def items(self) -> dict[str, int]: ...


class DLQStore(Protocol):
    async def put(self, record: DLQRecord) -> None: ...

    async def get(self, dlq_id: str) -> Optional[DLQRecord]: ...

    async def update(self, record: DLQRecord) -> None: ...

    async def begin_reprocess(self, dlq_id: str, at: datetime) -> Optional[DLQRecord]: ...

    async def delete(self, dlq_id: str) -> bool: ...

    async def list_all(self) -> list[DLQRecord]: ...


@dataclass
class LogFilters:
    """Audit log query filters; ``None`` fields are ignored.

    ``routing_key`` is a case-insensitive substring match, the date bounds
    are inclusive.
    """

    message_id: Optional[str] = None
    action: Optional[str] = None
    exchange: Optional[str] = None
    routing_key: Optional[str] = None
    correlation_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, entry: LogEntry) -> bool:
        if self.message_id and entry.message_id != self.message_id:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.exchange and entry.exchange != self.exchange:
            return False
        if self.routing_key and self.routing_key.lower() not in entry.routing_key.lower():
            return False
        if self.correlation_id and entry.metadata.correlation_id != self.correlation_id:
            return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True


class MessageLogStore(Protocol):
    async def append(self, entry: LogEntry) -> None: ...

    async def query(
        self, filters: LogFilters, offset: int, limit: int, descending: bool = True
    ) -> tuple[list[LogEntry], int]: ...

    async def by_correlation(self, correlation_id: str) -> list[LogEntry]: ...

    async def since(self, cutoff: datetime) -> list[LogEntry]: ...

    async def recent(self, limit: int) -> list[LogEntry]: ...

    async def delete_before(self, cutoff: datetime) -> int: ...

    async def count(self) -> int: ...


class InMemoryRetryStateStore:
    def __init__(self) -> None:
        self._attempts: dict[str, int] = {}
        self._owners: dict[str, Optional[str]] = {}

    def _owned(self, key: str, owner: Optional[str]) -> bool:
        return key in self._attempts and (owner is None or self._owners.get(key) == owner)

    async def get(self, key: str, owner: Optional[str] = None) -> int:
        return self._attempts[key] if self._owned(key, owner) else 0

    async def set(self, key: str, attempts: int, owner: Optional[str] = None) -> None:
        self._attempts[key] = attempts
        self._owners[key] = owner

    async def delete(self, key: str, owner: Optional[str] = None) -> bool:
        if not self._owned(key, owner):
            return False
        del self._attempts[key]
        self._owners.pop(key, None)
        return True

    async def items(self) -> dict[str, int]:
        return dict(self._attempts)


class InMemoryDLQStore:
    """DLQ records keyed by ``dlqId``; returned records are copies."""

    def __init__(self) -> None:
        self._records: dict[str, DLQRecord] = {}

    async def put(self, record: DLQRecord) -> None:
        self._records[record.dlq_id] = record.model_copy(deep=True)

    async def get(self, dlq_id: str) -> Optional[DLQRecord]:
        record = self._records.get(dlq_id)
        return record.model_copy(deep=True) if record else None

    async def update(self, record: DLQRecord) -> None:
        if record.dlq_id in self._records:
            self._records[record.dlq_id] = record.model_copy(deep=True)

    async def begin_reprocess(self, dlq_id: str, at: datetime) -> Optional[DLQRecord]:
        """Move a record to ``reprocessing`` unless it is already there.

        Returns the updated record, or None when the record is missing or
        another reprocess of it is in flight.
        """
        record = self._records.get(dlq_id)
        if record is None or record.status == DLQ_STATUS_REPROCESSING:
            return None
        record.status = DLQ_STATUS_REPROCESSING
        record.reprocess_attempts += 1
        record.last_reprocess_at = at
        return record.model_copy(deep=True)

    async def delete(self, dlq_id: str) -> bool:
        return self._records.pop(dlq_id, None) is not None

    async def list_all(self) -> list[DLQRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]


class InMemoryMessageLogStore:
    """Append-only list of log entries in insertion order."""

    def __init__(self) -> None:
        self._entries: list[LogEntry] = []

    @staticmethod
    def _ordered(entries: list[LogEntry], descending: bool = False) -> list[LogEntry]:
        # Ties on timestamp keep insertion order, like the SQL store orders by id
        indexed = sorted(enumerate(entries), key=lambda pair: (pair[1].timestamp, pair[0]), reverse=descending)
        return [e for _, e in indexed]

    async def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    async def query(
        self, filters: LogFilters, offset: int, limit: int, descending: bool = True
    ) -> tuple[list[LogEntry], int]:
        matched = self._ordered([e for e in self._entries if filters.matches(e)], descending)
        return matched[offset : offset + limit], len(matched)

    async def by_correlation(self, correlation_id: str) -> list[LogEntry]:
        flow = [e for e in self._entries if e.metadata.correlation_id == correlation_id]
        return self._ordered(flow)

    async def since(self, cutoff: datetime) -> list[LogEntry]:
        return [e for e in self._entries if e.timestamp >= cutoff]

    async def recent(self, limit: int) -> list[LogEntry]:
        return self._ordered(list(self._entries), descending=True)[:limit]

    async def delete_before(self, cutoff: datetime) -> int:
        kept = [e for e in self._entries if e.timestamp >= cutoff]
        deleted = len(self._entries) - len(kept)
        self._entries = kept
        return deleted

    async def count(self) -> int:
        return len(self._entries)
