"""Append-only audit trail of message lifecycle transitions.

``MessageLogger`` records one ``LogEntry`` per ``PUBLISHED``, ``CONSUMED``,
``FAILED`` and ``RETRIED`` transition and answers operator queries over
them (flow by correlation id, stats, recent activity, retention cleanup).

Why this exists:
- A single business transaction fans out across independently deployed
  consumers; the audit trail is the only place its full causal chain is
  visible (``get_message_flow``)
- Centralizing redaction guarantees sensitive fields never reach storage

How to use:
- Pass a ``MessageLogger`` to ``EventBus`` and ``RetryHandler``; they call
  ``log_message`` on every transition
- ``log_message`` never raises: a storage failure is logged and counted so
  the business path is unaffected

Example:
    >>> audit = MessageLogger()
    >>> await audit.log_message("PUBLISHED", "ecommerce.events", "order.created", envelope)
    >>> flow = await audit.get_message_flow(envelope.correlation_id)
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel

from messaging.constants import ACTION_FAILED, CIRCULAR, NOTIFY_MESSAGE_LOGGED, REDACTED, SENSITIVE_FIELDS
from messaging.metrics import AUDIT_PURGED_TOTAL, AUDIT_WRITE_FAILED_TOTAL, AUDIT_WRITE_TOTAL
from messaging.models import Envelope, LogEntry, LogMetadata, new_message_id, utc_now
from messaging.notifier import AuditNotifier
from messaging.stores import InMemoryMessageLogStore, LogFilters, MessageLogStore


logger = logging.getLogger(__name__)

TIMEFRAMES: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}


def is_sensitive_key(key: Any) -> bool:
    return isinstance(key, str) and any(field in key.lower() for field in SENSITIVE_FIELDS)


def sanitize(value: Any, _path: Optional[set[int]] = None) -> Any:
    """Return a redacted deep copy of ``value``.

    - dict keys containing ``password``, ``creditcard``, ``ssn`` or ``token``
      (case-insensitive) get ``"[REDACTED]"``
    - a container that contains itself is replaced by ``"[Circular]"``
    - the input is never mutated

    Example:
        >>> sanitize({"user": {"Password": "x", "name": "a"}})
        {'user': {'Password': '[REDACTED]', 'name': 'a'}}
    """
    path = _path if _path is not None else set()
    if isinstance(value, Envelope):
        dumped = value.model_dump(by_alias=True, mode="json", exclude={"data"})
        dumped["data"] = value.data
        value = dumped
    elif isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True, mode="json")

    if isinstance(value, dict):
        if id(value) in path:
            return CIRCULAR
        path.add(id(value))
        try:
            return {k: (REDACTED if is_sensitive_key(k) else sanitize(v, path)) for k, v in value.items()}
        finally:
            path.discard(id(value))
    if isinstance(value, (list, tuple, set)):
        if id(value) in path:
            return CIRCULAR
        path.add(id(value))
        try:
            return [sanitize(v, path) for v in value]
        finally:
            path.discard(id(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _message_id(message: Any) -> str:
    if isinstance(message, Envelope):
        return message.id
    if isinstance(message, dict) and message.get("id"):
        return str(message["id"])
    return new_message_id()


class MessageLogger:
    """Durable, queryable audit trail.

    Properties:
        - store: backing ``MessageLogStore`` (in-memory unless injected)
        - logged_count / error_count: writes that succeeded / failed in this process
    """

    def __init__(self, store: Optional[MessageLogStore] = None, notifier: Optional[AuditNotifier] = None) -> None:
        self.store: MessageLogStore = store or InMemoryMessageLogStore()
        self.notifier = notifier
        self.logged_count = 0
        self.error_count = 0

    async def log_message(
        self,
        action: str,
        exchange: str,
        routing_key: str,
        message: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        """Persist one audit entry; return it, or None if the write failed.

        ``metadata`` may carry ``queue`` plus any ``LogMetadata`` field in
        either camelCase or snake_case.
        """
        try:
            meta = dict(metadata or {})
            queue = meta.pop("queue", None)
            entry = LogEntry(
                message_id=_message_id(message),
                action=action,
                exchange=exchange,
                routing_key=routing_key,
                queue=queue,
                message=sanitize(message),
                metadata=LogMetadata.model_validate(sanitize(meta)),
            )
            await self.store.append(entry)
        except Exception as exc:  # noqa: BLE001
            self.error_count += 1
            AUDIT_WRITE_FAILED_TOTAL.inc()
            logger.error(
                "failed to write audit log entry: %s",
                exc,
                extra={"action": action, "exchange": exchange, "routing_key": routing_key},
            )
            return None

        self.logged_count += 1
        AUDIT_WRITE_TOTAL.labels(action=action).inc()
        if self.notifier is not None:
            self.notifier.emit(NOTIFY_MESSAGE_LOGGED, entry.to_wire())
        return entry

    async def get_message_logs(
        self,
        filters: Optional[LogFilters] = None,
        page: int = 1,
        limit: int = 50,
        sort_order: str = "desc",
    ) -> dict[str, Any]:
        """Return one page of entries matching ``filters``.

        Returns:
            ``{"logs": [...LogEntry], "pagination": {"page", "limit", "total", "pages"}}``
        """
        page = max(1, page)
        limit = max(1, limit)
        logs, total = await self.store.query(
            filters or LogFilters(), offset=(page - 1) * limit, limit=limit, descending=sort_order != "asc"
        )
        return {
            "logs": logs,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    async def get_message_flow(self, correlation_id: str) -> list[LogEntry]:
        """Return every entry of one trace in ascending time order."""
        return await self.store.by_correlation(correlation_id)

    async def get_message_stats(self, timeframe: str = "24h") -> dict[str, Any]:
        """Aggregate entries from the last ``timeframe`` (``1h``, ``24h`` or ``7d``)."""
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"timeframe must be one of {sorted(TIMEFRAMES)}, got '{timeframe}'")
        entries = await self.store.since(utc_now() - TIMEFRAMES[timeframe])
        return {
            "timeframe": timeframe,
            "total": len(entries),
            "by_action": dict(Counter(e.action for e in entries)),
            "by_exchange": dict(Counter(e.exchange for e in entries)),
            "failures_by_routing_key": dict(Counter(e.routing_key for e in entries if e.action == ACTION_FAILED)),
        }

    async def get_recent_activity(self, limit: int = 20) -> list[LogEntry]:
        return await self.store.recent(limit)

    async def clean_old_logs(self, retention_days: int = 30) -> int:
        """Delete entries older than ``retention_days``; return how many were removed."""
        deleted = await self.store.delete_before(utc_now() - timedelta(days=retention_days))
        AUDIT_PURGED_TOTAL.inc(deleted)
        logger.info("audit retention cleanup removed %d entries", deleted, extra={"retention_days": retention_days})
        return deleted

    async def get_stats(self) -> dict[str, int]:
        return {
            "logged": self.logged_count,
            "errors": self.error_count,
            "total_entries": await self.store.count(),
        }
