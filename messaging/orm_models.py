"""SQLAlchemy ORM models for the audit log, DLQ records and retry counters.

When to use:
- ``messaging.sql_stores`` reads and writes these; scripts query them
  through the stores rather than directly

Models provided:
- ``MessageLog``: Append-only lifecycle entries (PUBLISHED/CONSUMED/FAILED/RETRIED)
- ``DLQEntry``: Terminal failures captured for reprocessing/analysis
- ``RetryCounter``: Attempt count per ``(queue, correlationId)`` key and the
  envelope id of the retry chain that owns it

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere (sqlite in tests).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class MessageLog(Base):
    """Append-only audit entry for one message lifecycle transition.

    Fields:
        - id: Surrogate primary key (also the insertion order tiebreaker)
        - message_id: Envelope id
        - action: PUBLISHED | CONSUMED | FAILED | RETRIED
        - exchange / routing_key / queue: where the transition happened
        - correlation_id: Trace id, indexed for flow queries
        - message: Redacted envelope as JSON
        - meta: LogMetadata as JSON (``metadata`` is reserved by SQLAlchemy)
        - timestamp: Time of the transition
    """
    __tablename__ = "message_logs"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    exchange: Mapped[str] = mapped_column(String, index=True)
    routing_key: Mapped[str] = mapped_column(String)
    queue: Mapped[str | None] = mapped_column(String, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    message: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONType)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, default=_utcnow)


class DLQEntry(Base):
    """Terminal failure indexed by the DLQ manager.

    Fields:
        - dlq_id: Public identifier (``dlq_<ms>_<random>``)
        - queue_name: DLQ queue the record arrived on
        - original_queue: Work queue whose handler failed
        - status: failed | reprocessing | reprocessed | reprocess_failed
        - record: Full ``DLQRecord`` as JSON
    """
    __tablename__ = "dlq_entries"

    dlq_id: Mapped[str] = mapped_column(String, primary_key=True)
    queue_name: Mapped[str] = mapped_column(String, index=True)
    original_queue: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    reprocess_attempts: Mapped[int] = mapped_column(Integer, default=0)
    record: Mapped[dict] = mapped_column(JSONType)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, default=_utcnow)


class RetryCounter(Base):
    """Attempt counter for one ``(queue, correlationId)`` retry episode."""
    __tablename__ = "retry_counters"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    envelope_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
