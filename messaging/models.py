"""Pydantic models for envelopes, DLQ records and audit log entries.

These models validate the shapes we put on the wire and into the stores,
and make call sites more explicit than passing generic dicts around. Wire
keys are camelCase (``routingKey``, ``correlationId``); Python attributes
are snake_case and both spellings are accepted on input.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from messaging.constants import DEFAULT_SOURCE, DLQ_STATUS_FAILED


Action = Literal["PUBLISHED", "CONSUMED", "FAILED", "RETRIED"]
DLQStatus = Literal["failed", "reprocessing", "reprocessed", "reprocess_failed"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with millisecond precision."""
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_message_id() -> str:
    return str(uuid.uuid4())


class WireModel(BaseModel):
    """Base for models serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Return a JSON-ready dict using wire (camelCase) keys."""
        return self.model_dump(by_alias=True, mode="json")


class EnvelopeMetadata(WireModel):
    """Trace metadata carried by every envelope.

    Extra keys supplied by publishers are preserved as-is.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    source: str = DEFAULT_SOURCE
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None


class Envelope(WireModel):
    """Wrapped message unit: payload plus routing and trace metadata."""

    id: str = Field(default_factory=new_message_id)
    timestamp: str = Field(default_factory=now_iso)
    exchange: str
    routing_key: str
    data: Any = None
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)

    @property
    def correlation_id(self) -> str:
        return self.metadata.correlation_id or self.id

    @property
    def causation_id(self) -> Optional[str]:
        return self.metadata.causation_id


class DLQError(WireModel):
    """Error captured when a message was dead-lettered."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    message: str = ""
    name: str = "Exception"
    stack: Optional[str] = None


class DLQMetadata(WireModel):
    """Where and when a message failed."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    original_queue: Optional[str] = None
    correlation_id: Optional[str] = None
    failed_at: Optional[str] = None
    queue_name: Optional[str] = None
    total_retries: Optional[int] = None


class DLQRecord(WireModel):
    """Terminal failure indexed by the DLQ manager."""

    dlq_id: str
    queue_name: str
    original_message: dict[str, Any] = Field(default_factory=dict)
    error: DLQError = Field(default_factory=DLQError)
    metadata: DLQMetadata = Field(default_factory=DLQMetadata)
    dlq_info: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utc_now)
    status: DLQStatus = DLQ_STATUS_FAILED
    reprocess_attempts: int = 0
    last_reprocess_at: Optional[datetime] = None
    last_error: Optional[str] = None


class DLQPage(WireModel):
    """One page of DLQ records, newest first."""

    messages: list[DLQRecord]
    total: int
    offset: int
    limit: int
    has_more: bool


class OperationResult(WireModel):
    """Outcome of a reprocess or delete; operator tooling reports these per id."""

    success: bool
    dlq_id: str
    error: Optional[str] = None
    error_type: Optional[str] = None
    record: Optional[DLQRecord] = None


class BulkReprocessResult(WireModel):
    total: int
    succeeded: int
    failed: int
    results: list[OperationResult]


class LogMetadata(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    source: str = DEFAULT_SOURCE
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    retry_count: int = 0
    error_message: Optional[str] = None


class LogEntry(WireModel):
    """Append-only audit row for one lifecycle transition."""

    message_id: str
    action: Action
    exchange: str
    routing_key: str
    queue: Optional[str] = None
    message: Any = None
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: LogMetadata = Field(default_factory=LogMetadata)


class RetryOutcome(WireModel):
    """Result of one attempt made by the retry handler."""

    success: bool
    retry_attempt: int
    will_retry: bool = False
    next_retry_in_ms: Optional[int] = None
    sent_to_dlq: bool = False
