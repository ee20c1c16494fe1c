"""Dead-letter queue manager: ingest, index, reprocess and purge failures.

The manager consumes every ``dlq.<queue>`` queue of the topology and turns
each delivery into a ``DLQRecord`` in the injected ``DLQStore``. Two kinds
of delivery arrive there:

- records published by ``RetryHandler`` after retry exhaustion: an envelope
  whose ``data`` carries ``originalMessage``, ``error`` and ``metadata``
- raw broker dead letters (a handler subscribed without retry raised, so the
  broker rerouted the original envelope through the queue's DLX with an
  ``x-death`` header)

Operators list, inspect, reprocess (republish the original envelope to its
original route) and delete records. Reprocess and delete return
``OperationResult`` objects instead of raising so batch tooling can report
partial results.

Example:
    >>> manager = DeadLetterQueueManager(bus)
    >>> await manager.initialize()
    >>> page = await manager.get_dlq_messages(queue_name="orders.events.queue", limit=10)
    >>> result = await manager.reprocess_dlq_message(page.messages[0].dlq_id)
"""
from __future__ import annotations

import logging
import random
import string
import time
from collections import Counter
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional

from messaging.broker import DeliveryInfo
from messaging.constants import (
    BROKER_DEAD_LETTER_ERROR,
    DLQ_STATUS_FAILED,
    DLQ_STATUS_REPROCESS_FAILED,
    DLQ_STATUS_REPROCESSED,
    EMAIL_QUEUE,
    EVENTS_EXCHANGE,
    HEADER_DEATH,
    HEADER_FIRST_DEATH_QUEUE,
    HEADER_ORIGINAL_DLQ_ID,
    HEADER_REPROCESS_ATTEMPT,
    HEADER_REPROCESSED,
    INVENTORY_QUEUE,
    NOTIFICATIONS_EXCHANGE,
    NOTIFY_DLQ_MESSAGE_RECEIVED,
    PAYMENTS_QUEUE,
    SMS_QUEUE,
)
from messaging.errors import DLQNotFound, ReprocessFailure
from messaging.metrics import DLQ_INGESTED_TOTAL, DLQ_REPROCESS_TOTAL
from messaging.models import (
    BulkReprocessResult,
    DLQError,
    DLQMetadata,
    DLQPage,
    DLQRecord,
    Envelope,
    OperationResult,
    now_iso,
    utc_now,
)
from messaging.stores import DLQStore, InMemoryDLQStore

if TYPE_CHECKING:  # pragma: no cover - import only for typing
    from messaging.event_bus import EventBus


logger = logging.getLogger(__name__)

# Route a reprocessed message takes, keyed by the work queue it failed in.
# Queues not listed fall back to the envelope's own exchange and routing key.
REPROCESS_ROUTES: dict[str, tuple[str, str]] = {
    PAYMENTS_QUEUE: (EVENTS_EXCHANGE, "order.created"),
    INVENTORY_QUEUE: (EVENTS_EXCHANGE, "order.created"),
    EMAIL_QUEUE: (NOTIFICATIONS_EXCHANGE, ""),
    SMS_QUEUE: (NOTIFICATIONS_EXCHANGE, ""),
}

RECENT_WINDOW = timedelta(hours=24)
RECENT_LIMIT = 10


def generate_dlq_id() -> str:
    """Return an id like ``dlq_1718000000000_k3j9x0a1b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"dlq_{int(time.time() * 1000)}_{suffix}"


def summarize_records(records: list[DLQRecord]) -> dict[str, Any]:
    """Aggregate DLQ records; ``recent_failures`` holds the newest 10 from the last 24h."""
    cutoff = utc_now() - RECENT_WINDOW
    recent = sorted(
        (r for r in records if r.received_at >= cutoff),
        key=lambda r: r.received_at,
        reverse=True,
    )[:RECENT_LIMIT]
    return {
        "total": len(records),
        "by_status": dict(Counter(r.status for r in records)),
        "by_queue": dict(Counter(r.metadata.original_queue or r.queue_name for r in records)),
        "by_error_type": dict(Counter(r.error.name for r in records)),
        "recent_failures": recent,
    }


class DeadLetterQueueManager:
    """Index and operate on terminal failures.

    Properties:
        - bus: ``EventBus`` used to consume DLQs and republish records
        - store: ``DLQStore`` holding the records (in-memory unless injected)
        - is_initialized: True once every DLQ queue is being consumed

    Methods:
        - initialize(): subscribe to every DLQ queue (without retry)
        - close(): mark the manager uninitialized; the bus owns the broker
        - handle_dlq_message(queue_name, envelope, delivery): store one record
        - get_dlq_messages / get_dlq_message / get_dlq_stats
        - reprocess_dlq_message / bulk_reprocess / remove_dlq_message
        - get_health() / is_ready()
    """

    def __init__(self, bus: "EventBus", store: Optional[DLQStore] = None) -> None:
        self.bus = bus
        self.store: DLQStore = store or InMemoryDLQStore()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        for spec in self.bus.topology.dlq_queues():
            queue_name = spec.name

            async def _on_dlq(envelope: Envelope, delivery: DeliveryInfo, _queue: str = queue_name) -> None:
                await self.handle_dlq_message(_queue, envelope, delivery)

            await self.bus.subscribe(queue_name, _on_dlq, retry=False)
        self._initialized = True
        logger.info("DLQ manager consuming %d queues", len(self.bus.topology.dlq_queues()))

    async def close(self) -> None:
        """Forget the DLQ subscriptions so a later ``initialize()`` consumes again."""
        self._initialized = False

    async def handle_dlq_message(
        self,
        queue_name: str,
        envelope: Envelope,
        delivery: Optional[DeliveryInfo] = None,
    ) -> DLQRecord:
        """Turn one DLQ delivery into a stored ``DLQRecord``."""
        data = envelope.data if isinstance(envelope.data, dict) else None
        if data is not None and "originalMessage" in data:
            record = self._record_from_retry_handler(queue_name, envelope, data)
        else:
            record = self._record_from_broker(queue_name, envelope, delivery)

        await self.store.put(record)
        DLQ_INGESTED_TOTAL.labels(queue=queue_name).inc()
        logger.warning(
            "DLQ message stored %s",
            record.dlq_id,
            extra={
                "queue": queue_name,
                "original_queue": record.metadata.original_queue,
                "error_name": record.error.name,
            },
        )
        self.bus.notifier.emit(NOTIFY_DLQ_MESSAGE_RECEIVED, record.to_wire())
        await self._announce(record)
        return record

    def _record_from_retry_handler(self, queue_name: str, envelope: Envelope, data: dict[str, Any]) -> DLQRecord:
        metadata = DLQMetadata.model_validate(data.get("metadata") or {})
        if metadata.correlation_id is None:
            metadata.correlation_id = envelope.correlation_id
        metadata.queue_name = queue_name
        return DLQRecord(
            dlq_id=generate_dlq_id(),
            queue_name=queue_name,
            original_message=data.get("originalMessage") or {},
            error=DLQError.model_validate(data.get("error") or {}),
            metadata=metadata,
            dlq_info=data.get("dlqInfo") or {},
        )

    def _record_from_broker(
        self, queue_name: str, envelope: Envelope, delivery: Optional[DeliveryInfo]
    ) -> DLQRecord:
        headers = delivery.headers if delivery is not None else {}
        deaths = headers.get(HEADER_DEATH) or []
        first_death = deaths[-1] if deaths else {}
        original_queue = (
            headers.get(HEADER_FIRST_DEATH_QUEUE)
            or first_death.get("queue")
            or self.bus.topology.dlq_sources().get(queue_name)
        )
        reason = first_death.get("reason", "rejected")
        return DLQRecord(
            dlq_id=generate_dlq_id(),
            queue_name=queue_name,
            original_message=envelope.to_wire(),
            error=DLQError(message=f"message {reason} by consumer of {original_queue}", name=BROKER_DEAD_LETTER_ERROR),
            metadata=DLQMetadata(
                original_queue=original_queue,
                correlation_id=envelope.correlation_id,
                failed_at=now_iso(),
                queue_name=queue_name,
            ),
            dlq_info={"reason": reason, "deaths": deaths},
        )

    async def _announce(self, record: DLQRecord) -> None:
        """Publish ``dlq.message.received`` for dashboards; failures are only logged."""
        try:
            await self.bus.publish_event(
                "dlq.message.received",
                {
                    "dlqId": record.dlq_id,
                    "queueName": record.queue_name,
                    "originalQueue": record.metadata.original_queue,
                    "errorMessage": record.error.message,
                },
                source="dlq-manager",
                correlation_id=record.metadata.correlation_id,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not publish dlq.message.received for %s: %s", record.dlq_id, exc)

    async def get_dlq_messages(
        self,
        status: Optional[str] = None,
        queue_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> DLQPage:
        """Return records newest first, filtered by status and/or queue.

        ``queue_name`` matches either the original work queue or the DLQ
        queue the record arrived on.
        """
        records = await self.store.list_all()
        if status:
            records = [r for r in records if r.status == status]
        if queue_name:
            records = [r for r in records if queue_name in (r.metadata.original_queue, r.queue_name)]
        records.sort(key=lambda r: r.received_at, reverse=True)
        total = len(records)
        page = records[offset : offset + limit]
        return DLQPage(messages=page, total=total, offset=offset, limit=limit, has_more=offset + limit < total)

    async def get_dlq_message(self, dlq_id: str) -> Optional[DLQRecord]:
        return await self.store.get(dlq_id)

    def resolve_route(self, record: DLQRecord) -> tuple[str, str]:
        """Return ``(exchange, routing_key)`` a reprocessed record is republished to."""
        original_queue = record.metadata.original_queue or self.bus.topology.dlq_sources().get(record.queue_name)
        if original_queue in REPROCESS_ROUTES:
            return REPROCESS_ROUTES[original_queue]
        message = record.original_message
        return message.get("exchange", EVENTS_EXCHANGE), message.get("routingKey", "")

    async def reprocess_dlq_message(self, dlq_id: str) -> OperationResult:
        """Republish a record's original envelope to its original route.

        The record moves ``failed -> reprocessing -> reprocessed`` on broker
        accept, or ``reprocess_failed`` with ``last_error`` otherwise. A
        record already in ``reprocessing`` is left alone.
        """
        existing = await self.store.get(dlq_id)
        if existing is None:
            DLQ_REPROCESS_TOTAL.labels(result="failed").inc()
            err = DLQNotFound(dlq_id)
            return OperationResult(success=False, dlq_id=dlq_id, error=str(err), error_type=type(err).__name__)

        record = await self.store.begin_reprocess(dlq_id, utc_now())
        if record is None:
            DLQ_REPROCESS_TOTAL.labels(result="skipped").inc()
            return OperationResult(
                success=False,
                dlq_id=dlq_id,
                error=f"DLQ message {dlq_id} is already being reprocessed",
                error_type="ReprocessInProgress",
                record=existing,
            )

        exchange, routing_key = self.resolve_route(record)
        headers = {
            HEADER_REPROCESSED: "true",
            HEADER_ORIGINAL_DLQ_ID: dlq_id,
            HEADER_REPROCESS_ATTEMPT: str(record.reprocess_attempts),
        }
        failure: Optional[ReprocessFailure] = None
        try:
            accepted = await self._republish(record, exchange, routing_key, headers)
            if not accepted:
                failure = ReprocessFailure(dlq_id)
        except Exception as exc:  # noqa: BLE001
            failure = ReprocessFailure(dlq_id, str(exc))

        if failure is None:
            record.status = DLQ_STATUS_REPROCESSED
            record.last_error = None
            DLQ_REPROCESS_TOTAL.labels(result="reprocessed").inc()
            logger.info("DLQ message %s reprocessed to %s:%s", dlq_id, exchange, routing_key)
        else:
            record.status = DLQ_STATUS_REPROCESS_FAILED
            record.last_error = str(failure)
            DLQ_REPROCESS_TOTAL.labels(result="failed").inc()
            logger.error("DLQ message %s reprocess failed: %s", dlq_id, failure)
        await self.store.update(record)

        return OperationResult(
            success=failure is None,
            dlq_id=dlq_id,
            error=str(failure) if failure else None,
            error_type=type(failure).__name__ if failure else None,
            record=record,
        )

    async def _republish(
        self, record: DLQRecord, exchange: str, routing_key: str, headers: dict[str, Any]
    ) -> bool:
        original = record.original_message
        if original.get("id") and "metadata" in original:
            envelope = Envelope.model_validate(original)
            return await self.bus.republish(envelope, exchange=exchange, routing_key=routing_key, headers=headers)
        return await self.bus.publish(
            exchange,
            routing_key,
            original.get("data", original),
            source="dlq-reprocess",
            correlation_id=record.metadata.correlation_id,
            headers=headers,
        )

    async def bulk_reprocess(self, dlq_ids: list[str]) -> BulkReprocessResult:
        results = [await self.reprocess_dlq_message(dlq_id) for dlq_id in dlq_ids]
        succeeded = sum(1 for r in results if r.success)
        return BulkReprocessResult(
            total=len(results), succeeded=succeeded, failed=len(results) - succeeded, results=results
        )

    async def remove_dlq_message(self, dlq_id: str) -> OperationResult:
        try:
            record = await self.store.get(dlq_id)
            if record is None or not await self.store.delete(dlq_id):
                raise DLQNotFound(dlq_id)
        except DLQNotFound as exc:
            return OperationResult(success=False, dlq_id=dlq_id, error=str(exc), error_type=type(exc).__name__)
        logger.info("DLQ message %s removed", dlq_id)
        return OperationResult(success=True, dlq_id=dlq_id, record=record)

    async def get_dlq_stats(self) -> dict[str, Any]:
        """Counts by status, original queue and error type, plus recent failures."""
        return summarize_records(await self.store.list_all())

    async def get_health(self) -> dict[str, Any]:
        records = await self.store.list_all()
        retry_stats: dict[str, Any] = {"active_retries": 0}
        if self.bus.retry_handler is not None:
            retry_stats = await self.bus.retry_handler.get_retry_stats()
        return {
            "initialized": self._initialized,
            "connected": self.bus.broker.is_connected,
            "total_messages": len(records),
            "failed_messages": sum(1 for r in records if r.status == DLQ_STATUS_FAILED),
            "active_retries": retry_stats["active_retries"],
            "checked_at": now_iso(),
        }

    def is_ready(self) -> bool:
        return self._initialized and self.bus.broker.is_connected
