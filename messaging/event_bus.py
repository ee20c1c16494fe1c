"""Event bus: topology ownership, envelopes, publish and subscribe.

The bus is the only component producers and consumers talk to. It wraps
every payload in an ``Envelope`` carrying correlation/causation ids, writes
an audit entry for each publish and delivery, propagates trace context in
AMQP headers, and (when a ``RetryHandler`` is attached) gives subscribers
bounded in-process retry before a message is conceded to the DLQ.

Lifecycle:
- ``await bus.initialize()`` declares the topology; publish/subscribe before
  it raise ``NotInitialized``
- ``await bus.publish_event("order.created", {...})`` validates the payload
  against ``messaging.events`` and routes it on ``ecommerce.events``
- ``await bus.subscribe(queue, handler)`` acks after ``handler`` returns;
  a raising handler is retried, then dead-lettered

Example:
    >>> bus = EventBus(InMemoryBroker(), MessageLogger())
    >>> await bus.initialize()
    >>> async def on_order(envelope, delivery):
    ...     print(envelope.data["orderId"])
    >>> await bus.subscribe("payments.events.queue", on_order)
    >>> await bus.publish_event("order.created", {"orderId": "123"}, correlation_id="abc")
    True
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from opentelemetry.trace import SpanKind

from messaging.broker import Broker, DeliveryInfo
from messaging.constants import (
    ACTION_CONSUMED,
    ACTION_PUBLISHED,
    DEFAULT_SOURCE,
    DOMAIN_EVENT_SOURCE,
    EVENTS_EXCHANGE,
    NOTIFICATION_SOURCE,
    NOTIFICATIONS_EXCHANGE,
    NOTIFY_MESSAGE_CONSUMED,
    NOTIFY_MESSAGE_ERROR,
    NOTIFY_MESSAGE_PUBLISHED,
)
from messaging.errors import BrokerUnavailable, NotInitialized
from messaging.events import validate_event
from messaging.metrics import CONSUME_TOTAL, HANDLER_LATENCY_SECONDS, PUBLISH_TOTAL
from messaging.models import Envelope, EnvelopeMetadata, new_message_id, now_iso
from messaging.notifier import AuditNotifier
from messaging.topology import TopologyDescriptor, build_default_topology
from messaging.tracing import extract_context_from_headers, get_tracer, inject_headers

if TYPE_CHECKING:  # pragma: no cover - import only for typing
    from messaging.audit import MessageLogger
    from messaging.retry import RetryHandler


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Envelope, DeliveryInfo], Awaitable[Any]]


@dataclass
class Subscription:
    queue_name: str
    handler_name: str
    retry: bool
    max_retries: Optional[int] = None
    base_delay_ms: Optional[int] = None
    subscribed_at: str = field(default_factory=now_iso)


class EventBus:
    """Publish/subscribe facade over a ``Broker``.

    Properties:
        - broker: the ``Broker`` adapter (RabbitMQ or in-memory)
        - topology: descriptor declared by ``initialize``
        - message_logger: optional ``MessageLogger`` receiving every transition
        - notifier: local ``AuditNotifier`` for ``message_*`` notifications
        - retry_handler: optional ``RetryHandler`` wrapping subscribers

    Methods:
        - initialize(): declare topology (idempotent)
        - publish(...), publish_event(...), publish_notification(...)
        - republish(envelope): send an existing envelope unchanged
        - subscribe(queue, handler, ...): consume with optional retry
        - get_subscribers(), get_status(), close()
    """

    def __init__(
        self,
        broker: Broker,
        message_logger: Optional["MessageLogger"] = None,
        *,
        topology: Optional[TopologyDescriptor] = None,
        notifier: Optional[AuditNotifier] = None,
        retry_handler: Optional["RetryHandler"] = None,
    ) -> None:
        self.broker = broker
        self.message_logger = message_logger
        self.topology = topology or build_default_topology()
        self.notifier = notifier or AuditNotifier()
        self.retry_handler = retry_handler
        self._initialized = False
        self._subscribers: dict[str, Subscription] = {}
        self._tracer = get_tracer()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.broker.declare_topology(self.topology)
        self._initialized = True
        logger.info(
            "event bus initialized",
            extra={"exchanges": len(self.topology.exchanges), "queues": len(self.topology.queues)},
        )

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitialized("EventBus")

    def build_envelope(
        self,
        exchange: str,
        routing_key: str,
        data: Any,
        *,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Envelope:
        """Wrap ``data`` in a new envelope; ``correlationId`` defaults to the new id."""
        envelope_id = new_message_id()
        meta = dict(metadata or {})
        meta["source"] = source or meta.get("source") or DEFAULT_SOURCE
        meta["correlationId"] = correlation_id or envelope_id
        meta["causationId"] = causation_id
        meta.pop("correlation_id", None)
        meta.pop("causation_id", None)
        return Envelope(
            id=envelope_id,
            exchange=exchange,
            routing_key=routing_key,
            data=data,
            metadata=EnvelopeMetadata.model_validate(meta),
        )

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        data: Any,
        *,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Publish ``data`` and return whether the broker accepted it.

        Raises:
            NotInitialized: ``initialize()`` has not completed.
            BrokerUnavailable: the broker connection is gone.
        """
        self._require_initialized()
        envelope = self.build_envelope(
            exchange,
            routing_key,
            data,
            source=source,
            correlation_id=correlation_id,
            causation_id=causation_id,
            metadata=metadata,
        )
        return await self._send(envelope, headers)

    async def publish_event(
        self,
        event_type: str,
        data: Any,
        *,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Publish a typed domain event on ``ecommerce.events`` (routing key = event type)."""
        self._require_initialized()
        validate_event(event_type, data)
        return await self.publish(
            EVENTS_EXCHANGE,
            event_type,
            data,
            source=source or DOMAIN_EVENT_SOURCE,
            correlation_id=correlation_id,
            causation_id=causation_id,
            metadata=metadata,
            headers=headers,
        )

    async def publish_notification(
        self,
        data: Any,
        *,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Broadcast ``data`` on the ``ecommerce.notifications`` fanout exchange."""
        return await self.publish(
            NOTIFICATIONS_EXCHANGE,
            "",
            data,
            source=source or NOTIFICATION_SOURCE,
            correlation_id=correlation_id,
            causation_id=causation_id,
            metadata=metadata,
            headers=headers,
        )

    async def republish(
        self,
        envelope: Envelope,
        *,
        exchange: Optional[str] = None,
        routing_key: Optional[str] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Send an existing envelope again, byte-for-byte, optionally re-routed."""
        self._require_initialized()
        return await self._send(envelope, headers, exchange=exchange, routing_key=routing_key)

    async def _send(
        self,
        envelope: Envelope,
        headers: Optional[dict[str, Any]],
        *,
        exchange: Optional[str] = None,
        routing_key: Optional[str] = None,
    ) -> bool:
        exchange = envelope.exchange if exchange is None else exchange
        routing_key = envelope.routing_key if routing_key is None else routing_key
        await self._audit(ACTION_PUBLISHED, exchange, routing_key, envelope)

        with self._tracer.start_as_current_span(
            "publish",
            kind=SpanKind.PRODUCER,
            attributes={
                "messaging.destination": exchange,
                "messaging.rabbitmq.routing_key": routing_key,
                "messaging.message_id": envelope.id,
            },
        ):
            try:
                accepted = await self.broker.publish(
                    exchange,
                    routing_key,
                    envelope.to_wire(),
                    headers=inject_headers(headers),
                    message_id=envelope.id,
                    correlation_id=envelope.correlation_id,
                )
            except BrokerUnavailable:
                PUBLISH_TOTAL.labels(exchange=exchange, result="error").inc()
                logger.error("publish failed: broker unavailable", extra={"exchange": exchange, "routing_key": routing_key})
                raise

        PUBLISH_TOTAL.labels(exchange=exchange, result="accepted" if accepted else "rejected").inc()
        self.notifier.emit(
            NOTIFY_MESSAGE_PUBLISHED,
            {
                "id": envelope.id,
                "exchange": exchange,
                "routingKey": routing_key,
                "correlationId": envelope.correlation_id,
                "accepted": accepted,
            },
        )
        return accepted

    async def subscribe(
        self,
        queue_name: str,
        handler: MessageHandler,
        *,
        retry: bool = True,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
    ) -> None:
        """Consume ``queue_name`` with ``handler(envelope, delivery)``.

        With a retry handler attached and ``retry=True``, failures are
        retried in-process and finally handed to the DLQ; otherwise the
        exception reaches the broker, which dead-letters the delivery.
        """
        self._require_initialized()
        use_retry = retry and self.retry_handler is not None

        async def _on_delivery(body: dict[str, Any], delivery: DeliveryInfo) -> None:
            envelope = Envelope.model_validate(body)
            with self._tracer.start_as_current_span(
                "consume",
                context=extract_context_from_headers(delivery.headers),
                kind=SpanKind.CONSUMER,
                attributes={"messaging.source": queue_name, "messaging.message_id": envelope.id},
            ):
                await self._audit(ACTION_CONSUMED, envelope.exchange, envelope.routing_key, envelope, queue=queue_name)
                self.notifier.emit(
                    NOTIFY_MESSAGE_CONSUMED,
                    {"id": envelope.id, "queue": queue_name, "correlationId": envelope.correlation_id},
                )
                start = time.perf_counter()
                try:
                    if use_retry:
                        assert self.retry_handler is not None
                        await self.retry_handler.process_with_retry(
                            handler,
                            envelope,
                            delivery,
                            queue_name=queue_name,
                            max_retries=max_retries,
                            base_delay_ms=base_delay_ms,
                        )
                    else:
                        await handler(envelope, delivery)
                except Exception as exc:
                    CONSUME_TOTAL.labels(queue=queue_name, status="failure").inc()
                    self.notifier.emit(
                        NOTIFY_MESSAGE_ERROR,
                        {"id": envelope.id, "queue": queue_name, "error": str(exc)},
                    )
                    raise
                finally:
                    HANDLER_LATENCY_SECONDS.labels(queue=queue_name).observe(time.perf_counter() - start)
                CONSUME_TOTAL.labels(queue=queue_name, status="success").inc()

        await self.broker.consume(queue_name, _on_delivery)
        self._subscribers[queue_name] = Subscription(
            queue_name=queue_name,
            handler_name=getattr(handler, "__qualname__", repr(handler)),
            retry=use_retry,
            max_retries=max_retries,
            base_delay_ms=base_delay_ms,
        )
        logger.info("subscribed to %s", queue_name, extra={"retry": use_retry})

    async def _audit(
        self,
        action: str,
        exchange: str,
        routing_key: str,
        envelope: Envelope,
        *,
        queue: Optional[str] = None,
    ) -> None:
        if self.message_logger is None:
            return
        meta: dict[str, Any] = {
            "source": envelope.metadata.source,
            "correlationId": envelope.correlation_id,
            "causationId": envelope.causation_id,
        }
        if queue is not None:
            meta["queue"] = queue
        await self.message_logger.log_message(action, exchange, routing_key, envelope, meta)

    def get_subscribers(self) -> list[dict[str, Any]]:
        return [asdict(s) for s in self._subscribers.values()]

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "connected": self.broker.is_connected,
            "subscriber_count": len(self._subscribers),
            "subscribers": self.get_subscribers(),
        }

    async def close(self) -> None:
        if self.retry_handler is not None:
            self.retry_handler.cancel_pending()
        await self.broker.close()
        self._initialized = False
        self._subscribers.clear()
