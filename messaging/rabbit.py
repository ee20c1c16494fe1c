"""RabbitMQ implementation of the ``Broker`` contract on top of ``aio_pika``.

This module provides:
- Connecting with optional TLS/mTLS and a bounded retry/backoff loop
- Declaring a ``TopologyDescriptor`` (exchanges, queues with DLX arguments,
  bindings)
- Publishing JSON bodies with publisher confirms and ``mandatory=True``
- Consuming one message at a time and acking only after the handler returns

Limitation: the connection is not robust. If it drops after startup,
``publish`` and ``consume`` raise ``BrokerUnavailable`` until the process is
restarted.

Example:
    >>> broker = await RabbitBroker.connect(Settings())
    >>> await broker.declare_topology(build_default_topology())
    >>> await broker.publish("ecommerce.events", "order.created", {"id": "m1"})
    True
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import ssl
from typing import Any, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import (
    AMQPConnectionError,
    ChannelClosed,
    ChannelInvalidStateError,
    ConnectionClosed,
    DeliveryError,
    PublishError,
)
from pamqp.commands import Basic

from messaging.broker import ConsumerHandler, DeliveryInfo
from messaging.config import Settings
from messaging.errors import BrokerUnavailable
from messaging.topology import TopologyDescriptor


logger = logging.getLogger(__name__)

_EXCHANGE_TYPES = {
    "topic": ExchangeType.TOPIC,
    "fanout": ExchangeType.FANOUT,
    "direct": ExchangeType.DIRECT,
}

_CONNECTION_ERRORS = (AMQPConnectionError, ChannelClosed, ChannelInvalidStateError, ConnectionClosed)


def _build_ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

    Honors ``RABBITMQ_SSL_*`` flags in ``Settings``. When verification is
    disabled (dev/local), hostname checks and certificate verification are
    relaxed.
    """
    scheme = urlsplit(settings.rabbitmq_url).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    context = ssl.create_default_context(cafile=settings.rabbitmq_ssl_ca_path or None)

    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        context.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context.verify_mode = ssl.CERT_REQUIRED

    return context


async def connect(settings: Settings) -> AbstractConnection:
    """Open an AMQP connection, retrying with exponential backoff.

    RabbitMQ may not be ready yet when a service starts next to it, so the
    initial connect is retried. Once connected, a dropped connection is not
    re-established.

    Environment overrides:
    - ``RABBITMQ_CONNECT_ATTEMPTS`` (default: 12)
    - ``RABBITMQ_CONNECT_BASE_DELAY_MS`` (default: 500)
    - ``RABBITMQ_CONNECT_MAX_DELAY_MS`` (default: 3000)
    """
    ssl_context = _build_ssl_context(settings)

    max_attempts = int(os.getenv("RABBITMQ_CONNECT_ATTEMPTS", "12"))
    delay_ms = int(os.getenv("RABBITMQ_CONNECT_BASE_DELAY_MS", "500"))
    max_delay_ms = int(os.getenv("RABBITMQ_CONNECT_MAX_DELAY_MS", "3000"))

    kwargs: dict[str, Any] = {
        "heartbeat": settings.rabbitmq_heartbeat,
        "client_properties": {"connection_name": settings.rabbitmq_connection_name},
    }
    if ssl_context is not None:
        kwargs["ssl"] = True
        kwargs["ssl_context"] = ssl_context

    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            connection = await aio_pika.connect(settings.rabbitmq_url, **kwargs)
            logger.info("connected to RabbitMQ", extra={"attempt": attempt})
            return connection
        except Exception as exc:  # noqa: BLE001
            last_exc = exc
            logger.warning("RabbitMQ connect attempt %d/%d failed: %s", attempt, max_attempts, exc)
            if attempt == max_attempts:
                break
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(int(delay_ms * 2), max_delay_ms)
    assert last_exc is not None
    raise BrokerUnavailable(f"could not connect to RabbitMQ: {last_exc}") from last_exc


def _header_value(value: Any) -> Any:
    """Convert AMQP table values (bytes, nested tables) into JSON-friendly values."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(k): _header_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_header_value(v) for v in value]
    return value


class RabbitBroker:
    """``Broker`` backed by a single aio-pika connection and channel.

    Properties:
    - ``is_connected``: False once the connection or channel has closed
    - ``prefetch_count``: QoS applied to the channel (1 keeps per-queue order)

    Example:
        >>> broker = await RabbitBroker.connect(Settings())
        >>> await broker.consume("payments.events.queue", handler)
    """

    def __init__(self, connection: AbstractConnection, channel: AbstractChannel, prefetch_count: int = 1):
        self._connection = connection
        self._channel = channel
        self.prefetch_count = prefetch_count
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._consumer_tags: dict[str, str] = {}

    @classmethod
    async def connect(cls, settings: Settings | None = None) -> "RabbitBroker":
        settings = settings or Settings()
        connection = await connect(settings)
        channel = await connection.channel(publisher_confirms=True, on_return_raises=True)
        await channel.set_qos(prefetch_count=settings.prefetch_count)
        return cls(connection, channel, prefetch_count=settings.prefetch_count)

    @property
    def is_connected(self) -> bool:
        return not self._connection.is_closed and not self._channel.is_closed

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise BrokerUnavailable()

    async def declare_topology(self, descriptor: TopologyDescriptor) -> None:
        """Declare exchanges, queues and bindings; safe to call repeatedly."""
        self._ensure_connected()
        try:
            for ex in descriptor.exchanges:
                self._exchanges[ex.name] = await self._channel.declare_exchange(
                    ex.name, _EXCHANGE_TYPES[ex.type], durable=ex.durable
                )
            for spec in descriptor.queues:
                queue = await self._channel.declare_queue(
                    spec.name, durable=spec.durable, arguments=spec.arguments()
                )
                self._queues[spec.name] = queue
                for binding in spec.bindings:
                    await queue.bind(self._exchanges[binding.exchange], routing_key=binding.routing_key)
        except _CONNECTION_ERRORS as exc:
            raise BrokerUnavailable(str(exc)) from exc
        logger.info(
            "topology declared",
            extra={"exchanges": len(descriptor.exchanges), "queues": len(descriptor.queues)},
        )

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: dict[str, Any],
        *,
        headers: Optional[dict[str, Any]] = None,
        message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        persistent: bool = True,
    ) -> bool:
        """Publish ``body`` as JSON and wait for the broker confirm.

        Returns False when the exchange is unknown, the message is unroutable
        (returned because of ``mandatory=True``) or the broker nacks it.
        """
        self._ensure_connected()
        target = self._exchanges.get(exchange)
        if target is None:
            logger.warning("publish to undeclared exchange %s", exchange)
            return False
        amqp_message = Message(
            body=json.dumps(body, separators=(",", ":")).encode("utf-8"),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
            headers=dict(headers or {}),
            message_id=message_id,
            correlation_id=correlation_id,
        )
        try:
            result = await target.publish(amqp_message, routing_key=routing_key, mandatory=True)
        except (DeliveryError, PublishError) as exc:
            logger.warning("broker rejected message on %s:%s: %s", exchange, routing_key, exc)
            return False
        except _CONNECTION_ERRORS as exc:
            raise BrokerUnavailable(str(exc)) from exc
        if result is not None and not isinstance(result, Basic.Ack):
            # Returned as unroutable without raising
            logger.warning("broker returned message on %s:%s", exchange, routing_key)
            return False
        return True

    async def consume(self, queue_name: str, handler: ConsumerHandler) -> None:
        """Start consuming ``queue_name``; a raising handler nacks without requeue."""
        self._ensure_connected()
        queue = self._queues.get(queue_name)
        if queue is None:
            try:
                queue = await self._channel.get_queue(queue_name)
            except _CONNECTION_ERRORS as exc:
                raise BrokerUnavailable(str(exc)) from exc
            self._queues[queue_name] = queue

        async def _on_message(message: AbstractIncomingMessage) -> None:
            try:
                async with message.process(requeue=False):
                    body = json.loads(message.body)
                    info = DeliveryInfo(
                        exchange=message.exchange or "",
                        routing_key=message.routing_key or "",
                        queue=queue_name,
                        headers=_header_value(dict(message.headers or {})),
                        message_id=message.message_id,
                        correlation_id=message.correlation_id,
                        redelivered=bool(message.redelivered),
                        delivery_tag=message.delivery_tag or 0,
                    )
                    await handler(body, info)
            except Exception:  # noqa: BLE001
                # Already rejected by process(); the queue's DLX reroutes it
                logger.exception("consumer for %s failed; message dead-lettered", queue_name)

        self._consumer_tags[queue_name] = await queue.consume(_on_message, no_ack=False)
        logger.info("consuming %s", queue_name)

    async def close(self) -> None:
        for queue_name, tag in list(self._consumer_tags.items()):
            queue = self._queues.get(queue_name)
            if queue is not None and not self._channel.is_closed:
                await queue.cancel(tag)
        self._consumer_tags.clear()
        if not self._connection.is_closed:
            await self._connection.close()
