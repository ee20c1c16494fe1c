"""Broker adapter contract and an in-process implementation.

``Broker`` is the narrow surface the event bus needs: declare a topology,
publish a JSON body, and consume a queue one message at a time with
ack-after-handler semantics. ``messaging.rabbit.RabbitBroker`` implements it
on aio-pika; ``InMemoryBroker`` implements the same routing and
dead-lettering rules in memory so tests and local runs do not need a
RabbitMQ server.

Routing rules mirrored from RabbitMQ:
- topic: ``*`` matches exactly one word, ``#`` matches zero or more words
- direct: exact routing key match
- fanout: every bound queue, routing key ignored
- a nacked delivery is republished to the queue's dead-letter exchange with
  its dead-letter routing key and an ``x-death`` header

Example:
    >>> broker = InMemoryBroker()
    >>> await broker.declare_topology(build_default_topology())
    >>> await broker.publish("ecommerce.events", "order.created", {"id": "m1"})
    True
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from messaging.constants import HEADER_DEATH, HEADER_FIRST_DEATH_QUEUE
from messaging.errors import BrokerUnavailable
from messaging.topology import ExchangeSpec, QueueSpec, TopologyDescriptor


logger = logging.getLogger(__name__)


@dataclass
class DeliveryInfo:
    """Broker-level facts about one delivery, handed to consumer handlers."""

    exchange: str
    routing_key: str
    queue: str
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    redelivered: bool = False
    delivery_tag: int = 0


ConsumerHandler = Callable[[dict[str, Any], DeliveryInfo], Awaitable[None]]


class Broker(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def declare_topology(self, descriptor: TopologyDescriptor) -> None: ...

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
    ) -> bool: ...

    async def consume(self, queue_name: str, handler: ConsumerHandler) -> None: ...

    async def close(self) -> None: ...


def topic_matches(pattern: str, routing_key: str) -> bool:
    """Return True if ``routing_key`` matches an AMQP topic binding ``pattern``.

    Example:
        >>> topic_matches("payment.*", "payment.succeeded")
        True
        >>> topic_matches("payment.*", "payment.card.failed")
        False
        >>> topic_matches("order.#", "order")
        True
    """
    return _match(pattern.split(".") if pattern else [], routing_key.split(".") if routing_key else [])


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


@dataclass
class PublishedMessage:
    exchange: str
    routing_key: str
    body: dict[str, Any]
    headers: dict[str, Any]
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    routed: bool = True


@dataclass
class _Delivery:
    body: dict[str, Any]
    exchange: str
    routing_key: str
    headers: dict[str, Any]
    message_id: Optional[str]
    correlation_id: Optional[str]


@dataclass
class _QueueState:
    spec: QueueSpec
    pending: "asyncio.Queue[_Delivery]" = field(default_factory=asyncio.Queue)
    consumer: Optional[ConsumerHandler] = None
    task: Optional["asyncio.Task[None]"] = None
    processing: bool = False
    acked: int = 0
    nacked: int = 0


class InMemoryBroker:
    """Single-process broker honoring the ``Broker`` contract.

    Properties:
        - published: every publish attempt, routed or not, in order
        - is_connected: False after ``disconnect()`` or ``close()``

    Methods beyond the contract:
        - disconnect(): simulate a lost connection (publish/consume then
          raise ``BrokerUnavailable``)
        - drain(): wait until every consumed queue is empty and idle
        - get(queue): pop one waiting message (basic.get with auto-ack)
        - message_count(queue): number of waiting messages
    """

    def __init__(self) -> None:
        self._connected = True
        self._exchanges: dict[str, ExchangeSpec] = {}
        self._queues: dict[str, _QueueState] = {}
        self._bindings: dict[str, list[tuple[str, str]]] = {}
        self._delivery_tag = 0
        self.published: list[PublishedMessage] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def exchanges(self) -> dict[str, ExchangeSpec]:
        return dict(self._exchanges)

    @property
    def queues(self) -> list[str]:
        return list(self._queues)

    def bindings(self, exchange: str) -> list[tuple[str, str]]:
        return list(self._bindings.get(exchange, []))

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise BrokerUnavailable()

    async def declare_topology(self, descriptor: TopologyDescriptor) -> None:
        """Assert exchanges, queues and bindings; repeated calls are no-ops.

        Redeclaring an exchange with a different type fails the same way
        RabbitMQ's PRECONDITION_FAILED does.
        """
        self._ensure_connected()
        for ex in descriptor.exchanges:
            existing = self._exchanges.get(ex.name)
            if existing is not None and existing.type != ex.type:
                raise ValueError(
                    f"exchange '{ex.name}' already declared as {existing.type}, not {ex.type}"
                )
            self._exchanges.setdefault(ex.name, ex)
            self._bindings.setdefault(ex.name, [])
        for spec in descriptor.queues:
            if spec.name not in self._queues:
                self._queues[spec.name] = _QueueState(spec=spec)
            for binding in spec.bindings:
                pair = (spec.name, binding.routing_key)
                bound = self._bindings.setdefault(binding.exchange, [])
                if pair not in bound:
                    bound.append(pair)

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
        """Route ``body`` to bound queues; return False when unroutable."""
        self._ensure_connected()
        # Round-trip through JSON so consumers never share objects with publishers
        wire_body = json.loads(json.dumps(body))
        hdrs = dict(headers or {})
        targets = self._route(exchange, routing_key)
        self.published.append(
            PublishedMessage(
                exchange=exchange,
                routing_key=routing_key,
                body=wire_body,
                headers=hdrs,
                message_id=message_id,
                correlation_id=correlation_id,
                routed=bool(targets),
            )
        )
        if not targets:
            logger.warning("unroutable message on %s:%s", exchange, routing_key)
            return False
        for state in targets:
            state.pending.put_nowait(
                _Delivery(
                    body=copy.deepcopy(wire_body),
                    exchange=exchange,
                    routing_key=routing_key,
                    headers=dict(hdrs),
                    message_id=message_id,
                    correlation_id=correlation_id,
                )
            )
        return True

    def _route(self, exchange: str, routing_key: str) -> list[_QueueState]:
        spec = self._exchanges.get(exchange)
        if spec is None:
            return []
        matched: list[_QueueState] = []
        for queue_name, pattern in self._bindings.get(exchange, []):
            if spec.type == "fanout":
                hit = True
            elif spec.type == "topic":
                hit = topic_matches(pattern, routing_key)
            else:
                hit = pattern == routing_key
            state = self._queues.get(queue_name)
            if hit and state is not None and state not in matched:
                matched.append(state)
        return matched

    async def consume(self, queue_name: str, handler: ConsumerHandler) -> None:
        """Start delivering ``queue_name`` to ``handler`` one message at a time."""
        self._ensure_connected()
        state = self._queues.get(queue_name)
        if state is None:
            raise ValueError(f"queue '{queue_name}' is not declared")
        if state.consumer is not None:
            raise ValueError(f"queue '{queue_name}' already has a consumer")
        state.consumer = handler
        state.task = asyncio.create_task(self._consume_loop(state), name=f"consume:{queue_name}")

    async def _consume_loop(self, state: _QueueState) -> None:
        while True:
            delivery = await state.pending.get()
            state.processing = True
            self._delivery_tag += 1
            info = DeliveryInfo(
                exchange=delivery.exchange,
                routing_key=delivery.routing_key,
                queue=state.spec.name,
                headers=dict(delivery.headers),
                message_id=delivery.message_id,
                correlation_id=delivery.correlation_id,
                delivery_tag=self._delivery_tag,
            )
            try:
                assert state.consumer is not None
                await state.consumer(copy.deepcopy(delivery.body), info)
            except Exception:  # noqa: BLE001
                logger.exception("consumer for %s raised; nacking without requeue", state.spec.name)
                state.nacked += 1
                self._dead_letter(state, delivery)
            else:
                state.acked += 1
            finally:
                state.processing = False
                state.pending.task_done()

    def _dead_letter(self, state: _QueueState, delivery: _Delivery) -> None:
        """Reroute a rejected delivery through the queue's dead-letter exchange."""
        spec = state.spec
        headers = dict(delivery.headers)
        deaths = list(headers.get(HEADER_DEATH) or [])
        deaths.insert(
            0,
            {
                "queue": spec.name,
                "reason": "rejected",
                "count": 1,
                "exchange": delivery.exchange,
                "routing-keys": [delivery.routing_key],
            },
        )
        headers[HEADER_DEATH] = deaths
        headers.setdefault(HEADER_FIRST_DEATH_QUEUE, spec.name)
        dl_key = spec.dead_letter_routing_key or delivery.routing_key
        targets = self._route(spec.dead_letter_exchange, dl_key)
        if not targets:
            logger.warning("dead letter from %s dropped: no queue bound to %s", spec.name, dl_key)
            return
        for target in targets:
            target.pending.put_nowait(
                _Delivery(
                    body=copy.deepcopy(delivery.body),
                    exchange=spec.dead_letter_exchange,
                    routing_key=dl_key,
                    headers=dict(headers),
                    message_id=delivery.message_id,
                    correlation_id=delivery.correlation_id,
                )
            )

    async def get(self, queue_name: str) -> Optional[tuple[dict[str, Any], DeliveryInfo]]:
        """Pop one waiting message from ``queue_name`` or return None."""
        self._ensure_connected()
        state = self._queues[queue_name]
        try:
            delivery = state.pending.get_nowait()
        except asyncio.QueueEmpty:
            return None
        state.pending.task_done()
        info = DeliveryInfo(
            exchange=delivery.exchange,
            routing_key=delivery.routing_key,
            queue=queue_name,
            headers=delivery.headers,
            message_id=delivery.message_id,
            correlation_id=delivery.correlation_id,
        )
        return delivery.body, info

    def message_count(self, queue_name: str) -> int:
        return self._queues[queue_name].pending.qsize()

    def stats(self, queue_name: str) -> dict[str, int]:
        state = self._queues[queue_name]
        return {"ready": state.pending.qsize(), "acked": state.acked, "nacked": state.nacked}

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait until every queue with a consumer is empty and idle."""

        async def _idle() -> None:
            while True:
                busy = any(
                    s.consumer is not None and (s.processing or not s.pending.empty())
                    for s in self._queues.values()
                )
                if not busy:
                    return
                await asyncio.sleep(0)

        await asyncio.wait_for(_idle(), timeout=timeout)

    async def _stop_consumers(self) -> None:
        tasks = [s.task for s in self._queues.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for s in self._queues.values():
            s.task = None
            s.consumer = None

    async def disconnect(self) -> None:
        """Simulate a lost connection; no reconnection is attempted."""
        self._connected = False
        await self._stop_consumers()

    async def close(self) -> None:
        await self._stop_consumers()
        self._connected = False
