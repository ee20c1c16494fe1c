"""Static topology descriptor: exchanges, queues, bindings and DLQs.

The descriptor is plain data; broker adapters turn it into declarations.
Every queue carries a dead-letter exchange and routing key so a rejected
delivery is always rerouted instead of dropped:

- work queue ``Q`` dead-letters to ``ecommerce.deadletter`` with ``Q.failed``
- ``dlq.Q`` is bound to ``ecommerce.deadletter`` on ``Q.failed``
- ``dlq.Q`` itself dead-letters to ``dlq.parking`` (manual inspection only)

Example:
    >>> topo = build_default_topology()
    >>> topo.queue("payments.events.queue").dead_letter_routing_key
    'payments.events.queue.failed'
    >>> topo.dlq_sources()["dlq.payments.events.queue"]
    'payments.events.queue'
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from messaging.constants import (
    DEADLETTER_EXCHANGE,
    DLQ_PARKING_QUEUE,
    DLQ_PREFIX,
    EMAIL_QUEUE,
    EVENTS_EXCHANGE,
    FAILED_SUFFIX,
    INVENTORY_QUEUE,
    NOTIFICATIONS_EXCHANGE,
    ORDERS_QUEUE,
    PAYMENTS_QUEUE,
    SMS_QUEUE,
)


ExchangeType = Literal["topic", "fanout", "direct"]


def failed_routing_key(queue_name: str) -> str:
    """Return the dead-letter routing key for ``queue_name`` (``<queue>.failed``)."""
    return f"{queue_name}{FAILED_SUFFIX}"


def dlq_name(queue_name: str) -> str:
    return f"{DLQ_PREFIX}{queue_name}"


class ExchangeSpec(BaseModel):
    name: str
    type: ExchangeType
    durable: bool = True


class Binding(BaseModel):
    exchange: str
    routing_key: str = ""


class QueueSpec(BaseModel):
    """A durable queue, its bindings and its dead-letter target."""

    name: str
    bindings: list[Binding] = Field(default_factory=list)
    durable: bool = True
    dead_letter_exchange: str = DEADLETTER_EXCHANGE
    dead_letter_routing_key: Optional[str] = None
    # Work queue this DLQ collects failures for (None for work queues)
    dead_letter_source: Optional[str] = None

    @model_validator(mode="after")
    def _default_dead_letter_key(self) -> "QueueSpec":
        if not self.dead_letter_exchange:
            raise ValueError(f"queue '{self.name}' must declare a dead-letter exchange")
        if not self.dead_letter_routing_key:
            self.dead_letter_routing_key = failed_routing_key(self.name)
        return self

    def arguments(self) -> dict[str, str]:
        """Return the ``x-dead-letter-*`` queue arguments."""
        return {
            "x-dead-letter-exchange": self.dead_letter_exchange,
            "x-dead-letter-routing-key": self.dead_letter_routing_key or failed_routing_key(self.name),
        }


class TopologyDescriptor(BaseModel):
    exchanges: list[ExchangeSpec]
    queues: list[QueueSpec]

    def queue(self, name: str) -> QueueSpec:
        for q in self.queues:
            if q.name == name:
                return q
        raise KeyError(name)

    def exchange(self, name: str) -> ExchangeSpec:
        for ex in self.exchanges:
            if ex.name == name:
                return ex
        raise KeyError(name)

    def work_queues(self) -> list[QueueSpec]:
        return [q for q in self.queues if q.dead_letter_source is None and q.name != DLQ_PARKING_QUEUE]

    def dlq_queues(self) -> list[QueueSpec]:
        return [q for q in self.queues if q.dead_letter_source is not None]

    def dlq_sources(self) -> dict[str, str]:
        """Map each DLQ name to the work queue whose failures it collects."""
        return {q.name: q.dead_letter_source for q in self.dlq_queues() if q.dead_letter_source}


# Work queues and their bindings; DLQs are derived from this table.
WORK_QUEUE_BINDINGS: dict[str, list[tuple[str, str]]] = {
    ORDERS_QUEUE: [(EVENTS_EXCHANGE, "payment.*"), (EVENTS_EXCHANGE, "inventory.*")],
    PAYMENTS_QUEUE: [(EVENTS_EXCHANGE, "order.created")],
    INVENTORY_QUEUE: [(EVENTS_EXCHANGE, "order.created")],
    EMAIL_QUEUE: [(NOTIFICATIONS_EXCHANGE, "")],
    SMS_QUEUE: [(NOTIFICATIONS_EXCHANGE, "")],
}


def build_topology(work_queues: dict[str, list[tuple[str, str]]]) -> TopologyDescriptor:
    """Build a descriptor with one DLQ per work queue and a shared parking queue."""
    exchanges = [
        ExchangeSpec(name=EVENTS_EXCHANGE, type="topic"),
        ExchangeSpec(name=NOTIFICATIONS_EXCHANGE, type="fanout"),
        ExchangeSpec(name=DEADLETTER_EXCHANGE, type="direct"),
    ]
    queues: list[QueueSpec] = []
    dlqs: list[QueueSpec] = []
    for name, bindings in work_queues.items():
        queues.append(
            QueueSpec(name=name, bindings=[Binding(exchange=ex, routing_key=rk) for ex, rk in bindings])
        )
        dlq = dlq_name(name)
        dlqs.append(
            QueueSpec(
                name=dlq,
                bindings=[Binding(exchange=DEADLETTER_EXCHANGE, routing_key=failed_routing_key(name))],
                dead_letter_source=name,
            )
        )
    parking = QueueSpec(
        name=DLQ_PARKING_QUEUE,
        bindings=[Binding(exchange=DEADLETTER_EXCHANGE, routing_key=failed_routing_key(q.name)) for q in dlqs],
    )
    return TopologyDescriptor(exchanges=exchanges, queues=queues + dlqs + [parking])


def build_default_topology() -> TopologyDescriptor:
    return build_topology(WORK_QUEUE_BINDINGS)
