import pytest
from pydantic import ValidationError

from messaging.broker import InMemoryBroker
from messaging.constants import DEADLETTER_EXCHANGE, DLQ_PARKING_QUEUE, EVENTS_EXCHANGE, ORDERS_QUEUE
from messaging.topology import ExchangeSpec, QueueSpec, TopologyDescriptor, build_default_topology


def test_every_queue_declares_a_dead_letter_target():
    topo = build_default_topology()
    for q in topo.queues:
        args = q.arguments()
        assert args["x-dead-letter-exchange"] == DEADLETTER_EXCHANGE
        assert args["x-dead-letter-routing-key"] == f"{q.name}.failed"


def test_one_dlq_per_work_queue():
    topo = build_default_topology()
    work = {q.name for q in topo.work_queues()}
    assert work == {
        "orders.events.queue",
        "payments.events.queue",
        "inventory.events.queue",
        "notifications.email.queue",
        "notifications.sms.queue",
    }
    assert topo.dlq_sources() == {f"dlq.{name}": name for name in work}
    for name in work:
        dlq = topo.queue(f"dlq.{name}")
        assert [(b.exchange, b.routing_key) for b in dlq.bindings] == [(DEADLETTER_EXCHANGE, f"{name}.failed")]


def test_parking_queue_collects_dlq_failures():
    topo = build_default_topology()
    parking = topo.queue(DLQ_PARKING_QUEUE)
    keys = {b.routing_key for b in parking.bindings}
    assert keys == {f"{q.name}.failed" for q in topo.dlq_queues()}


def test_exchange_types():
    topo = build_default_topology()
    assert topo.exchange("ecommerce.events").type == "topic"
    assert topo.exchange("ecommerce.notifications").type == "fanout"
    assert topo.exchange("ecommerce.deadletter").type == "direct"


def test_queue_requires_dead_letter_exchange():
    with pytest.raises(ValidationError):
        QueueSpec(name="q", dead_letter_exchange="")


def test_unknown_queue_lookup_raises():
    with pytest.raises(KeyError):
        build_default_topology().queue("nope")


@pytest.mark.asyncio
async def test_declare_topology_twice_is_idempotent():
    broker = InMemoryBroker()
    topo = build_default_topology()
    await broker.declare_topology(topo)
    queues = broker.queues
    bindings = broker.bindings(EVENTS_EXCHANGE)

    await broker.declare_topology(topo)

    assert broker.queues == queues
    assert broker.bindings(EVENTS_EXCHANGE) == bindings
    assert len(broker.exchanges) == 3
    await broker.close()


@pytest.mark.asyncio
async def test_redeclare_exchange_with_other_type_fails():
    broker = InMemoryBroker()
    await broker.declare_topology(build_default_topology())
    clash = TopologyDescriptor(exchanges=[ExchangeSpec(name=EVENTS_EXCHANGE, type="fanout")], queues=[])
    with pytest.raises(ValueError):
        await broker.declare_topology(clash)
    # Existing queue is untouched
    assert ORDERS_QUEUE in broker.queues
    await broker.close()
