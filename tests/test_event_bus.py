import pytest
from pydantic import ValidationError

from messaging.audit import MessageLogger
from messaging.broker import InMemoryBroker
from messaging.constants import BROKER_DEAD_LETTER_ERROR, NOTIFY_MESSAGE_PUBLISHED
from messaging.errors import NotInitialized, UnknownEventType
from messaging.event_bus import EventBus
from messaging.stores import LogFilters


@pytest.mark.asyncio
async def test_publish_before_initialize_fails():
    bus = EventBus(InMemoryBroker())
    with pytest.raises(NotInitialized):
        await bus.publish("ecommerce.events", "order.created", {"orderId": "1"})

    async def handler(envelope, delivery):
        return None

    with pytest.raises(NotInitialized):
        await bus.subscribe("payments.events.queue", handler)


@pytest.mark.asyncio
async def test_initialize_is_idempotent():
    broker = InMemoryBroker()
    bus = EventBus(broker)
    await bus.initialize()
    await bus.initialize()
    assert bus.is_initialized
    assert len(broker.bindings("ecommerce.events")) == 4
    await bus.close()


@pytest.mark.asyncio
async def test_correlation_id_defaults_to_envelope_id(system, broker):
    assert await system.bus.publish_event("order.created", {"orderId": "1"}) is True
    wire = broker.published[-1].body
    assert wire["metadata"]["correlationId"] == wire["id"]
    assert wire["metadata"]["causationId"] is None
    assert wire["metadata"]["source"] == "domain-event"
    assert broker.published[-1].message_id == wire["id"]


@pytest.mark.asyncio
async def test_supplied_correlation_and_causation_are_kept(system, broker):
    await system.bus.publish_event(
        "payment.succeeded",
        {"orderId": "1", "amount": 10.5},
        correlation_id="abc",
        causation_id="parent-1",
        metadata={"userId": "u-9"},
    )
    wire = broker.published[-1].body
    assert wire["routingKey"] == "payment.succeeded"
    assert wire["metadata"]["correlationId"] == "abc"
    assert wire["metadata"]["causationId"] == "parent-1"
    assert wire["metadata"]["userId"] == "u-9"
    assert wire["id"] != "abc"


@pytest.mark.asyncio
async def test_publish_event_validates_kind_and_payload(system):
    with pytest.raises(UnknownEventType):
        await system.bus.publish_event("order.craeted", {"orderId": "1"})
    with pytest.raises(ValidationError):
        await system.bus.publish_event("order.created", {"customerId": "c1"})


@pytest.mark.asyncio
async def test_publish_notification_fans_out(system, broker):
    assert await system.bus.publish_notification({"type": "email", "recipient": "a@b.c"}) is True
    sent = broker.published[-1]
    assert sent.exchange == "ecommerce.notifications"
    assert sent.routing_key == ""
    assert sent.body["metadata"]["source"] == "notification-system"
    assert broker.message_count("notifications.email.queue") == 1
    assert broker.message_count("notifications.sms.queue") == 1


@pytest.mark.asyncio
async def test_publish_returns_false_when_unroutable(system):
    assert await system.bus.publish("ecommerce.events", "nobody.listens", {"x": 1}) is False


@pytest.mark.asyncio
async def test_subscriber_receives_envelope_and_audit_links_trace(system, broker):
    received = []

    async def handler(envelope, delivery):
        received.append((envelope, delivery))

    await system.bus.subscribe("payments.events.queue", handler)
    await system.bus.publish_event("order.created", {"orderId": "123"}, correlation_id="abc")
    await broker.drain()

    assert len(received) == 1
    envelope, delivery = received[0]
    assert envelope.data == {"orderId": "123"}
    assert envelope.correlation_id == "abc"
    assert delivery.queue == "payments.events.queue"
    assert "traceparent" in delivery.headers or delivery.headers == {}

    flow = await system.message_logger.get_message_flow("abc")
    assert [e.action for e in flow] == ["PUBLISHED", "CONSUMED"]
    assert flow[1].queue == "payments.events.queue"
    assert flow[0].message_id == flow[1].message_id == envelope.id


@pytest.mark.asyncio
async def test_failure_without_retry_is_dead_lettered_by_broker(system, broker):
    async def handler(envelope, delivery):
        raise RuntimeError("inventory service down")

    await system.bus.subscribe("inventory.events.queue", handler, retry=False)
    await system.bus.publish_event("order.created", {"orderId": "9"}, correlation_id="corr-9")
    await broker.drain()

    page = await system.dlq_manager.get_dlq_messages()
    assert page.total == 1
    record = page.messages[0]
    assert record.error.name == BROKER_DEAD_LETTER_ERROR
    assert record.queue_name == "dlq.inventory.events.queue"
    assert record.metadata.original_queue == "inventory.events.queue"
    assert record.metadata.correlation_id == "corr-9"
    assert record.original_message["data"] == {"orderId": "9"}


@pytest.mark.asyncio
async def test_listener_errors_never_break_publish(system):
    def bad_listener(payload):
        raise RuntimeError("listener bug")

    seen = []
    system.bus.notifier.on(NOTIFY_MESSAGE_PUBLISHED, bad_listener)
    system.bus.notifier.on(NOTIFY_MESSAGE_PUBLISHED, seen.append)

    assert await system.bus.publish_event("order.created", {"orderId": "1"}) is True
    assert seen and seen[0]["routingKey"] == "order.created"


@pytest.mark.asyncio
async def test_audit_logger_failure_never_breaks_publish(broker):
    class BrokenStore:
        async def append(self, entry):
            raise OSError("disk full")

    audit = MessageLogger(BrokenStore())  # type: ignore[arg-type]
    bus = EventBus(broker, audit)
    await bus.initialize()

    assert await bus.publish_event("order.created", {"orderId": "1"}) is True
    assert audit.error_count == 1


@pytest.mark.asyncio
async def test_status_lists_subscribers(system):
    async def handler(envelope, delivery):
        return None

    await system.bus.subscribe("orders.events.queue", handler, max_retries=5)
    status = system.bus.get_status()
    assert status["initialized"] is True
    assert status["connected"] is True
    queues = {s["queue_name"]: s for s in status["subscribers"]}
    assert queues["orders.events.queue"]["max_retries"] == 5
    assert queues["orders.events.queue"]["retry"] is True
    # DLQ manager subscribes without retry
    assert queues["dlq.orders.events.queue"]["retry"] is False
    assert status["subscriber_count"] == len(queues)


@pytest.mark.asyncio
async def test_published_entries_can_be_filtered(system):
    await system.bus.publish_event("order.created", {"orderId": "1"})
    await system.bus.publish_event("payment.failed", {"orderId": "1"})
    page = await system.message_logger.get_message_logs(LogFilters(routing_key="PAYMENT"))
    assert [e.routing_key for e in page["logs"]] == ["payment.failed"]
