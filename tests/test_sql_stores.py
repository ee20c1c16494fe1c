from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from messaging.bootstrap import build_messaging
from messaging.config import Settings
from messaging.db import create_schema, create_session_factory
from messaging.models import DLQRecord, LogEntry, utc_now
from messaging.sql_stores import SqlDLQStore, SqlMessageLogStore, SqlRetryStateStore
from messaging.stores import InMemoryRetryStateStore, LogFilters


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = create_session_factory(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield factory
    await engine.dispose()


def _record(dlq_id, minutes_ago=0, original_queue="payments.events.queue"):
    return DLQRecord(
        dlq_id=dlq_id,
        queue_name=f"dlq.{original_queue}",
        original_message={"id": "m1", "data": {"orderId": "1"}},
        error={"message": "boom", "name": "RuntimeError"},
        metadata={"originalQueue": original_queue, "correlationId": "abc"},
        received_at=utc_now() - timedelta(minutes=minutes_ago),
    )


@pytest.mark.asyncio
async def test_retry_state_roundtrip(session_factory):
    store = SqlRetryStateStore(session_factory)
    assert await store.get("payments.events.queue:abc") == 0
    await store.set("payments.events.queue:abc", 1)
    await store.set("payments.events.queue:abc", 2)
    await store.set("orders.events.queue:xyz", 1)
    assert await store.get("payments.events.queue:abc") == 2
    assert await store.items() == {"payments.events.queue:abc": 2, "orders.events.queue:xyz": 1}
    await store.delete("payments.events.queue:abc")
    await store.delete("missing")
    assert await store.items() == {"orders.events.queue:xyz": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["memory", "sql"])
async def test_retry_state_is_owned_by_one_envelope(backend, session_factory):
    store = InMemoryRetryStateStore() if backend == "memory" else SqlRetryStateStore(session_factory)
    key = "orders.events.queue:order-1"
    await store.set(key, 2, owner="msg-payment")

    assert await store.get(key, owner="msg-payment") == 2
    assert await store.get(key, owner="msg-inventory") == 0
    assert await store.get(key) == 2

    assert await store.delete(key, owner="msg-inventory") is False
    assert await store.items() == {key: 2}
    assert await store.delete(key, owner="msg-payment") is True
    assert await store.items() == {}


@pytest.mark.asyncio
async def test_dlq_store_crud(session_factory):
    store = SqlDLQStore(session_factory)
    await store.put(_record("dlq_1", minutes_ago=5))
    await store.put(_record("dlq_2"))

    got = await store.get("dlq_1")
    assert got.metadata.correlation_id == "abc"
    assert got.error.name == "RuntimeError"
    assert await store.get("dlq_missing") is None

    assert [r.dlq_id for r in await store.list_all()] == ["dlq_2", "dlq_1"]

    got.status = "reprocess_failed"
    got.last_error = "nack"
    await store.update(got)
    assert (await store.get("dlq_1")).last_error == "nack"

    assert await store.delete("dlq_1") is True
    assert await store.delete("dlq_1") is False


@pytest.mark.asyncio
async def test_dlq_store_begin_reprocess_is_exclusive(session_factory):
    store = SqlDLQStore(session_factory)
    await store.put(_record("dlq_1"))

    first = await store.begin_reprocess("dlq_1", utc_now())
    assert first.status == "reprocessing"
    assert first.reprocess_attempts == 1
    assert first.last_reprocess_at is not None

    assert await store.begin_reprocess("dlq_1", utc_now()) is None
    assert await store.begin_reprocess("dlq_missing", utc_now()) is None

    first.status = "reprocess_failed"
    await store.update(first)
    second = await store.begin_reprocess("dlq_1", utc_now())
    assert second.reprocess_attempts == 2


def _entry(message_id, action="PUBLISHED", routing_key="order.created", correlation_id="abc", minutes_ago=0):
    return LogEntry(
        message_id=message_id,
        action=action,
        exchange="ecommerce.events",
        routing_key=routing_key,
        message={"id": message_id},
        metadata={"correlationId": correlation_id, "source": "test"},
        timestamp=utc_now() - timedelta(minutes=minutes_ago),
    )


@pytest.mark.asyncio
async def test_message_log_store_queries(session_factory):
    store = SqlMessageLogStore(session_factory)
    await store.append(_entry("m1", minutes_ago=3))
    await store.append(_entry("m1", action="CONSUMED", minutes_ago=2))
    await store.append(_entry("m2", action="FAILED", routing_key="payment.failed", correlation_id="xyz", minutes_ago=1))

    logs, total = await store.query(LogFilters(), offset=0, limit=2)
    assert total == 3
    assert [e.message_id for e in logs] == ["m2", "m1"]

    logs, total = await store.query(LogFilters(routing_key="PAYMENT"), offset=0, limit=10)
    assert (total, [e.action for e in logs]) == (1, ["FAILED"])

    flow = await store.by_correlation("abc")
    assert [e.action for e in flow] == ["PUBLISHED", "CONSUMED"]
    assert flow[0].timestamp.tzinfo is not None
    assert flow[0].metadata.source == "test"

    assert len(await store.since(utc_now() - timedelta(seconds=90))) == 1
    assert [e.message_id for e in await store.recent(1)] == ["m2"]
    assert await store.count() == 3
    assert await store.delete_before(utc_now() - timedelta(seconds=150)) == 1
    assert await store.count() == 2


@pytest.mark.asyncio
async def test_retry_to_dlq_with_sql_stores(session_factory, broker, scheduler, no_jitter, monkeypatch):
    monkeypatch.delenv("RETRY_MAX_RETRIES", raising=False)
    monkeypatch.delenv("RETRY_BASE_DELAY_MS", raising=False)
    system = build_messaging(
        broker,
        Settings(),
        scheduler=scheduler,
        retry_state=SqlRetryStateStore(session_factory),
        dlq_store=SqlDLQStore(session_factory),
        log_store=SqlMessageLogStore(session_factory),
    )
    await system.start()

    async def handler(envelope, delivery):
        raise RuntimeError("down")

    await system.bus.subscribe("payments.events.queue", handler)
    await system.bus.publish_event("order.created", {"orderId": "1"}, correlation_id="abc")
    await broker.drain()
    assert (await system.retry_handler.get_retry_stats())["active_retries"] == 1

    await scheduler.run_all()
    await broker.drain()

    page = await system.dlq_manager.get_dlq_messages()
    assert page.total == 1
    assert page.messages[0].metadata.correlation_id == "abc"
    assert await system.retry_handler.state.items() == {}

    failed = await system.message_logger.get_message_logs(LogFilters(action="FAILED"))
    assert failed["pagination"]["total"] == 4
    await system.close()
