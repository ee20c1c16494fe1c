from datetime import timedelta

import pytest

from messaging.broker import InMemoryBroker
from messaging.constants import (
    BROKER_DEAD_LETTER_ERROR,
    EMAIL_QUEUE,
    HEADER_ORIGINAL_DLQ_ID,
    HEADER_REPROCESS_ATTEMPT,
    HEADER_REPROCESSED,
    NOTIFY_DLQ_MESSAGE_RECEIVED,
    PAYMENTS_QUEUE,
    SMS_QUEUE,
)
from messaging.dlq import generate_dlq_id, summarize_records
from messaging.models import DLQRecord, Envelope, utc_now


def _original(routing_key="order.created", data=None, correlation_id="abc"):
    return Envelope(
        exchange="ecommerce.events",
        routing_key=routing_key,
        data=data if data is not None else {"orderId": "123"},
        metadata={"source": "domain-event", "correlationId": correlation_id},
    )


def _dlq_envelope(original_queue, original, error_name="RuntimeError"):
    return Envelope(
        exchange="ecommerce.deadletter",
        routing_key=f"{original_queue}.failed",
        data={
            "originalMessage": original.to_wire(),
            "error": {"message": "handler failed", "name": error_name, "stack": "Traceback ..."},
            "metadata": {
                "originalQueue": original_queue,
                "correlationId": original.correlation_id,
                "failedAt": "2024-01-01T00:00:00.000Z",
                "totalRetries": 3,
            },
            "dlqInfo": {"reason": "max_retries_exceeded", "queueName": f"dlq.{original_queue}"},
        },
        metadata={"source": "retry-handler", "correlationId": original.correlation_id},
    )


async def _ingest(system, original_queue=PAYMENTS_QUEUE, original=None, error_name="RuntimeError"):
    original = original or _original()
    return await system.dlq_manager.handle_dlq_message(
        f"dlq.{original_queue}", _dlq_envelope(original_queue, original, error_name)
    )


def test_generated_ids_are_unique_and_prefixed():
    ids = {generate_dlq_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("dlq_") for i in ids)


@pytest.mark.asyncio
async def test_handle_retry_handler_record(system):
    seen = []
    system.bus.notifier.on(NOTIFY_DLQ_MESSAGE_RECEIVED, seen.append)

    record = await _ingest(system)

    assert record.status == "failed"
    assert record.reprocess_attempts == 0
    assert record.queue_name == "dlq.payments.events.queue"
    assert record.metadata.original_queue == PAYMENTS_QUEUE
    assert record.metadata.correlation_id == "abc"
    assert record.metadata.queue_name == "dlq.payments.events.queue"
    assert record.error.message == "handler failed"
    assert await system.dlq_manager.get_dlq_message(record.dlq_id) == record
    assert seen and seen[0]["dlqId"] == record.dlq_id


@pytest.mark.asyncio
async def test_raw_dead_letter_without_headers_uses_dlq_source(system):
    original = _original()
    record = await system.dlq_manager.handle_dlq_message("dlq.inventory.events.queue", original)
    assert record.error.name == BROKER_DEAD_LETTER_ERROR
    assert record.metadata.original_queue == "inventory.events.queue"
    assert record.original_message == original.to_wire()


@pytest.mark.asyncio
async def test_listing_is_paged_newest_first(system):
    first = await _ingest(system)
    second = await _ingest(system)
    third = await _ingest(system, EMAIL_QUEUE)

    page = await system.dlq_manager.get_dlq_messages(limit=2)
    assert page.total == 3
    assert page.has_more is True
    assert len(page.messages) == 2

    rest = await system.dlq_manager.get_dlq_messages(limit=2, offset=2)
    assert rest.has_more is False
    ids = [r.dlq_id for r in page.messages + rest.messages]
    assert sorted(ids) == sorted([first.dlq_id, second.dlq_id, third.dlq_id])

    by_queue = await system.dlq_manager.get_dlq_messages(queue_name=EMAIL_QUEUE)
    assert [r.dlq_id for r in by_queue.messages] == [third.dlq_id]
    by_dlq_name = await system.dlq_manager.get_dlq_messages(queue_name="dlq.notifications.email.queue")
    assert by_dlq_name.total == 1
    assert (await system.dlq_manager.get_dlq_messages(status="reprocessed")).total == 0


@pytest.mark.asyncio
async def test_reprocess_republishes_original_envelope(system, broker):
    original = _original()
    record = await _ingest(system, PAYMENTS_QUEUE, original)

    result = await system.dlq_manager.reprocess_dlq_message(record.dlq_id)

    assert result.success is True
    assert result.record.status == "reprocessed"
    assert result.record.reprocess_attempts == 1
    assert result.record.last_reprocess_at is not None

    body, info = await broker.get(PAYMENTS_QUEUE)
    assert body == original.to_wire()
    assert info.exchange == "ecommerce.events"
    assert info.routing_key == "order.created"
    assert info.headers[HEADER_REPROCESSED] == "true"
    assert info.headers[HEADER_ORIGINAL_DLQ_ID] == record.dlq_id
    assert info.headers[HEADER_REPROCESS_ATTEMPT] == "1"

    stored = await system.dlq_manager.get_dlq_message(record.dlq_id)
    assert stored.status == "reprocessed"


@pytest.mark.asyncio
async def test_reprocess_notification_goes_to_fanout(system, broker):
    original = Envelope(
        exchange="ecommerce.notifications",
        routing_key="",
        data={"type": "sms", "recipient": "+15550100"},
        metadata={"source": "notification-system", "correlationId": "n-1"},
    )
    record = await _ingest(system, SMS_QUEUE, original)
    result = await system.dlq_manager.reprocess_dlq_message(record.dlq_id)
    assert result.success is True
    assert broker.message_count(EMAIL_QUEUE) == 1
    assert broker.message_count(SMS_QUEUE) == 1


@pytest.mark.asyncio
async def test_reprocess_failure_marks_record(system):
    original = _original(routing_key="legacy.thing.happened")
    record = await _ingest(system, "legacy.queue", original)

    result = await system.dlq_manager.reprocess_dlq_message(record.dlq_id)

    assert result.success is False
    assert result.error_type == "ReprocessFailure"
    stored = await system.dlq_manager.get_dlq_message(record.dlq_id)
    assert stored.status == "reprocess_failed"
    assert stored.reprocess_attempts == 1
    assert "broker rejected publish" in stored.last_error

    # a failed reprocess can be retried
    again = await system.dlq_manager.reprocess_dlq_message(record.dlq_id)
    assert again.record.reprocess_attempts == 2


@pytest.mark.asyncio
async def test_reprocess_in_progress_is_refused(system):
    record = await _ingest(system)
    await system.dlq_manager.store.begin_reprocess(record.dlq_id, utc_now())

    result = await system.dlq_manager.reprocess_dlq_message(record.dlq_id)

    assert result.success is False
    assert result.error_type == "ReprocessInProgress"
    assert (await system.dlq_manager.get_dlq_message(record.dlq_id)).reprocess_attempts == 1


@pytest.mark.asyncio
async def test_reprocess_unknown_id(system):
    result = await system.dlq_manager.reprocess_dlq_message("dlq_missing")
    assert result.success is False
    assert result.error_type == "DLQNotFound"
    assert "dlq_missing" in result.error


@pytest.mark.asyncio
async def test_reprocess_payload_without_envelope_is_wrapped(system, broker):
    record = DLQRecord(
        dlq_id=generate_dlq_id(),
        queue_name="dlq.payments.events.queue",
        original_message={"data": {"orderId": "55"}},
        metadata={"originalQueue": PAYMENTS_QUEUE, "correlationId": "raw-1"},
    )
    await system.dlq_manager.store.put(record)

    result = await system.dlq_manager.reprocess_dlq_message(record.dlq_id)

    assert result.success is True
    body, _ = await broker.get(PAYMENTS_QUEUE)
    assert body["data"] == {"orderId": "55"}
    assert body["metadata"]["correlationId"] == "raw-1"
    assert body["metadata"]["source"] == "dlq-reprocess"


@pytest.mark.asyncio
async def test_bulk_reprocess_reports_partial_results(system):
    ok = await _ingest(system)
    bad = await _ingest(system, "legacy.queue", _original(routing_key="legacy.thing"))

    result = await system.dlq_manager.bulk_reprocess([ok.dlq_id, bad.dlq_id, "dlq_missing"])

    assert result.total == 3
    assert result.succeeded == 1
    assert result.failed == 2
    assert [r.error_type for r in result.results] == [None, "ReprocessFailure", "DLQNotFound"]


@pytest.mark.asyncio
async def test_remove(system):
    record = await _ingest(system)
    removed = await system.dlq_manager.remove_dlq_message(record.dlq_id)
    assert removed.success is True
    assert await system.dlq_manager.get_dlq_message(record.dlq_id) is None

    again = await system.dlq_manager.remove_dlq_message(record.dlq_id)
    assert again.success is False
    assert again.error_type == "DLQNotFound"


@pytest.mark.asyncio
async def test_stats(system):
    await _ingest(system)
    await _ingest(system, error_name="TimeoutError")
    email = await _ingest(system, EMAIL_QUEUE)
    await system.dlq_manager.reprocess_dlq_message(email.dlq_id)

    stats = await system.dlq_manager.get_dlq_stats()
    assert stats["total"] == 3
    assert stats["by_status"] == {"failed": 2, "reprocessed": 1}
    assert stats["by_queue"] == {PAYMENTS_QUEUE: 2, EMAIL_QUEUE: 1}
    assert stats["by_error_type"] == {"RuntimeError": 2, "TimeoutError": 1}
    assert len(stats["recent_failures"]) == 3


def test_recent_failures_window_and_limit():
    now = utc_now()
    records = [
        DLQRecord(dlq_id=f"dlq_{i}", queue_name="dlq.q", received_at=now - timedelta(minutes=i))
        for i in range(12)
    ]
    records.append(DLQRecord(dlq_id="dlq_old", queue_name="dlq.q", received_at=now - timedelta(days=2)))

    summary = summarize_records(records)

    assert summary["total"] == 13
    assert [r.dlq_id for r in summary["recent_failures"]] == [f"dlq_{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_health_and_readiness(system, broker):
    await _ingest(system)
    health = await system.dlq_manager.get_health()
    assert health["initialized"] is True
    assert health["connected"] is True
    assert health["total_messages"] == 1
    assert health["failed_messages"] == 1
    assert health["active_retries"] == 0
    assert system.dlq_manager.is_ready() is True

    await broker.disconnect()
    assert system.dlq_manager.is_ready() is False


@pytest.mark.asyncio
async def test_two_records_for_orders_queue_page_of_one_has_more(system):
    await _ingest(system, "orders.events.queue", _original(routing_key="payment.failed"))
    await _ingest(system, "orders.events.queue", _original(routing_key="inventory.insufficient"))
    await _ingest(system, PAYMENTS_QUEUE)

    page = await system.dlq_manager.get_dlq_messages(queue_name="orders.events.queue", limit=1)

    assert len(page.messages) == 1
    assert page.total == 2
    assert page.has_more is True
    assert page.to_wire()["hasMore"] is True


@pytest.mark.asyncio
async def test_restart_after_close_consumes_dlqs_again(system):
    await system.close()
    assert system.dlq_manager.is_initialized is False
    assert system.dlq_manager.is_ready() is False

    system.bus.broker = InMemoryBroker()
    await system.start()

    dlq_names = {q.name for q in system.bus.topology.dlq_queues()}
    subscribed = {s["queue_name"] for s in system.bus.get_subscribers()}
    assert dlq_names <= subscribed
    assert system.dlq_manager.is_ready() is True
