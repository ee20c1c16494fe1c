"""Bounded in-process retry with exponential backoff and DLQ hand-off.

A failed handler is re-invoked with the same envelope on a delayed timer
instead of being requeued by the broker, so a poison message cannot spin in
a tight redelivery loop and the broker's delivery count stays at one.

State machine per ``(queue, correlationId)``:
 - success: clear retry state
 - failure with ``attempt < max_retries``: store ``attempt + 1`` and schedule
   a retry after ``calculate_backoff_delay(attempt + 1)``
 - failure with ``attempt == max_retries``: clear state and publish a DLQ
   record to ``ecommerce.deadletter`` with routing key ``<queue>.failed``

Exactly ``max_retries + 1`` invocations happen per failure episode. A scheduled
retry carries its attempt number with it, so another envelope succeeding on
the same key cannot shorten or extend the chain. Counters live in the injected
``RetryStateStore`` tagged with the owning envelope id; a redelivery of that
same envelope resumes its budget. With the default in-memory store a process
restart resets them.

Examples
--------
>>> calculate_backoff_delay(1, 1000, jitter_ratio=0)
1000
>>> calculate_backoff_delay(3, 1000, jitter_ratio=0)
4000
"""
from __future__ import annotations

import logging
import random
import traceback
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from messaging.broker import DeliveryInfo
from messaging.constants import (
    ACTION_FAILED,
    ACTION_RETRIED,
    DEADLETTER_EXCHANGE,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    DLQ_REASON_MAX_RETRIES,
    HEADER_FAILURE_REASON,
    HEADER_ORIGINAL_QUEUE,
    HEADER_RETRY_COUNT,
    JITTER_RATIO,
)
from messaging.errors import HandlerFailure
from messaging.metrics import DLQ_SEND_FAILED_TOTAL, DLQ_SENT_TOTAL, RETRY_ACTIVE, RETRY_SCHEDULED_TOTAL
from messaging.models import Envelope, RetryOutcome, now_iso
from messaging.scheduler import AsyncioScheduler, Scheduler
from messaging.stores import InMemoryRetryStateStore, RetryStateStore
from messaging.topology import dlq_name, failed_routing_key

if TYPE_CHECKING:  # pragma: no cover - import only for typing
    from messaging.audit import MessageLogger
    from messaging.event_bus import EventBus


logger = logging.getLogger(__name__)

RETRY_HANDLER_SOURCE = "retry-handler"

RetryableHandler = Callable[[Envelope, DeliveryInfo], Awaitable[Any]]


def calculate_backoff_delay(
    attempt: int,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    jitter_ratio: float = JITTER_RATIO,
) -> int:
    """Return the delay in milliseconds before retry number ``attempt`` (1-based).

    ``base * 2^(attempt-1)`` plus a uniform jitter in ``[0, jitter_ratio)`` of
    that exponential term.
    """
    exponential = base_delay_ms * 2 ** (max(attempt, 1) - 1)
    jitter = random.random() * jitter_ratio * exponential
    return int(exponential + jitter)


def retry_key(queue_name: str, correlation_id: str) -> str:
    return f"{queue_name}:{correlation_id}"


class RetryHandler:
    """Wrap subscriber handlers with bounded retry.

    Properties:
        - bus: ``EventBus`` used to publish DLQ records
        - state: ``RetryStateStore`` holding attempt counts
        - scheduler: delayed-task scheduler running the retries
        - max_retries / base_delay_ms: defaults, overridable per call

    Example:
        >>> handler = RetryHandler(bus, message_logger=audit)
        >>> bus.retry_handler = handler
        >>> await bus.subscribe("payments.events.queue", process_payment, max_retries=5)
    """

    def __init__(
        self,
        bus: "EventBus",
        *,
        message_logger: Optional["MessageLogger"] = None,
        state: Optional[RetryStateStore] = None,
        scheduler: Optional[Scheduler] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    ) -> None:
        self.bus = bus
        self.message_logger = message_logger
        self.state: RetryStateStore = state or InMemoryRetryStateStore()
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._limits: dict[str, int] = {}

    async def process_with_retry(
        self,
        handler: RetryableHandler,
        envelope: Envelope,
        delivery: DeliveryInfo,
        *,
        queue_name: str,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> RetryOutcome:
        """Invoke ``handler`` once and decide what happens if it fails.

        ``attempt`` is passed by scheduled retries; a fresh delivery leaves it
        unset and resumes from the count this envelope stored, if any.

        Never raises for a handler failure: the outcome says whether a retry
        was scheduled or the message went to the DLQ.
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        base_delay_ms = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        key = retry_key(queue_name, envelope.correlation_id)
        if attempt is None:
            attempt = await self.state.get(key, owner=envelope.id)

        try:
            await handler(envelope, delivery)
        except Exception as exc:  # noqa: BLE001
            return await self._handle_failure(
                handler, envelope, delivery, exc,
                queue_name=queue_name, key=key, attempt=attempt,
                max_retries=max_retries, base_delay_ms=base_delay_ms,
            )

        if attempt:
            logger.info("message succeeded after %d retries", attempt, extra={"queue": queue_name, "key": key})
        await self._clear(key, envelope.id)
        return RetryOutcome(success=True, retry_attempt=attempt)

    async def _handle_failure(
        self,
        handler: RetryableHandler,
        envelope: Envelope,
        delivery: DeliveryInfo,
        exc: Exception,
        *,
        queue_name: str,
        key: str,
        attempt: int,
        max_retries: int,
        base_delay_ms: int,
    ) -> RetryOutcome:
        failure = HandlerFailure(queue_name, attempt + 1, exc)
        logger.warning(str(failure), extra={"correlation_id": envelope.correlation_id})
        await self._audit(ACTION_FAILED, envelope, queue_name, retry_count=attempt, error=str(exc))

        if attempt < max_retries:
            next_attempt = attempt + 1
            await self.state.set(key, next_attempt, owner=envelope.id)
            self._limits[key] = max_retries
            await self._refresh_gauge()
            delay_ms = calculate_backoff_delay(next_attempt, base_delay_ms)
            await self._audit(ACTION_RETRIED, envelope, queue_name, retry_count=next_attempt, error=str(exc))
            RETRY_SCHEDULED_TOTAL.labels(queue=queue_name).inc()

            async def _retry() -> RetryOutcome:
                return await self.process_with_retry(
                    handler,
                    envelope,
                    delivery,
                    queue_name=queue_name,
                    max_retries=max_retries,
                    base_delay_ms=base_delay_ms,
                    attempt=next_attempt,
                )

            self.scheduler.call_later(delay_ms / 1000.0, _retry)
            logger.info(
                "retry %d/%d scheduled in %dms",
                next_attempt,
                max_retries,
                delay_ms,
                extra={"queue": queue_name, "key": key},
            )
            return RetryOutcome(
                success=False, retry_attempt=attempt, will_retry=True, next_retry_in_ms=delay_ms
            )

        await self._clear(key, envelope.id)
        sent = await self.send_to_dead_letter_queue(queue_name, envelope, exc, total_retries=attempt)
        return RetryOutcome(success=False, retry_attempt=attempt, sent_to_dlq=sent)

    async def send_to_dead_letter_queue(
        self,
        queue_name: str,
        envelope: Envelope,
        exc: BaseException,
        *,
        total_retries: int,
    ) -> bool:
        """Publish a DLQ record for ``envelope``; return whether the broker accepted it.

        A failed hand-off is logged at error level with the full record and
        counted in ``messaging_dlq_send_failed_total``.
        """
        record = {
            "originalMessage": envelope.to_wire(),
            "error": {
                "message": str(exc),
                "name": type(exc).__name__,
                "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            },
            "metadata": {
                "originalQueue": queue_name,
                "correlationId": envelope.correlation_id,
                "failedAt": now_iso(),
                "totalRetries": total_retries,
            },
            "dlqInfo": {
                "reason": DLQ_REASON_MAX_RETRIES,
                "queueName": dlq_name(queue_name),
                "routingKey": failed_routing_key(queue_name),
            },
        }
        headers = {
            HEADER_ORIGINAL_QUEUE: queue_name,
            HEADER_FAILURE_REASON: DLQ_REASON_MAX_RETRIES,
            HEADER_RETRY_COUNT: total_retries,
        }
        error: Optional[str] = None
        try:
            accepted = await self.bus.publish(
                DEADLETTER_EXCHANGE,
                failed_routing_key(queue_name),
                record,
                source=RETRY_HANDLER_SOURCE,
                correlation_id=envelope.correlation_id,
                causation_id=envelope.id,
                headers=headers,
            )
        except Exception as publish_exc:  # noqa: BLE001
            accepted = False
            error = str(publish_exc)

        if not accepted:
            DLQ_SEND_FAILED_TOTAL.labels(queue=queue_name).inc()
            logger.error(
                "failed to hand message %s off to the DLQ: %s",
                envelope.id,
                error or "broker rejected publish",
                extra={"queue": queue_name, "dlq_record": record},
            )
            return False

        DLQ_SENT_TOTAL.labels(queue=queue_name).inc()
        logger.warning(
            "message %s sent to DLQ after %d retries",
            envelope.id,
            total_retries,
            extra={"queue": queue_name, "correlation_id": envelope.correlation_id},
        )
        return True

    def wrap(
        self,
        handler: RetryableHandler,
        queue_name: str,
        *,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
    ) -> Callable[[Envelope, DeliveryInfo], Awaitable[RetryOutcome]]:
        """Return ``handler`` wrapped so each call goes through ``process_with_retry``."""

        async def _wrapped(envelope: Envelope, delivery: DeliveryInfo) -> RetryOutcome:
            return await self.process_with_retry(
                handler,
                envelope,
                delivery,
                queue_name=queue_name,
                max_retries=max_retries,
                base_delay_ms=base_delay_ms,
            )

        return _wrapped

    async def get_retry_stats(self) -> dict[str, Any]:
        """Return active retry keys with attempts made and remaining budget."""
        items = await self.state.items()
        retries = []
        for key, attempts in items.items():
            queue, _, correlation_id = key.partition(":")
            limit = self._limits.get(key, self.max_retries)
            retries.append(
                {
                    "key": key,
                    "queue": queue,
                    "correlation_id": correlation_id,
                    "attempts": attempts,
                    "remaining": max(limit - attempts, 0),
                }
            )
        return {"active_retries": len(retries), "retries": retries}

    def cancel_pending(self) -> int:
        """Cancel every scheduled retry; return how many were cancelled."""
        cancelled = self.scheduler.cancel_all()
        if cancelled:
            logger.info("cancelled %d pending retries", cancelled)
        return cancelled

    async def _clear(self, key: str, owner: str) -> None:
        # Entries written by another envelope on the same key are left alone
        if await self.state.delete(key, owner=owner):
            self._limits.pop(key, None)
        await self._refresh_gauge()

    async def _refresh_gauge(self) -> None:
        RETRY_ACTIVE.set(len(await self.state.items()))

    async def _audit(
        self,
        action: str,
        envelope: Envelope,
        queue_name: str,
        *,
        retry_count: int,
        error: Optional[str] = None,
    ) -> None:
        if self.message_logger is None:
            return
        await self.message_logger.log_message(
            action,
            envelope.exchange,
            envelope.routing_key,
            envelope,
            {
                "queue": queue_name,
                "source": envelope.metadata.source,
                "correlationId": envelope.correlation_id,
                "causationId": envelope.causation_id,
                "retryCount": retry_count,
                "errorMessage": error,
            },
        )
