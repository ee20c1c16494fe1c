"""Closed set of domain event kinds and their payload models.

Every routing key accepted by ``EventBus.publish_event`` is registered here
with a pydantic model. Payloads are validated at the publish boundary, so a
typo in an event name or a missing required field fails in the producer
instead of silently landing in no queue (or in a consumer that cannot read
it). Unknown keys in a payload are preserved.

Example:
    >>> validate_event("order.created", {"orderId": "123"})
    {'orderId': '123'}
    >>> validate_event("order.craeted", {})
    Traceback (most recent call last):
    ...
    messaging.errors.UnknownEventType: Unknown event type 'order.craeted'
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from messaging.errors import UnknownEventType


class EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class OrderPayload(EventPayload):
    order_id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    items: Optional[list[dict[str, Any]]] = None
    total_amount: Optional[float] = None


class PaymentPayload(EventPayload):
    order_id: str
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    status: Optional[str] = None
    reason: Optional[str] = None


class InventoryPayload(EventPayload):
    order_id: Optional[str] = None
    product_id: Optional[str] = None
    items: Optional[list[dict[str, Any]]] = None
    quantity: Optional[int] = None


class NotificationPayload(EventPayload):
    type: Optional[str] = None
    recipient: Optional[str] = None
    customer_id: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None


class DLQReceivedPayload(EventPayload):
    dlq_id: str
    queue_name: str
    original_queue: Optional[str] = None
    error_message: Optional[str] = None


EVENT_PAYLOADS: dict[str, type[EventPayload]] = {
    "order.created": OrderPayload,
    "order.updated": OrderPayload,
    "order.confirmed": OrderPayload,
    "order.cancelled": OrderPayload,
    "order.status.updated": OrderPayload,
    "payment.requested": PaymentPayload,
    "payment.created": PaymentPayload,
    "payment.processing": PaymentPayload,
    "payment.processed": PaymentPayload,
    "payment.succeeded": PaymentPayload,
    "payment.approved": PaymentPayload,
    "payment.declined": PaymentPayload,
    "payment.failed": PaymentPayload,
    "payment.cancelled": PaymentPayload,
    "payment.refunded": PaymentPayload,
    "payment.timeout": PaymentPayload,
    "payment.retry.requested": PaymentPayload,
    "payment.status.changed": PaymentPayload,
    "inventory.checked": InventoryPayload,
    "inventory.reserved": InventoryPayload,
    "inventory.confirmed": InventoryPayload,
    "inventory.released": InventoryPayload,
    "inventory.insufficient": InventoryPayload,
    "inventory.reservation.failed": InventoryPayload,
    "inventory.updated": InventoryPayload,
    "inventory.stock.updated": InventoryPayload,
    "inventory.low.stock.alert": InventoryPayload,
    "inventory.back.in.stock": InventoryPayload,
    "inventory.error": InventoryPayload,
    "notification.send": NotificationPayload,
    "notification.email.sent": NotificationPayload,
    "notification.sms.sent": NotificationPayload,
    "notification.push.sent": NotificationPayload,
    "notification.failed": NotificationPayload,
    "notification.delivery.failed": NotificationPayload,
    "promotional.campaign": NotificationPayload,
    "dlq.message.received": DLQReceivedPayload,
}


def payload_model(event_type: str) -> type[EventPayload]:
    try:
        return EVENT_PAYLOADS[event_type]
    except KeyError:
        raise UnknownEventType(event_type) from None


def validate_event(event_type: str, data: Any) -> Any:
    """Validate ``data`` against the model registered for ``event_type``.

    Returns ``data`` unchanged so consumers receive exactly what the producer
    sent. Raises ``UnknownEventType`` or pydantic ``ValidationError``.
    """
    payload_model(event_type).model_validate(data)
    return data
