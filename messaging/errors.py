"""
Exception classes for the messaging substrate.
Each maps to one failure mode of the broker, bus, retry or DLQ layers.
"""

from typing import Optional


class MessagingError(Exception):
    """Base exception for messaging errors."""


class BrokerUnavailable(MessagingError):
    """Raised when the broker connection or channel is gone.

    Fatal until the process restarts; the adapter does not reconnect.
    """

    def __init__(self, detail: str = "RabbitMQ not connected"):
        super().__init__(detail)


class NotInitialized(MessagingError):
    """Raised when publish/subscribe is called before ``initialize()``."""

    def __init__(self, component: str = "EventBus"):
        super().__init__(f"{component} not initialized. Call initialize() first.")


class HandlerFailure(MessagingError):
    """Raised when a consumer handler fails for one attempt."""

    def __init__(self, queue_name: str, attempt: int, cause: BaseException):
        self.queue_name = queue_name
        self.attempt = attempt
        self.cause = cause
        super().__init__(f"Handler for '{queue_name}' failed on attempt {attempt}: {cause}")


class DLQNotFound(MessagingError):
    """Raised when a DLQ record id is unknown."""

    def __init__(self, dlq_id: str):
        self.dlq_id = dlq_id
        super().__init__(f"DLQ message not found: {dlq_id}")


class ReprocessFailure(MessagingError):
    """Raised when republishing a DLQ record fails."""

    def __init__(self, dlq_id: str, reason: Optional[str] = None):
        self.dlq_id = dlq_id
        super().__init__(f"Failed to reprocess DLQ message {dlq_id}: {reason or 'broker rejected publish'}")


class UnknownEventType(MessagingError):
    """Raised when ``publish_event`` is called with an unregistered event kind."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown event type '{event_type}'")
