"""Shared constants for exchanges, queues, audit actions and DLQ statuses.

These values centralize naming so publishers, consumers, the retry handler
and the DLQ manager stay consistent with each other and with the broker.

Exchanges:
- ``ecommerce.events`` (topic): domain events, routing key = event type
- ``ecommerce.notifications`` (fanout): notifications, empty routing key
- ``ecommerce.deadletter`` (direct): terminal failures, ``<queue>.failed``

Audit actions (message_logs.action):
- ``PUBLISHED``: envelope handed to the broker
- ``CONSUMED``: envelope delivered to a subscriber
- ``FAILED``: a handler attempt raised
- ``RETRIED``: a retry was scheduled for a failed attempt

DLQ statuses (dlq_entries.status):
- ``failed``: stored, waiting for an operator
- ``reprocessing``: republish in progress
- ``reprocessed``: broker accepted the republished envelope
- ``reprocess_failed``: republish failed; ``lastError`` holds the reason
"""

EVENTS_EXCHANGE = "ecommerce.events"
NOTIFICATIONS_EXCHANGE = "ecommerce.notifications"
DEADLETTER_EXCHANGE = "ecommerce.deadletter"

ORDERS_QUEUE = "orders.events.queue"
PAYMENTS_QUEUE = "payments.events.queue"
INVENTORY_QUEUE = "inventory.events.queue"
EMAIL_QUEUE = "notifications.email.queue"
SMS_QUEUE = "notifications.sms.queue"

DLQ_PREFIX = "dlq."
DLQ_PARKING_QUEUE = "dlq.parking"
FAILED_SUFFIX = ".failed"

DEFAULT_SOURCE = "unknown"
DOMAIN_EVENT_SOURCE = "domain-event"
NOTIFICATION_SOURCE = "notification-system"

# Audit actions
ACTION_PUBLISHED = "PUBLISHED"
ACTION_CONSUMED = "CONSUMED"
ACTION_FAILED = "FAILED"
ACTION_RETRIED = "RETRIED"

# DLQ statuses
DLQ_STATUS_FAILED = "failed"
DLQ_STATUS_REPROCESSING = "reprocessing"
DLQ_STATUS_REPROCESSED = "reprocessed"
DLQ_STATUS_REPROCESS_FAILED = "reprocess_failed"

DLQ_REASON_MAX_RETRIES = "max_retries_exceeded"
BROKER_DEAD_LETTER_ERROR = "BrokerDeadLetter"

# Headers
HEADER_ORIGINAL_QUEUE = "x-original-queue"
HEADER_FAILURE_REASON = "x-failure-reason"
HEADER_RETRY_COUNT = "x-retry-count"
HEADER_REPROCESSED = "x-reprocessed-from-dlq"
HEADER_ORIGINAL_DLQ_ID = "x-original-dlq-id"
HEADER_REPROCESS_ATTEMPT = "x-reprocess-attempt"
HEADER_DEATH = "x-death"
HEADER_FIRST_DEATH_QUEUE = "x-first-death-queue"

# Local audit notifications
NOTIFY_MESSAGE_PUBLISHED = "message_published"
NOTIFY_MESSAGE_CONSUMED = "message_consumed"
NOTIFY_MESSAGE_ERROR = "message_error"
NOTIFY_MESSAGE_LOGGED = "message-logged"
NOTIFY_DLQ_MESSAGE_RECEIVED = "dlq_message_received"

REDACTED = "[REDACTED]"
CIRCULAR = "[Circular]"
SENSITIVE_FIELDS = ("password", "creditcard", "ssn", "token")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
JITTER_RATIO = 0.1
