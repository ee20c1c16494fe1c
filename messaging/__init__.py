"""Event-messaging substrate for the e-commerce services.

Modules include the broker adapters (RabbitMQ and in-memory), the event bus,
bounded retry with DLQ hand-off, the DLQ manager, the audit message logger,
storage backends (in-memory and SQLAlchemy), configuration, metrics and
tracing helpers.
"""
