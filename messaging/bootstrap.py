"""Wire the bus, audit logger, retry handler and DLQ manager together.

``build_messaging`` assembles the components around any ``Broker``;
``connect_messaging`` is the production entry point: it connects to
RabbitMQ and, when ``DATABASE_URL`` is set, backs every store with
PostgreSQL so retry counters, DLQ records and the audit trail survive a
restart.

Example:
    >>> system = await connect_messaging(Settings())
    >>> await system.start()
    >>> await system.bus.publish_event("order.created", {"orderId": "123"})
    >>> await system.close()
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from messaging.audit import MessageLogger
from messaging.broker import Broker
from messaging.config import Settings
from messaging.db import create_schema, create_session_factory
from messaging.dlq import DeadLetterQueueManager
from messaging.event_bus import EventBus
from messaging.notifier import AuditNotifier
from messaging.rabbit import RabbitBroker
from messaging.retry import RetryHandler
from messaging.scheduler import Scheduler
from messaging.sql_stores import SqlDLQStore, SqlMessageLogStore, SqlRetryStateStore
from messaging.stores import DLQStore, MessageLogStore, RetryStateStore
from messaging.topology import TopologyDescriptor


logger = logging.getLogger(__name__)


@dataclass
class MessagingSystem:
    bus: EventBus
    message_logger: MessageLogger
    retry_handler: RetryHandler
    dlq_manager: DeadLetterQueueManager
    engine: Optional[AsyncEngine] = None

    async def start(self, *, with_dlq_manager: bool = True) -> None:
        """Declare the topology and, by default, start consuming the DLQs."""
        await self.bus.initialize()
        if with_dlq_manager:
            await self.dlq_manager.initialize()

    async def close(self) -> None:
        await self.dlq_manager.close()
        await self.bus.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_messaging(
    broker: Broker,
    settings: Optional[Settings] = None,
    *,
    topology: Optional[TopologyDescriptor] = None,
    scheduler: Optional[Scheduler] = None,
    retry_state: Optional[RetryStateStore] = None,
    dlq_store: Optional[DLQStore] = None,
    log_store: Optional[MessageLogStore] = None,
) -> MessagingSystem:
    """Assemble a ``MessagingSystem`` around ``broker``; stores default to in-memory."""
    settings = settings or Settings()
    notifier = AuditNotifier()
    message_logger = MessageLogger(log_store, notifier=notifier)
    bus = EventBus(broker, message_logger, topology=topology, notifier=notifier)
    bus.retry_handler = RetryHandler(
        bus,
        message_logger=message_logger,
        state=retry_state,
        scheduler=scheduler,
        max_retries=settings.retry_max_retries,
        base_delay_ms=settings.retry_base_delay_ms,
    )
    return MessagingSystem(
        bus=bus,
        message_logger=message_logger,
        retry_handler=bus.retry_handler,
        dlq_manager=DeadLetterQueueManager(bus, dlq_store),
    )


async def connect_messaging(settings: Optional[Settings] = None) -> MessagingSystem:
    """Connect to RabbitMQ and build the system, SQL-backed when a database is configured."""
    settings = settings or Settings()
    broker = await RabbitBroker.connect(settings)
    if not settings.is_database_configured:
        logger.info("DATABASE_URL not set; using in-memory stores")
        return build_messaging(broker, settings)

    engine, factory = create_session_factory(settings.database_url, pool_pre_ping=True)
    await create_schema(engine)
    system = build_messaging(
        broker,
        settings,
        retry_state=SqlRetryStateStore(factory),
        dlq_store=SqlDLQStore(factory),
        log_store=SqlMessageLogStore(factory),
    )
    system.engine = engine
    return system
