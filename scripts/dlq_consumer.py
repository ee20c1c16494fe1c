"""
Long-running DLQ manager process.

- Connects to RabbitMQ (and PostgreSQL when ``DATABASE_URL`` is set)
- Declares the topology and consumes every ``dlq.<queue>`` into the DLQ store
- Exposes Prometheus metrics and samples DLQ queue depths periodically
- Stops cleanly on SIGINT/SIGTERM

Environment:
  - METRICS_PORT (default 9000)
  - DLQ_DEPTH_SAMPLE_SECONDS (default 30; 0 disables sampling)

Usage:
  python -m scripts.dlq_consumer
"""

import asyncio
import logging
import os
import signal
from typing import Optional

from messaging.bootstrap import MessagingSystem, connect_messaging
from messaging.config import Settings
from messaging.management import get_queue_depths
from messaging.metrics import start_metrics_server
from messaging.tracing import start_tracing
from messaging.utils.logging import setup_logging


logger = logging.getLogger(__name__)


class DLQConsumer:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.sample_interval_s = int(os.getenv("DLQ_DEPTH_SAMPLE_SECONDS", "30"))
        self._stopping = asyncio.Event()
        self._system: Optional[MessagingSystem] = None

    async def run(self) -> None:
        """Start the DLQ manager and block until ``stop()`` is called."""
        port = self.settings.metrics_port
        try:
            start_metrics_server(port)
            print(f"Metrics server listening on :{port} /metrics")
        except OSError:
            # Already started in this process
            pass
        start_tracing(f"{self.settings.service_name}-dlq")

        self._system = await connect_messaging(self.settings)
        sampler: Optional[asyncio.Task[None]] = None
        try:
            await self._system.start()
            health = await self._system.dlq_manager.get_health()
            print(f"DLQ manager ready: {health['total_messages']} stored, {health['failed_messages']} failed")
            if self.sample_interval_s > 0:
                sampler = asyncio.create_task(self._sample_queue_depth())
            await self._stopping.wait()
        finally:
            if sampler is not None:
                sampler.cancel()
            await self._system.close()
            print("DLQ manager stopped")

    async def _sample_queue_depth(self) -> None:
        assert self._system is not None
        names = [q.name for q in self._system.bus.topology.dlq_queues()]
        while not self._stopping.is_set():
            # Sampling updates the messaging_queue_depth gauge
            depths = await asyncio.to_thread(get_queue_depths, names, self.settings)
            backlog = {name: depth for name, depth in depths.items() if depth}
            if backlog:
                logger.warning("DLQ backlog waiting for ingestion", extra={"depths": backlog})
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.sample_interval_s)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        """Signal the run loop to stop (used by signal handlers)."""
        self._stopping.set()


async def main() -> None:
    settings = Settings()
    setup_logging(settings.log_level)
    consumer = DLQConsumer(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, consumer.stop)

    await consumer.run()


if __name__ == "__main__":
    asyncio.run(main())
