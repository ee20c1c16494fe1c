"""
Topology initializer.

- Declares the events (topic), notifications (fanout) and deadletter (direct) exchanges
- Declares every work queue with its dead-letter arguments and bindings
- Declares one ``dlq.<queue>`` per work queue plus the ``dlq.parking`` queue

Supports a best-effort mode via ``--best-effort`` or ``INIT_TOPOLOGY_BEST_EFFORT=1``
which skips errors if RabbitMQ is not reachable (useful in CI without a broker).

Examples:
    python -m scripts.init_topology
    python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import os

from messaging.config import Settings
from messaging.rabbit import RabbitBroker
from messaging.topology import build_default_topology
from messaging.utils.logging import setup_logging


async def main(best_effort: bool) -> None:
    """Declare the default topology.

    When ``best_effort`` is True, any connection or declaration error is
    printed and the function returns successfully.
    """
    settings = Settings()
    try:
        broker = await RabbitBroker.connect(settings)
    except Exception as exc:  # noqa: BLE001
        if best_effort:
            print(f"[init_topology] Skipping: RabbitMQ not reachable ({exc})")
            return
        raise

    topology = build_default_topology()
    try:
        await broker.declare_topology(topology)
        print(f"[init_topology] Declared {len(topology.exchanges)} exchanges and {len(topology.queues)} queues")
        for queue in topology.queues:
            bindings = ", ".join(f"{b.exchange}:{b.routing_key or '*'}" for b in queue.bindings)
            print(f"  {queue.name} <- {bindings} (dlx {queue.dead_letter_routing_key})")
    except Exception as exc:  # noqa: BLE001
        if best_effort:
            print(f"[init_topology] Skipping declarations due to error: {exc}")
            return
        raise
    finally:
        await broker.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare RabbitMQ exchanges, queues and DLQs")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args()

    setup_logging(Settings().log_level)
    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    asyncio.run(main(bool(args.best_effort or best_effort_env)))
