"""
Topology initializer.

- Declares every data-worker queue as a durable priority queue
  (``x-max-priority`` preset), the same declaration publishers make lazily

Supports a best-effort mode via ``--best-effort`` or
``INIT_TOPOLOGY_BEST_EFFORT=1`` which skips errors if RabbitMQ is not
reachable (useful in CI without a broker).

Examples:
    python -m scripts.init_topology
    python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import logging
import os
from typing import Optional

from otr_queue.config import Settings
from otr_queue.errors import TransportError
from otr_queue.logging import setup_logging
from otr_queue.publishers import QueuePublisherRegistry
from otr_queue.rabbit import ConnectionFactory


logger = logging.getLogger("init_topology")


async def main(best_effort: bool, connection_factory: Optional[ConnectionFactory] = None) -> list[str]:
    """Declare all configured queues; return the names declared.

    When ``best_effort`` is True, a connection or declaration error is
    logged and the function returns the queues declared so far.
    """
    registry = QueuePublisherRegistry(Settings(), connection_factory=connection_factory)
    declared: list[str] = []
    try:
        for publisher in registry.publishers():
            try:
                await publisher.warm_up()
            except TransportError as exc:
                if best_effort:
                    logger.warning("skipping declarations: %s", exc)
                    return declared
                raise
            declared.append(publisher.queue_name)
            logger.info("declared queue %s", publisher.queue_name)
    finally:
        await registry.close()
    return declared


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare RabbitMQ queues for the data-worker")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args()

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    setup_logging(Settings().log_level)
    asyncio.run(main(bool(args.best_effort or best_effort_env)))
