"""Queue depth sampling via the RabbitMQ Management HTTP API.

Operators use these numbers next to DLQ record counts: a DLQ queue with a
non-zero depth means the DLQ manager is not consuming it.

Usage example:
    >>> get_queue_depth("dlq.orders.events.queue")
    0
    >>> get_queue_depths(["orders.events.queue", "payments.events.queue"])
    {'orders.events.queue': 3, 'payments.events.queue': 0}
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional
from urllib.parse import quote

import httpx

from messaging.config import Settings
from messaging.metrics import QUEUE_DEPTH


logger = logging.getLogger(__name__)


def _queue_url(settings: Settings, queue_name: str) -> str:
    vhost = quote(settings.rabbitmq_vhost or "/", safe="")
    return f"{settings.rabbitmq_mgmt_url.rstrip('/')}/api/queues/{vhost}/{quote(queue_name, safe='')}"


def get_queue_depth(queue_name: str, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None) -> int:
    """Return the ready+unacked message count of ``queue_name``.

    Requires RabbitMQ Management to be reachable at ``RABBITMQ_MGMT_URL``.
    Credentials are read from ``RABBITMQ_USER``/``RABBITMQ_PASS``. On any
    error, returns 0 to fail-open.
    """
    settings = settings or Settings()
    url = _queue_url(settings, queue_name)
    auth = (settings.rabbitmq_user, settings.rabbitmq_pass)
    try:
        if client is not None:
            r = client.get(url, auth=auth)
        else:
            r = httpx.get(url, auth=auth, timeout=5)
        if r.status_code != 200:
            return 0
        depth = int(r.json().get("messages", 0))
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("queue depth lookup for %s failed: %s", queue_name, exc)
        return 0
    QUEUE_DEPTH.labels(queue=queue_name).set(depth)
    return depth


def get_queue_depths(queue_names: Iterable[str], settings: Optional[Settings] = None) -> dict[str, int]:
    settings = settings or Settings()
    with httpx.Client(timeout=5) as client:
        return {name: get_queue_depth(name, settings, client) for name in queue_names}
