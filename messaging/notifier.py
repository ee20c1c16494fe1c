"""In-process audit notifications (``message_published``, ``dlq_message_received``...).

Listeners observe the bus without being able to slow it down or break it:
synchronous listeners run inline, coroutine listeners are scheduled as
tasks, and any exception a listener raises is logged and dropped.

Example:
    >>> notifier = AuditNotifier()
    >>> notifier.on("message_published", lambda payload: print(payload["id"]))
    >>> notifier.emit("message_published", {"id": "m1"})
    m1
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable


logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Any]


class AuditNotifier:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver ``payload`` to every listener of ``event``; never raises."""
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception:  # noqa: BLE001
                logger.exception("audit listener for %s failed", event)

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("async audit listener failed", exc_info=task.exception())
