"""Cancellable delayed-task schedulers used by the retry handler.

Retries are in-process timers, not broker redeliveries. ``AsyncioScheduler``
runs them on the event loop; ``ManualScheduler`` keeps a virtual clock so
tests can fast-forward backoff delays deterministically.

Example:
    >>> scheduler = ManualScheduler()
    >>> scheduler.call_later(1.5, lambda: handler())
    >>> await scheduler.advance(2)   # runs the retry
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol


logger = logging.getLogger(__name__)

CoroFactory = Callable[[], Awaitable[Any]]


class ScheduledTask(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, factory: CoroFactory) -> ScheduledTask: ...

    def cancel_all(self) -> int: ...

    @property
    def pending(self) -> int: ...


class _AsyncioTask:
    def __init__(self) -> None:
        self.task: Optional[asyncio.Task[Any]] = None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self.task is not None:
            self.task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler:
    """Run each callback in its own task after sleeping ``delay_s`` seconds."""

    def __init__(self) -> None:
        self._tasks: set[_AsyncioTask] = set()

    def call_later(self, delay_s: float, factory: CoroFactory) -> ScheduledTask:
        handle = _AsyncioTask()

        async def _run() -> None:
            try:
                await asyncio.sleep(max(delay_s, 0))
                await factory()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("scheduled task failed")
            finally:
                self._tasks.discard(handle)

        handle.task = asyncio.create_task(_run())
        self._tasks.add(handle)
        return handle

    def cancel_all(self) -> int:
        count = 0
        for handle in list(self._tasks):
            handle.cancel()
            count += 1
        self._tasks.clear()
        return count

    @property
    def pending(self) -> int:
        return len(self._tasks)


class _ManualTask:
    def __init__(self, due: float, factory: CoroFactory) -> None:
        self.due = due
        self.factory = factory
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Virtual-clock scheduler; nothing runs until ``advance`` or ``run_all``.

    Properties:
    - ``now``: current virtual time in seconds
    - ``delays``: every delay ever requested, in call order
    """

    def __init__(self) -> None:
        self.now = 0.0
        self.delays: list[float] = []
        self._heap: list[tuple[float, int, _ManualTask]] = []
        self._seq = itertools.count()

    def call_later(self, delay_s: float, factory: CoroFactory) -> ScheduledTask:
        self.delays.append(delay_s)
        handle = _ManualTask(self.now + max(delay_s, 0), factory)
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        return handle

    async def advance(self, seconds: float) -> int:
        """Move the clock forward and run every task that became due.

        Tasks scheduled by a running task are also run if they fall inside
        the window. Returns the number of tasks executed.
        """
        target = self.now + seconds
        ran = 0
        while self._heap and self._heap[0][0] <= target:
            due, _, handle = heapq.heappop(self._heap)
            self.now = max(self.now, due)
            if handle.cancelled:
                continue
            await handle.factory()
            ran += 1
        self.now = target
        return ran

    async def run_all(self) -> int:
        """Run tasks until none remain, jumping the clock to each due time."""
        ran = 0
        while self._heap:
            due, _, handle = heapq.heappop(self._heap)
            self.now = max(self.now, due)
            if handle.cancelled:
                continue
            await handle.factory()
            ran += 1
        return ran

    def cancel_all(self) -> int:
        count = sum(1 for _, _, h in self._heap if not h.cancelled)
        for _, _, handle in self._heap:
            handle.cancel()
        self._heap.clear()
        return count

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)
