"""Bounded-concurrency task scheduler.

Runs independent coroutines with at most ``concurrency`` in flight. A
submitter waits while the limit is reached, which slows the producer down
to the speed of the consumers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class SchedulerClosed(Exception):
    """Raised when submitting to a scheduler that no longer accepts work."""

    pass


class BoundedScheduler:
    """Semaphore-bounded pool of asyncio tasks.

    Example:
        ```python
        async with BoundedScheduler(16, name="writes") as scheduler:
            for batch in batches:
                await scheduler.submit(lambda b=batch: writer.write(b))
        # all submitted tasks have finished here
        ```
    """

    def __init__(self, concurrency: int, *, name: str = "scheduler") -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.name = name
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

        self.submitted = 0
        self.completed = 0
        self.failed = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> BoundedScheduler:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
        await self.drain()

    async def submit(self, task: TaskFactory, *, label: str | None = None) -> None:
        """Start ``task()`` once a slot is free.

        Raises:
            SchedulerClosed: If close() was called before a slot was obtained.
        """
        if self._closed:
            raise SchedulerClosed(f"{self.name} is closed")
        await self._semaphore.acquire()
        if self._closed:
            self._semaphore.release()
            raise SchedulerClosed(f"{self.name} is closed")

        self.submitted += 1
        label = label or f"{self.name}-{self.submitted}"
        running = asyncio.create_task(self._run(task, label), name=label)
        self._tasks.add(running)
        running.add_done_callback(self._tasks.discard)

    async def _run(self, task: TaskFactory, label: str) -> None:
        try:
            await task()
        except Exception as e:
            self.failed += 1
            logger.error("%s task %s failed: %s", self.name, label, e)
        else:
            self.completed += 1
        finally:
            self._semaphore.release()

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Refuse further submissions; running tasks are left to finish."""
        if not self._closed:
            logger.debug("%s closed with %d task(s) in flight", self.name, self.in_flight)
        self._closed = True
