"""Scheduling port used for retry backoff and debounced triggers.

Components never call ``asyncio.sleep`` or ``loop.call_later`` directly;
they receive a ``Scheduler``.  ``AsyncioScheduler`` is the production
implementation.  Tests substitute a scheduler with a manual clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class Cancellable(Protocol):
    """Handle returned by ``Scheduler.call_later``."""

    def cancel(self) -> None: ...  # pragma: no cover


class Scheduler(Protocol):
    """Clock plus deferred execution of coroutine callbacks."""

    def now(self) -> float:
        """Current time in epoch seconds."""
        ...  # pragma: no cover

    def call_later(self, delay: float, callback: Callback) -> Cancellable:
        """Run ``await callback()`` after *delay* seconds."""
        ...  # pragma: no cover


class AsyncioScheduler:
    """Scheduler backed by the running event loop and the wall clock.

    Tasks spawned for callbacks are kept referenced until they finish so
    the loop cannot garbage-collect them mid-flight.  Exceptions escaping
    a callback are logged.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callback) -> Cancellable:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), self._spawn, callback)

    def _spawn(self, callback: Callback) -> None:
        task = asyncio.get_running_loop().create_task(callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Scheduled callback failed: %s",
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def aclose(self) -> None:
        """Cancel and await every callback task still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
