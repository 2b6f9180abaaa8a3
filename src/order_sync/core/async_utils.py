"""Async utilities for bridging blocking HTTP calls into the event loop."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        records = await run_sync(client._get_all)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    semaphore: asyncio.Semaphore | None,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run a synchronous function in a thread pool, bounded by *semaphore*.

    Falls back to unbounded if no semaphore is given.
    """
    if semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    semaphore: asyncio.Semaphore | None,
    factories: Sequence[Callable[[], Awaitable[T]]],
) -> list[T]:
    """Run awaitables concurrently, at most ``semaphore`` at a time.

    Takes zero-argument factories rather than coroutines so nothing starts
    before a slot is free.  Returns results in order.  Exceptions propagate
    from the first failure.
    """

    async def _bounded(factory: Callable[[], Awaitable[T]]) -> T:
        if semaphore is None:
            return await factory()
        async with semaphore:
            return await factory()

    return list(await asyncio.gather(*(_bounded(f) for f in factories)))
