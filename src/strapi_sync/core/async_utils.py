"""Async helpers for driving the synchronous Strapi client from asyncio code."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Bounds concurrent upstream calls once initialized
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 2) -> None:
    """Initialize the concurrency semaphore. Call once per event loop."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info("Strapi request semaphore initialized: max_parallel=%d", max_parallel)


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous function in a worker thread.

    Example:
        report = await run_sync(service.run, "mr-1")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Like ``run_sync`` but bounded by the semaphore, when initialized."""
    if _semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with _semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(coros: Sequence[Coroutine[Any, Any, T]]) -> list[T]:
    """Await coroutines concurrently and return their results in order.

    Each coroutine should use ``run_sync_limited`` internally.  The first
    exception propagates.
    """
    return list(await asyncio.gather(*coros))
