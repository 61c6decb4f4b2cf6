"""Async utilities for bridging blocking connector calls into the orchestrator."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Module-level semaphore, initialized at service startup
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 4) -> None:
    """Initialize the concurrency semaphore. Call once at service startup."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info(
        "Run semaphore initialized: max_parallel=%d",
        max_parallel,
    )


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Connectors use ``requests`` and are therefore blocking; every connector
    call made by the orchestrator goes through here.  Does NOT acquire the
    semaphore.

    Example:
        records, cursor = await run_sync(connector.list_changed, cursor)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_limited(coro: Coroutine[Any, Any, T]) -> T:
    """Await *coro* while holding the concurrency semaphore.

    Falls back to unbounded if the semaphore is not initialized.
    """
    if _semaphore is None:
        return await coro
    async with _semaphore:
        return await coro


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
    return_exceptions: bool = False,
) -> list[T]:
    """Run coroutines concurrently, each bounded by the semaphore.

    Returns results in order.  With ``return_exceptions=True`` a failing
    coroutine yields its exception in place of a result instead of
    propagating, so one team's failure does not cancel the others.

    Args:
        coros: Sequence of coroutines to run concurrently.
        return_exceptions: Passed through to ``asyncio.gather``.

    Returns:
        List of results in the same order as input coroutines.
    """
    return list(
        await asyncio.gather(
            *(run_limited(c) for c in coros),
            return_exceptions=return_exceptions,
        )
    )
