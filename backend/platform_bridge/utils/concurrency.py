"""
Bounded-concurrency helpers for per-item detail fetches.

Replaces serial N+1 loops with a small worker pool. Results come back
in input order regardless of completion order.
Version: 1.0.0
"""
import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    limit: int = 4,
) -> List[R]:
    """
    Run ``fn`` over ``items`` with at most ``limit`` calls in flight.

    The first exception propagates after in-flight calls are cancelled.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(item: T) -> R:
        async with semaphore:
            return await fn(item)

    tasks = [asyncio.ensure_future(_run(item)) for item in items]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


def chunked(items: List[T], size: int) -> List[List[T]]:
    return [items[i:i + size] for i in range(0, len(items), size)]
