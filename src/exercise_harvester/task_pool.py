"""Fixed-concurrency executor for homogeneous batches of coroutines."""

from __future__ import annotations

import asyncio
import math
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from .logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Sequence[T],
    limit: int,
    task: Callable[[T, int], Awaitable[R]],
) -> List[R]:
    """
    Run ``task(item, index)`` for every item with at most ``limit`` in flight.

    The returned list is indexed like ``items`` regardless of completion order.
    There is no error isolation: the first exception stops scheduling of any
    further item, in-flight tasks are allowed to finish, and the exception is
    re-raised. Callers that need partial-failure tolerance must catch inside
    ``task`` and return a normal value.
    """
    items = list(items)
    if not items:
        return []

    try:
        concurrency = max(1, math.floor(limit))
    except (TypeError, ValueError, OverflowError):
        concurrency = 1

    results: List[Optional[R]] = [None] * len(items)
    next_index = 0
    failure: Optional[BaseException] = None

    async def worker() -> None:
        nonlocal next_index, failure
        while failure is None and next_index < len(items):
            index = next_index
            next_index += 1
            try:
                results[index] = await task(items[index], index)
            except Exception as exc:  # pylint: disable=broad-except
                if failure is None:
                    failure = exc
                    logger.debug("Task %s failed; no further items will be scheduled", index)

    workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, len(items)))]
    await asyncio.gather(*workers)

    if failure is not None:
        raise failure
    return results  # type: ignore[return-value]
