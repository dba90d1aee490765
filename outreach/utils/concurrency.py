from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")


async def map_with_concurrency(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T], Awaitable[R]],
) -> List[Union[R, BaseException]]:
    """
    Run `fn` over `items` with at most `limit` calls in flight.

    Results come back in input order. A call that raises does not stop the
    batch: the exception object is stored in that item's slot and the caller
    decides whether it matters.

    Implemented as a fixed pool of `limit` workers pulling the next index, so a
    new item only starts once a worker has finished its previous one.
    """
    n = len(items)
    results: List[Union[R, BaseException]] = [None] * n  # type: ignore[list-item]
    if n == 0:
        return results

    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < n:
            i = next_index
            next_index += 1
            try:
                results[i] = await fn(items[i])
            except Exception as exc:
                results[i] = exc

    workers = max(1, min(int(limit or 1), n))
    await asyncio.gather(*(worker() for _ in range(workers)))
    return results
