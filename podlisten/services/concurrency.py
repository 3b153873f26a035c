from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[int, int], None]


async def pooled_map(
    items: Sequence[T],
    fn: Callable[[T, int], Awaitable[R]],
    *,
    concurrency: int,
    stagger_seconds: float = 0.0,
    on_progress: ProgressCallback | None = None,
) -> list[R]:
    """Run `fn(item, index)` over `items` with at most `concurrency` calls active.

    Results keep input order. Items past the first `concurrency` wait
    `stagger_seconds` before starting. A worker that raises stops claiming
    indices; the others keep draining and the first error is re-raised once
    all of them have finished.
    """
    total = len(items)
    if total == 0:
        return []

    limit = max(1, concurrency)
    results: list[R | None] = [None] * total
    next_index = 0
    completed = 0

    async def worker() -> None:
        nonlocal next_index, completed
        while next_index < total:
            index = next_index
            next_index += 1
            if index >= limit and stagger_seconds > 0:
                await asyncio.sleep(stagger_seconds)
            results[index] = await fn(items[index], index)
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)

    outcomes = await asyncio.gather(
        *(worker() for _ in range(min(limit, total))),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return results  # type: ignore[return-value]
