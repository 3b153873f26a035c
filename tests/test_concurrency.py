from __future__ import annotations

import asyncio
import time

import pytest

from podlisten.services.cancellation import CancellationToken
from podlisten.services.concurrency import pooled_map


def test_pooled_map_never_exceeds_concurrency_and_keeps_order() -> None:
    active = 0
    peak = 0

    async def work(item: int, index: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001 * (item % 3))
        active -= 1
        return item * 10 + index

    items = list(range(12))
    results = asyncio.run(pooled_map(items, work, concurrency=3))

    assert peak == 3
    assert results == [item * 10 + item for item in items]


def test_pooled_map_reports_progress_for_every_item() -> None:
    seen: list[tuple[int, int]] = []

    async def work(item: str, _index: int) -> str:
        await asyncio.sleep(0)
        return item.upper()

    results = asyncio.run(
        pooled_map(
            ["a", "b", "c"],
            work,
            concurrency=2,
            on_progress=lambda done, total: seen.append((done, total)),
        )
    )

    assert results == ["A", "B", "C"]
    assert seen == [(1, 3), (2, 3), (3, 3)]


def test_pooled_map_with_no_items_returns_empty_list() -> None:
    async def work(item: int, _index: int) -> int:
        raise AssertionError("should not be called")

    assert asyncio.run(pooled_map([], work, concurrency=4)) == []


def test_pooled_map_raises_first_error_after_other_workers_drain() -> None:
    finished: list[int] = []

    async def work(item: int, _index: int) -> int:
        if item == 0:
            raise ValueError("boom")
        await asyncio.sleep(0.005)
        finished.append(item)
        return item

    with pytest.raises(ValueError, match="boom"):
        asyncio.run(pooled_map([0, 1, 2, 3], work, concurrency=2))

    # The failing worker stops claiming work; the healthy one drains the rest.
    assert sorted(finished) == [1, 2, 3]


def test_pooled_map_staggers_items_beyond_first_batch() -> None:
    starts: list[float] = []

    async def work(item: int, _index: int) -> int:
        starts.append(time.monotonic())
        return item

    asyncio.run(pooled_map([1, 2, 3, 4], work, concurrency=2, stagger_seconds=0.02))

    ordered = sorted(starts)
    assert ordered[1] - ordered[0] < 0.015
    assert ordered[2] - ordered[0] >= 0.015


def test_cancellation_token_sleep_reports_elapsed_and_cancelled() -> None:
    async def scenario() -> tuple[bool, bool, float]:
        token = CancellationToken()
        elapsed = await token.sleep(0.001)

        started = time.monotonic()
        sleeper = asyncio.create_task(token.sleep(5))
        await asyncio.sleep(0.01)
        token.cancel()
        cancelled_result = await sleeper
        return elapsed, cancelled_result, time.monotonic() - started

    elapsed, cancelled_result, waited = asyncio.run(scenario())

    assert elapsed is True
    assert cancelled_result is False
    assert waited < 1


def test_cancelled_token_returns_immediately() -> None:
    async def scenario() -> bool:
        token = CancellationToken()
        token.cancel()
        return await token.sleep(10)

    assert asyncio.run(scenario()) is False
