from __future__ import annotations

import asyncio

import pytest
from pydantic import TypeAdapter, ValidationError

from podlisten.models.progress_contracts import (
    PhaseStartEvent,
    ProgressEvent,
    SyncErrorEvent,
    SyncStartEvent,
)
from podlisten.services.progress import ProgressStream


def test_subscribers_receive_events_in_order_until_close() -> None:
    async def scenario() -> list[str]:
        stream = ProgressStream()
        subscription = stream.subscribe()
        stream.publish(SyncStartEvent(total_podcasts=2))
        stream.phase_start("feed", podcast_id="deep-dive", message="Parsing RSS feed")
        stream.phase_progress("status", 1, 4, podcast_id="deep-dive")
        stream.close()
        return [event.type async for event in subscription]

    assert asyncio.run(scenario()) == ["sync:start", "phase:start", "phase:progress"]


def test_full_subscriber_drops_events_without_blocking_publisher() -> None:
    async def scenario() -> tuple[int, int]:
        stream = ProgressStream()
        slow = stream.subscribe(maxsize=2)
        fast = stream.subscribe(maxsize=10)
        for index in range(5):
            stream.phase_progress("download", index + 1, 5)
        received = 0
        while fast.get_nowait() is not None:
            received += 1
        return slow.dropped, received

    dropped, received = asyncio.run(scenario())
    assert dropped == 3
    assert received == 5


def test_closed_subscription_stops_receiving() -> None:
    async def scenario() -> ProgressEvent | None:
        stream = ProgressStream()
        subscription = stream.subscribe()
        subscription.close()
        stream.publish(SyncErrorEvent(podcast_id="deep-dive", message="Failed to parse feed: 404"))
        return subscription.get_nowait()

    assert asyncio.run(scenario()) is None


def test_raising_callback_is_detached_and_others_keep_receiving() -> None:
    stream = ProgressStream()
    received: list[str] = []
    calls = 0

    def broken(_event: ProgressEvent) -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("renderer crashed")

    stream.add_callback(broken)
    stream.add_callback(lambda event: received.append(event.type))

    stream.phase_complete("feed", podcast_id="deep-dive")
    stream.phase_complete("status", podcast_id="deep-dive")

    assert calls == 1
    assert received == ["phase:complete", "phase:complete"]


def test_progress_events_are_immutable_and_discriminated() -> None:
    event = PhaseStartEvent(phase="request", total=3)
    with pytest.raises(ValidationError):
        event.total = 4  # type: ignore[misc]

    parsed = TypeAdapter(ProgressEvent).validate_python(
        {
            "type": "podcast:complete",
            "podcast_id": "deep-dive",
            "new_episodes": 2,
            "new_transcripts": 1,
            "error_count": 0,
        }
    )
    assert parsed.type == "podcast:complete"
