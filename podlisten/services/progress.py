from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from podlisten.models.progress_contracts import (
    EpisodeStatusEvent,
    PhaseCompleteEvent,
    PhaseProgressEvent,
    PhaseStartEvent,
    ProgressEvent,
    SyncPhase,
)

LOGGER = logging.getLogger("podcast_listener.progress")

DEFAULT_SUBSCRIBER_BUFFER = 1_000

ProgressCallback = Callable[[ProgressEvent], None]


class ProgressSubscription:
    """One consumer's view of the stream, drained at its own pace."""

    def __init__(self, stream: ProgressStream, maxsize: int) -> None:
        self._stream = stream
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: ProgressEvent | None) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
        return True

    def get_nowait(self) -> ProgressEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def get(self) -> ProgressEvent | None:
        """Next event, or None once the stream has been closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        self._closed = True
        self._stream.unsubscribe(self)

    def end(self) -> None:
        self.offer(None)
        self._closed = True

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ProgressStream:
    """Fan-out of immutable progress events.

    `publish` never blocks and never raises: a full subscriber loses the
    event, a closed one is dropped, and a callback that raises is detached.
    """

    def __init__(self) -> None:
        self._subscriptions: list[ProgressSubscription] = []
        self._callbacks: list[ProgressCallback] = []

    def subscribe(self, *, maxsize: int = DEFAULT_SUBSCRIBER_BUFFER) -> ProgressSubscription:
        subscription = ProgressSubscription(self, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_callback(self, callback: ProgressCallback) -> None:
        self._callbacks.append(callback)

    def publish(self, event: ProgressEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.offer(event):
                self.unsubscribe(subscription)
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                LOGGER.warning(
                    "progress callback failed; detaching event_type=%s",
                    event.type,
                    exc_info=True,
                )
                self._callbacks.remove(callback)

    def close(self) -> None:
        """Signal end-of-stream to every subscriber."""
        for subscription in list(self._subscriptions):
            subscription.end()
        self._subscriptions.clear()

    def phase_start(
        self,
        phase: SyncPhase,
        *,
        podcast_id: str | None = None,
        total: int | None = None,
        message: str | None = None,
    ) -> None:
        self.publish(
            PhaseStartEvent(podcast_id=podcast_id, phase=phase, total=total, message=message)
        )

    def phase_progress(
        self,
        phase: SyncPhase,
        completed: int,
        total: int,
        *,
        podcast_id: str | None = None,
        message: str | None = None,
    ) -> None:
        self.publish(
            PhaseProgressEvent(
                podcast_id=podcast_id,
                phase=phase,
                completed=completed,
                total=total,
                message=message,
            )
        )

    def phase_complete(
        self,
        phase: SyncPhase,
        *,
        podcast_id: str | None = None,
        message: str | None = None,
    ) -> None:
        self.publish(PhaseCompleteEvent(podcast_id=podcast_id, phase=phase, message=message))

    def episode_status(
        self,
        *,
        episode_id: int,
        title: str,
        state: str,
        detail: str | None = None,
    ) -> None:
        self.publish(
            EpisodeStatusEvent(episode_id=episode_id, title=title, state=state, detail=detail)
        )
