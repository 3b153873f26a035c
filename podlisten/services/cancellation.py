from __future__ import annotations

import asyncio
import contextlib


class CancellationToken:
    """Shared stop signal for one engine run.

    `sleep` resolves early when the token is cancelled and reports which of
    the two happened, so a cancelled timer is never mistaken for an elapsed one.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Wait `seconds`. Returns True if the delay elapsed, False if cancelled."""
        if self._event.is_set():
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self._event.is_set()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return not self._event.is_set()
