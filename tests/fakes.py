from __future__ import annotations

import asyncio

from podlisten.errors import TranscriptSourceError
from podlisten.models.episodes import (
    CatalogEpisode,
    FeedEpisode,
    SourceActionResult,
    SourceStatus,
    TranscriptPayload,
    TranscriptWord,
)
from podlisten.services.credentials import SourceCredential


def make_feed_episode(
    podcast_id: str,
    guid: str,
    *,
    title: str | None = None,
    published_at: str | None = "2026-03-01T10:00:00+00:00",
    source_item_id: int | None = None,
    transcript: str | None = None,
    episode_url: str | None = None,
) -> FeedEpisode:
    return FeedEpisode(
        podcast_id=podcast_id,
        guid=guid,
        title=title or f"Episode {guid}",
        description=f"About {guid}",
        published_at=published_at,
        duration_seconds=1800,
        audio_url=f"https://cdn.example.com/{guid}.mp3",
        episode_url=episode_url,
        source_item_id=source_item_id,
        source_url=None if source_item_id is None else f"https://app.example.com/{source_item_id}",
        transcript=transcript,
        transcript_origin="feed-transcript" if transcript else None,
    )


def words_for(text: str, *, speaker: int = 0) -> tuple[TranscriptWord, ...]:
    return tuple(
        TranscriptWord(word=word, speaker=speaker, start_time=float(index), end_time=index + 0.5)
        for index, word in enumerate(text.split())
    )


def unreachable(message: str = "connection reset") -> TranscriptSourceError:
    return TranscriptSourceError(f"Transcription service request failed: {message}")


class FakeTranscriptSource:
    """Scripted stand-in for the transcription service.

    `statuses[item_id]` is consumed one entry per status call; the last entry
    repeats. `text_errors[item_id]` are raised by text downloads until used
    up. Every call is recorded in `calls`.
    """

    def __init__(self) -> None:
        self.statuses: dict[int, list[SourceStatus | Exception]] = {}
        self.texts: dict[int, str | None] = {}
        self.texts_by_transcription: dict[str, str] = {}
        self.text_errors: dict[int, list[Exception]] = {}
        self.catalog: list[CatalogEpisode] = []
        self.request_results: dict[int, SourceActionResult] = {}
        self.reset_results: dict[int, SourceActionResult] = {}
        self.calls: list[tuple[str, int]] = []
        self.series_error: Exception | None = None

    def episode_url(self, item_id: int) -> str:
        return f"https://app.example.com/episode/{item_id}"

    async def fetch_series_episodes(self, series_id: str) -> list[CatalogEpisode]:
        await asyncio.sleep(0)
        if self.series_error is not None:
            raise self.series_error
        return list(self.catalog)

    async def fetch_status(self, item_id: int) -> SourceStatus:
        self.calls.append(("status", item_id))
        await asyncio.sleep(0)
        script = self.statuses.get(item_id)
        if not script:
            return SourceStatus(status="NotStarted")
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_text(self, item_id: int, transcription_id: str) -> TranscriptPayload | None:
        self.calls.append(("text", item_id))
        await asyncio.sleep(0)
        failures = self.text_errors.get(item_id)
        if failures:
            raise failures.pop(0)
        text = self.texts_by_transcription.get(transcription_id) or self.texts.get(item_id)
        if text is None:
            return None
        return TranscriptPayload(text=text, words=words_for(text))

    async def request_transcription(
        self,
        item_id: int,
        credential: SourceCredential,
    ) -> SourceActionResult:
        self.calls.append(("request", item_id))
        await asyncio.sleep(0)
        return self.request_results.get(item_id, SourceActionResult(success=True))

    async def reset_transcription(
        self,
        item_id: int,
        credential: SourceCredential,
        user_id: str,
    ) -> SourceActionResult:
        self.calls.append(("reset", item_id))
        await asyncio.sleep(0)
        return self.reset_results.get(item_id, SourceActionResult(success=True))

    def count(self, kind: str, item_id: int | None = None) -> int:
        return sum(
            1
            for call_kind, call_item in self.calls
            if call_kind == kind and (item_id is None or call_item == item_id)
        )
