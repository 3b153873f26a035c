from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from podlisten.config import PodcastSource
from podlisten.errors import PodcastListenerError
from podlisten.models.episodes import Episode
from podlisten.services.feed_service import FeedService, strip_html
from podlisten.services.transcript_source import TranscriptSource

LOGGER = logging.getLogger("podcast_listener.fallback")

MIN_SCRAPED_TRANSCRIPT_CHARS = 100

_JSON_LD_PATTERN = re.compile(
    r'<script type="application/ld\+json">(.*?)</script>',
    re.DOTALL | re.IGNORECASE,
)
_TRANSCRIPT_CONTAINER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r'class="transcript[^"]*"[^>]*>(.*?)</div>', re.DOTALL | re.IGNORECASE),
    re.compile(r'class="episode-transcript[^"]*"[^>]*>(.*?)</div>', re.DOTALL | re.IGNORECASE),
    re.compile(r'id="transcript"[^>]*>(.*?)</(?:div|section)>', re.DOTALL | re.IGNORECASE),
    re.compile(
        r'class="transcript-segment[^"]*"[^>]*>(.*?)</(?:p|span|div)>',
        re.DOTALL | re.IGNORECASE,
    ),
)


class TranscriptAdapter(Protocol):
    name: str

    async def fetch_transcript(self, episode: Episode, podcast: PodcastSource) -> str | None:
        ...


@dataclass(frozen=True)
class FallbackHit:
    text: str
    adapter_name: str


class FeedTranscriptAdapter:
    """Downloads the `podcast:transcript` link the feed advertised for the episode."""

    name = "feed-transcript"

    def __init__(self, feed_service: FeedService, transcript_urls: Mapping[str, str]) -> None:
        self._feed_service = feed_service
        self._transcript_urls = transcript_urls

    async def fetch_transcript(self, episode: Episode, podcast: PodcastSource) -> str | None:
        url = self._transcript_urls.get(episode.guid) or episode.transcript_url
        if url is None:
            return None
        return await self._feed_service.fetch_transcript_from_url(url)


class CatalogLookupAdapter:
    """Looks the episode up in the prefetched catalog by guid, then by title."""

    name = "catalog-api"

    def __init__(
        self,
        source: TranscriptSource,
        *,
        by_guid: Mapping[str, int],
        by_title: Mapping[str, int],
    ) -> None:
        self._source = source
        self._by_guid = by_guid
        self._by_title = by_title

    async def fetch_transcript(self, episode: Episode, podcast: PodcastSource) -> str | None:
        item_id = self._by_guid.get(episode.guid)
        if item_id is None:
            item_id = self._by_title.get(normalize_title(episode.title))
        if item_id is None:
            return None
        status = await self._source.fetch_status(item_id)
        if not status.is_done or status.transcription_id is None:
            return None
        payload = await self._source.fetch_text(item_id, status.transcription_id)
        return None if payload is None else payload.text


class HtmlScrapeAdapter:
    """Last resort: pull transcript-looking text out of public web pages."""

    name = "html-scrape"

    def __init__(self, feed_service: FeedService) -> None:
        self._feed_service = feed_service

    async def fetch_transcript(self, episode: Episode, podcast: PodcastSource) -> str | None:
        for url in (podcast.catalog_page_url, episode.episode_url):
            if url is None:
                continue
            document = await self._feed_service.fetch_document(url)
            if not document.ok:
                continue
            text = extract_transcript_from_html(document.body)
            if text is not None:
                return text
        return None


class CompositeTranscriptAdapter:
    """Tries adapters in order; the first one returning text wins."""

    def __init__(self, adapters: Sequence[TranscriptAdapter]) -> None:
        self._adapters = tuple(adapters)

    @property
    def adapter_names(self) -> tuple[str, ...]:
        return tuple(adapter.name for adapter in self._adapters)

    async def fetch_transcript(
        self,
        episode: Episode,
        podcast: PodcastSource,
    ) -> FallbackHit | None:
        for adapter in self._adapters:
            try:
                text = await adapter.fetch_transcript(episode, podcast)
            except PodcastListenerError as exc:
                LOGGER.info(
                    "fallback adapter failed adapter=%s podcast_id=%s guid=%s error=%s",
                    adapter.name,
                    episode.podcast_id,
                    episode.guid,
                    exc,
                )
                continue
            if text:
                return FallbackHit(text=text, adapter_name=adapter.name)
        return None


def extract_transcript_from_html(document: str) -> str | None:
    """Structured JSON-LD `transcript`/`text` first, then known transcript containers."""
    structured = _transcript_from_json_ld(document)
    if structured is not None:
        return structured
    for pattern in _TRANSCRIPT_CONTAINER_PATTERNS:
        fragments = pattern.findall(document)
        if not fragments:
            continue
        text = strip_html(" ".join(fragments))
        if len(text) > MIN_SCRAPED_TRANSCRIPT_CHARS:
            return text
    return None


def _transcript_from_json_ld(document: str) -> str | None:
    for block in _JSON_LD_PATTERN.findall(document):
        try:
            structured = json.loads(block)
        except json.JSONDecodeError:
            continue
        if not isinstance(structured, dict):
            continue
        for key in ("transcript", "text"):
            value = structured.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def normalize_title(title: str) -> str:
    return title.strip().lower()
