from __future__ import annotations

import asyncio
import html
import logging
import re
from dataclasses import dataclass
from datetime import UTC
from email.utils import parsedate_to_datetime
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
from xml.etree.ElementTree import Element

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError as DefusedXMLParseError
from defusedxml.ElementTree import fromstring as safe_fromstring

from podlisten.config import PodcastSource
from podlisten.errors import FeedError
from podlisten.models.episodes import FeedEpisode

LOGGER = logging.getLogger("podcast_listener.feed")

_FEED_ACCEPT = "application/rss+xml, application/xml, text/xml"
_TRANSCRIPT_ACCEPT = "text/plain, text/srt, text/vtt, */*"
_PREFERRED_TRANSCRIPT_TYPES: tuple[str, ...] = ("plain", "srt", "vtt")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_CUE_NUMBER_PATTERN = re.compile(r"^\d+$")


@dataclass(frozen=True)
class ParsedFeed:
    title: str
    episodes: tuple[FeedEpisode, ...]

    def transcript_urls(self) -> dict[str, str]:
        return {
            episode.guid: episode.transcript_url
            for episode in self.episodes
            if episode.transcript_url is not None
        }


@dataclass(frozen=True)
class FetchedDocument:
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class FeedService:
    def __init__(self, *, user_agent: str, timeout_seconds: float) -> None:
        self._user_agent = user_agent
        self._timeout_seconds = timeout_seconds

    async def parse_feed(self, podcast: PodcastSource) -> ParsedFeed:
        document = await self.fetch_document(podcast.feed_url, accept=_FEED_ACCEPT)
        if not document.ok:
            raise FeedError(
                f"Failed to fetch RSS feed for {podcast.name}: HTTP {document.status_code}"
            )
        return parse_feed_xml(document.body.encode("utf-8"), podcast_id=podcast.id)

    async def fetch_transcript_from_url(self, url: str) -> str | None:
        document = await self.fetch_document(url, accept=_TRANSCRIPT_ACCEPT)
        if not document.ok:
            LOGGER.debug(
                "feed transcript unavailable url=%s status=%s",
                url,
                document.status_code,
            )
            return None
        text = document.body
        if url.endswith((".srt", ".vtt")) or "-->" in text:
            text = clean_subtitle_text(text)
        text = text.strip()
        return text or None

    async def fetch_document(self, url: str, *, accept: str = "text/html") -> FetchedDocument:
        request = Request(
            url,
            headers={"accept": accept, "user-agent": self._user_agent},
            method="GET",
        )
        return await asyncio.to_thread(_download, request, self._timeout_seconds)


def _download(request: Request, timeout_seconds: float) -> FetchedDocument:
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            charset = response.headers.get_content_charset() or "utf-8"
            body = response.read().decode(charset, errors="replace")
    except HTTPError as exc:
        return FetchedDocument(status_code=int(exc.code), body="")
    except (URLError, TimeoutError, OSError) as exc:
        raise FeedError(f"Request failed for {request.full_url}: {exc}") from exc
    return FetchedDocument(status_code=status_code, body=body)


def parse_feed_xml(xml_bytes: bytes, *, podcast_id: str) -> ParsedFeed:
    try:
        root = safe_fromstring(xml_bytes)
    except (DefusedXMLParseError, DefusedXmlException) as exc:
        raise FeedError(f"Invalid RSS feed for {podcast_id}: {exc}") from exc

    channel = root.find("channel")
    if channel is None:
        channel = next((el for el in root.iter() if _local_name(el) == "channel"), None)
    if channel is None:
        raise FeedError(f"Invalid RSS feed for {podcast_id}: no channel element")

    items = [child for child in channel if _local_name(child) == "item"]
    episodes = tuple(_parse_item(item, podcast_id=podcast_id) for item in items)
    return ParsedFeed(title=_child_text(channel, "title") or "", episodes=episodes)


def _parse_item(item: Element, *, podcast_id: str) -> FeedEpisode:
    title = _child_text(item, "title") or "Untitled"
    link = _child_text(item, "link")
    guid = _child_text(item, "guid") or link or title
    raw_description = _child_text(item, "encoded") or _child_text(item, "description") or ""

    audio_url: str | None = None
    for child in item:
        if _local_name(child) == "enclosure":
            audio_url = _optional(child.attrib.get("url"))
            break

    return FeedEpisode(
        podcast_id=podcast_id,
        guid=guid,
        title=title,
        description=strip_html(raw_description),
        published_at=parse_pub_date(_child_text(item, "pubDate")),
        duration_seconds=parse_duration(_child_text(item, "duration")),
        audio_url=audio_url,
        episode_url=link,
        transcript_url=_pick_transcript_url(item),
    )


def _pick_transcript_url(item: Element) -> str | None:
    candidates: list[tuple[str, str]] = []
    for child in item:
        if _local_name(child) != "transcript":
            continue
        url = _optional(child.attrib.get("url"))
        if url is not None:
            candidates.append((url, (child.attrib.get("type") or "").lower()))
    if not candidates:
        return None
    for preferred in _PREFERRED_TRANSCRIPT_TYPES:
        for url, media_type in candidates:
            if preferred in media_type:
                return url
    return candidates[0][0]


def parse_duration(raw: str | None) -> int | None:
    """`HH:MM:SS`, `MM:SS`, or plain seconds."""
    if raw is None:
        return None
    parts = raw.strip().split(":")
    try:
        numbers = [float(part) for part in parts]
    except ValueError:
        return None
    if len(numbers) == 3:
        return int(numbers[0] * 3600 + numbers[1] * 60 + numbers[2])
    if len(numbers) == 2:
        return int(numbers[0] * 60 + numbers[1])
    if len(numbers) == 1:
        return int(numbers[0])
    return None


def parse_pub_date(raw: str | None) -> str | None:
    if raw is None:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat()


def strip_html(raw: str) -> str:
    without_tags = _TAG_PATTERN.sub(" ", raw)
    return _WHITESPACE_PATTERN.sub(" ", html.unescape(without_tags)).strip()


def clean_subtitle_text(raw: str) -> str:
    """Drop SRT/VTT cue numbers, timing lines, and headers, keeping only spoken text."""
    kept: list[str] = []
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if _CUE_NUMBER_PATTERN.match(stripped) or "-->" in stripped:
            continue
        if stripped.startswith(("WEBVTT", "NOTE")):
            continue
        kept.append(stripped)
    return _WHITESPACE_PATTERN.sub(" ", " ".join(kept)).strip()


def _local_name(element: Element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _child_text(parent: Element, local_name: str) -> str | None:
    # Plain RSS elements win over namespaced ones sharing a local name (itunes:title).
    plain = parent.find(local_name)
    if plain is not None:
        return _optional(plain.text)
    for child in parent:
        if _local_name(child) == local_name:
            return _optional(child.text)
    return None


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
