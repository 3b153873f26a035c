from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

TranscriptStatus = Literal["NotStarted", "Requested", "Running", "Processing", "Done", "Unknown"]
TRANSCRIPT_STATUSES: frozenset[str] = frozenset(
    {"NotStarted", "Requested", "Running", "Processing", "Done", "Unknown"}
)
IN_PROGRESS_STATUSES: frozenset[str] = frozenset({"Requested", "Running", "Processing"})

EpisodeQueueState = Literal[
    "queued",
    "requesting",
    "waiting",
    "checking",
    "done",
    "failed",
    "stopped",
]


def normalize_status(raw: object) -> TranscriptStatus:
    if isinstance(raw, str) and raw in TRANSCRIPT_STATUSES:
        return raw  # type: ignore[return-value]
    return "Unknown"


@dataclass(frozen=True)
class TranscriptWord:
    word: str
    speaker: int
    start_time: float
    end_time: float
    confidence: float = 1.0

    def to_dict(self) -> dict[str, object]:
        return {
            "word": self.word,
            "speaker": self.speaker,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, object]) -> TranscriptWord:
        return cls(
            word=str(raw.get("word", "")),
            speaker=_as_int(raw.get("speaker")),
            start_time=_as_float(raw.get("startTime", raw.get("start_time"))),
            end_time=_as_float(raw.get("endTime", raw.get("end_time"))),
            confidence=_as_float(raw.get("confidence"), default=1.0),
        )


@dataclass(frozen=True)
class TranscriptPayload:
    text: str
    words: tuple[TranscriptWord, ...] = ()


@dataclass(frozen=True)
class FeedEpisode:
    """An episode as decoded from a feed or the catalog, before storage."""

    podcast_id: str
    guid: str
    title: str
    description: str = ""
    published_at: str | None = None
    duration_seconds: int | None = None
    audio_url: str | None = None
    episode_url: str | None = None
    transcript_url: str | None = None
    source_item_id: int | None = None
    source_url: str | None = None
    transcript: str | None = None
    transcript_origin: str | None = None


@dataclass(frozen=True)
class Episode:
    id: int
    podcast_id: str
    guid: str
    title: str
    description: str
    published_at: str | None
    duration_seconds: int | None
    audio_url: str | None
    episode_url: str | None
    transcript: str | None
    transcript_origin: str | None
    has_transcript_data: bool
    source_item_id: int | None
    source_url: str | None
    source_status: TranscriptStatus | None
    status_checked_at: datetime | None
    exclusion_tag: str | None
    transcript_url: str | None = None
    source_transcription_id: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.podcast_id, self.guid)


@dataclass(frozen=True)
class StatusUpdate:
    podcast_id: str
    guid: str
    status: TranscriptStatus
    transcription_id: str | None = None

    @classmethod
    def for_episode(
        cls,
        episode: Episode,
        status: TranscriptStatus,
        transcription_id: str | None = None,
    ) -> StatusUpdate:
        return cls(
            podcast_id=episode.podcast_id,
            guid=episode.guid,
            status=status,
            transcription_id=transcription_id,
        )


@dataclass(frozen=True)
class SourceStatus:
    status: TranscriptStatus
    transcription_id: str | None = None

    @property
    def is_done(self) -> bool:
        return self.status == "Done" and self.transcription_id is not None


@dataclass(frozen=True)
class SourceActionResult:
    success: bool
    error: str | None = None
    auth_rejected: bool = False


@dataclass(frozen=True)
class CatalogEpisode:
    item_id: int
    title: str
    guid: str | None
    description: str = ""
    uploaded_at: str | None = None
    duration_seconds: int | None = None
    audio_url: str | None = None


@dataclass
class QueueTask:
    episode: Episode
    state: EpisodeQueueState = "queued"
    retry_count: int = 0
    wait_seconds: float = 0.0
    started_at: float | None = None
    finished_at: float | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


def _as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _as_float(value: object, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default
