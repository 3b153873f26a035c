from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class SyncResult:
    podcast_id: str
    new_episodes: int = 0
    updated_episodes: int = 0
    new_transcripts: int = 0
    requested: int = 0
    reset: int = 0
    skipped_requests: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TimingStats:
    durations: tuple[float, ...]
    min: float
    max: float
    mean: float
    median: float

    @property
    def count(self) -> int:
        return len(self.durations)


@dataclass
class RequestTranscriptsResult:
    requested: int = 0
    downloaded: int = 0
    failed: int = 0
    still_processing: int = 0
    errors: list[str] = field(default_factory=list)
    timings: TimingStats | None = None

    @property
    def accounted(self) -> int:
        return self.downloaded + self.failed + self.still_processing

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timings"] = None if self.timings is None else asdict(self.timings)
        return payload


@dataclass
class EnrichmentResult:
    enriched: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QueueStatus:
    queued: int
    requesting: int
    waiting: int
    checking: int
    done: int
    failed: int
    total: int


@dataclass(frozen=True)
class EnrichmentStatus:
    queued: int
    active: int
    enriched: int
    failed: int
    skipped: int
    total: int
