from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

SyncPhase = Literal["feed", "status", "download", "fallback", "request", "poll", "enrich"]


class _ProgressEventBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SyncStartEvent(_ProgressEventBase):
    type: Literal["sync:start"] = "sync:start"
    total_podcasts: int


class PodcastStartEvent(_ProgressEventBase):
    type: Literal["podcast:start"] = "podcast:start"
    podcast_id: str
    podcast_name: str
    index: int
    total: int


class PhaseStartEvent(_ProgressEventBase):
    type: Literal["phase:start"] = "phase:start"
    podcast_id: str | None = None
    phase: SyncPhase
    total: int | None = None
    message: str | None = None


class PhaseProgressEvent(_ProgressEventBase):
    type: Literal["phase:progress"] = "phase:progress"
    podcast_id: str | None = None
    phase: SyncPhase
    completed: int
    total: int
    message: str | None = None


class PhaseCompleteEvent(_ProgressEventBase):
    type: Literal["phase:complete"] = "phase:complete"
    podcast_id: str | None = None
    phase: SyncPhase
    message: str | None = None


class PodcastCompleteEvent(_ProgressEventBase):
    type: Literal["podcast:complete"] = "podcast:complete"
    podcast_id: str
    new_episodes: int
    new_transcripts: int
    error_count: int


class SyncCompleteEvent(_ProgressEventBase):
    type: Literal["sync:complete"] = "sync:complete"
    total_new_episodes: int
    total_new_transcripts: int
    total_errors: int
    duration_ms: int


class SyncErrorEvent(_ProgressEventBase):
    type: Literal["sync:error"] = "sync:error"
    podcast_id: str | None = None
    message: str


class EpisodeStatusEvent(_ProgressEventBase):
    type: Literal["episode:status"] = "episode:status"
    episode_id: int
    title: str
    state: str
    detail: str | None = None


ProgressEvent = Annotated[
    SyncStartEvent
    | PodcastStartEvent
    | PhaseStartEvent
    | PhaseProgressEvent
    | PhaseCompleteEvent
    | PodcastCompleteEvent
    | SyncCompleteEvent
    | SyncErrorEvent
    | EpisodeStatusEvent,
    Field(discriminator="type"),
]
