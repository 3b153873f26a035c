from __future__ import annotations


class PodcastListenerError(Exception):
    pass


class ConfigurationError(PodcastListenerError):
    pass


class FeedError(PodcastListenerError):
    pass


class TranscriptSourceError(PodcastListenerError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TranscriptSourceAuthError(TranscriptSourceError):
    """The service rejected the bearer credential (HTTP 401)."""


class RunInProgressError(PodcastListenerError):
    def __init__(self, *, held_by: str, acquired_at: str) -> None:
        super().__init__(
            f"Another run is already in progress (run={held_by}, since {acquired_at})."
        )
        self.held_by = held_by
        self.acquired_at = acquired_at
