from __future__ import annotations

from functools import lru_cache

from podlisten.config import AppSettings, PodcastSource, load_podcast_config, load_settings
from podlisten.repositories.database import Database
from podlisten.repositories.episode_repository import EpisodeRepository
from podlisten.repositories.run_lock_repository import RunLockRepository
from podlisten.services.credentials import SettingsCredentialProvider
from podlisten.services.engine import TranscriptEngine
from podlisten.services.feed_service import FeedService
from podlisten.services.sync_service import SyncOptions
from podlisten.services.transcript_source import TranscriptSourceClient
from podlisten.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_podcasts() -> tuple[PodcastSource, ...]:
    return tuple(load_podcast_config(get_settings().podcasts_path))


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_transcript_source() -> TranscriptSourceClient:
    settings = get_settings()
    return TranscriptSourceClient(
        base_url=settings.source_base_url,
        app_base_url=settings.source_app_base_url,
        user_agent=settings.source_user_agent,
        timeout_seconds=settings.source_http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_engine() -> TranscriptEngine:
    settings = get_settings()
    database = get_database()
    return TranscriptEngine(
        repository=EpisodeRepository(database),
        run_locks=RunLockRepository(
            database,
            stale_after_seconds=settings.run_lock_stale_seconds,
        ),
        source=get_transcript_source(),
        feed_service=FeedService(
            user_agent=settings.source_user_agent,
            timeout_seconds=settings.source_http_timeout_seconds,
        ),
        credentials=SettingsCredentialProvider(settings),
        podcasts=get_podcasts(),
        sync_options=SyncOptions.from_settings(settings),
        telemetry=get_telemetry(),
    )


def reset_cached_dependencies() -> None:
    get_engine.cache_clear()
    get_transcript_source.cache_clear()
    get_telemetry.cache_clear()
    get_podcasts.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
