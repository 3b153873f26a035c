from __future__ import annotations

import json
from pathlib import Path

import pytest

from podlisten.config import load_settings
from podlisten.dependencies import (
    get_database,
    get_engine,
    get_settings,
    get_telemetry,
    reset_cached_dependencies,
)
from podlisten.services.enrichment_queue import EnrichmentOptions
from podlisten.services.request_queue import RequestQueueOptions
from podlisten.services.sync_service import SyncOptions


def test_get_engine_wires_settings_and_podcast_config(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    data_dir = tmp_path / "runtime"
    data_dir.mkdir()
    (data_dir / "podcasts.json").write_text(
        json.dumps([{"id": "deep-dive", "name": "Deep Dive", "feedUrl": "https://f"}]),
        encoding="utf-8",
    )
    monkeypatch.setenv("PODLISTEN_DATA_DIR", str(data_dir))
    monkeypatch.setenv("PODLISTEN_TELEMETRY_SINK", "none")

    engine = get_engine()

    assert [podcast.id for podcast in engine.podcasts] == ["deep-dive"]
    assert get_database().path == (data_dir / "podcasts.db").resolve()
    assert (data_dir / "podcasts.db").exists()
    assert get_telemetry().enabled is False
    assert get_engine() is engine


def test_reset_cached_dependencies_rereads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PODLISTEN_MAX_EPISODES_PER_FEED", "5")
    assert get_settings().max_episodes_per_feed == 5

    monkeypatch.setenv("PODLISTEN_MAX_EPISODES_PER_FEED", "9")
    assert get_settings().max_episodes_per_feed == 5

    reset_cached_dependencies()
    assert get_settings().max_episodes_per_feed == 9


def test_options_follow_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PODLISTEN_SYNC_CONCURRENCY", "2")
    monkeypatch.setenv("PODLISTEN_REQUEST_STAGGER_SECONDS", "0.05")
    monkeypatch.setenv("PODLISTEN_MAX_REQUESTS", "10")
    monkeypatch.setenv("PODLISTEN_ENRICHMENT_DELAY_SECONDS", "0")
    settings = load_settings()

    sync = SyncOptions.from_settings(settings)
    requests = RequestQueueOptions.from_settings(settings, podcast_ids=["deep-dive"])
    capped = RequestQueueOptions.from_settings(settings, max_requests=3, retry_mode=True)
    enrichment = EnrichmentOptions.from_settings(settings, limit=4)

    assert sync.concurrency == 2
    assert requests.stagger_seconds == 0.05
    assert requests.max_requests == 10
    assert requests.podcast_ids == ("deep-dive",)
    assert (capped.max_requests, capped.retry_mode) == (3, True)
    assert (enrichment.delay_seconds, enrichment.limit) == (0, 4)
