from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from podlisten.config import PodcastSource
from podlisten.dependencies import reset_cached_dependencies
from podlisten.repositories.database import Database
from podlisten.repositories.episode_repository import EpisodeRepository
from podlisten.services.credentials import SourceCredential
from tests.fakes import FakeTranscriptSource


@pytest.fixture(autouse=True)
def _isolated_environment(  # pyright: ignore[reportUnusedFunction]
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    for name in (
        "PODLISTEN_SOURCE_AUTH_TOKEN",
        "PODLISTEN_DATA_DIR",
        "PODLISTEN_DB_PATH",
        "PODLISTEN_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_cached_dependencies()
    yield
    reset_cached_dependencies()


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "podcasts.db")
    db.initialize()
    return db


@pytest.fixture
def repository(database: Database) -> EpisodeRepository:
    return EpisodeRepository(database)


@pytest.fixture
def podcast() -> PodcastSource:
    return PodcastSource(
        id="deep-dive",
        name="Deep Dive",
        feed_url="https://feeds.example.com/deep-dive.xml",
        catalog_series_id="4411",
    )


@pytest.fixture
def credential() -> SourceCredential:
    return SourceCredential(token="test-token", origin="test", user_id="user-7")


@pytest.fixture
def source() -> FakeTranscriptSource:
    return FakeTranscriptSource()
