from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS podcasts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    feed_url TEXT NOT NULL,
    catalog_series_id TEXT NULL,
    catalog_page_url TEXT NULL,
    tags_json TEXT NOT NULL DEFAULT '[]',
    last_synced_at TEXT NULL
);

CREATE TABLE IF NOT EXISTS episodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    podcast_id TEXT NOT NULL REFERENCES podcasts(id),
    guid TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    published_at TEXT NULL,
    duration_seconds INTEGER NULL,
    audio_url TEXT NULL,
    episode_url TEXT NULL,
    transcript_url TEXT NULL,
    transcript TEXT NULL,
    transcript_origin TEXT NULL,
    transcript_data_json TEXT NULL,
    source_item_id INTEGER NULL,
    source_url TEXT NULL,
    source_status TEXT NULL,
    source_transcription_id TEXT NULL,
    status_checked_at TEXT NULL,
    exclusion_tag TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (podcast_id, guid)
);

CREATE INDEX IF NOT EXISTS idx_episodes_podcast_published
ON episodes(podcast_id, published_at DESC);

CREATE INDEX IF NOT EXISTS idx_episodes_source_status
ON episodes(source_status, status_checked_at);

CREATE TABLE IF NOT EXISTS run_locks (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    run_kind TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
