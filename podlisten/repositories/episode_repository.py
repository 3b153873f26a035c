from __future__ import annotations

import json
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from podlisten.config import PodcastSource
from podlisten.models.episodes import (
    Episode,
    FeedEpisode,
    StatusUpdate,
    TranscriptWord,
    normalize_status,
)
from podlisten.repositories.common import (
    parse_utc_timestamp,
    utc_iso_seconds_ago,
    utc_now_iso,
)
from podlisten.repositories.database import Database

_EPISODE_COLUMNS = """
    id,
    podcast_id,
    guid,
    title,
    description,
    published_at,
    duration_seconds,
    audio_url,
    episode_url,
    transcript_url,
    transcript,
    transcript_origin,
    transcript_data_json IS NOT NULL AS has_transcript_data,
    source_item_id,
    source_url,
    source_status,
    source_transcription_id,
    status_checked_at,
    exclusion_tag
"""
_METADATA_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "published_at",
    "duration_seconds",
    "audio_url",
    "episode_url",
)


@dataclass(frozen=True)
class UpsertCounts:
    new_count: int
    updated_count: int


class EpisodeRepository:
    """Episode store shared by every engine phase.

    Writes are single-row upserts or targeted column updates keyed by
    `(podcast_id, guid)` or the row id, so concurrent tasks working on
    different episodes never contend for the same row.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_podcast(self, podcast: PodcastSource) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO podcasts
                    (id, name, feed_url, catalog_series_id, catalog_page_url, tags_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    feed_url = excluded.feed_url,
                    catalog_series_id = excluded.catalog_series_id,
                    catalog_page_url = excluded.catalog_page_url,
                    tags_json = excluded.tags_json
                """,
                (
                    podcast.id,
                    podcast.name,
                    podcast.feed_url,
                    podcast.catalog_series_id,
                    podcast.catalog_page_url,
                    json.dumps(list(podcast.tags)),
                ),
            )

    def mark_synced(self, podcast_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE podcasts SET last_synced_at = ? WHERE id = ?",
                (utc_now_iso(), podcast_id),
            )

    def get_last_synced_at(self, podcast_id: str) -> str | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT last_synced_at FROM podcasts WHERE id = ?",
                (podcast_id,),
            ).fetchone()
        if row is None:
            return None
        return _optional_text(row["last_synced_at"])

    def upsert_episodes(self, episodes: Sequence[FeedEpisode]) -> UpsertCounts:
        """Insert new episodes and refresh metadata of known ones.

        Stored transcripts and catalog matches are merged, never erased: a
        feed item without them leaves the existing values in place.
        """
        new_count = 0
        updated_count = 0
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            for episode in episodes:
                existing = conn.execute(
                    """
                    SELECT
                        title, description, published_at,
                        duration_seconds, audio_url, episode_url
                    FROM episodes
                    WHERE podcast_id = ? AND guid = ?
                    """,
                    (episode.podcast_id, episode.guid),
                ).fetchone()
                if existing is None:
                    _insert_episode(conn, episode, now_iso)
                    new_count += 1
                    continue

                if _metadata_changed(existing, episode):
                    updated_count += 1
                conn.execute(
                    """
                    UPDATE episodes SET
                        title = ?,
                        description = ?,
                        published_at = COALESCE(?, published_at),
                        duration_seconds = COALESCE(?, duration_seconds),
                        audio_url = COALESCE(?, audio_url),
                        episode_url = COALESCE(?, episode_url),
                        transcript_url = COALESCE(?, transcript_url),
                        transcript = COALESCE(transcript, ?),
                        transcript_origin = COALESCE(transcript_origin, ?),
                        source_item_id = COALESCE(?, source_item_id),
                        source_url = COALESCE(?, source_url),
                        updated_at = ?
                    WHERE podcast_id = ? AND guid = ?
                    """,
                    (
                        episode.title,
                        episode.description,
                        episode.published_at,
                        episode.duration_seconds,
                        episode.audio_url,
                        episode.episode_url,
                        episode.transcript_url,
                        episode.transcript,
                        episode.transcript_origin if episode.transcript else None,
                        episode.source_item_id,
                        episode.source_url,
                        now_iso,
                        episode.podcast_id,
                        episode.guid,
                    ),
                )
        return UpsertCounts(new_count=new_count, updated_count=updated_count)

    def set_source_info(
        self,
        *,
        podcast_id: str,
        guid: str,
        source_item_id: int,
        source_url: str,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE episodes
                SET source_item_id = ?, source_url = ?, updated_at = ?
                WHERE podcast_id = ? AND guid = ?
                """,
                (source_item_id, source_url, utc_now_iso(), podcast_id, guid),
            )

    def get_episode(self, podcast_id: str, guid: str) -> Episode | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_EPISODE_COLUMNS} FROM episodes WHERE podcast_id = ? AND guid = ?",
                (podcast_id, guid),
            ).fetchone()
        return None if row is None else _row_to_episode(row)

    def list_episodes(self, podcast_id: str, *, limit: int = 100) -> list[Episode]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes
                WHERE podcast_id = ?
                ORDER BY published_at DESC, id DESC
                LIMIT ?
                """,
                (podcast_id, max(1, limit)),
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_episodes_missing_transcript(
        self,
        podcast_id: str,
        *,
        limit: int,
        cooldown_seconds: float,
    ) -> list[Episode]:
        cutoff_iso = utc_iso_seconds_ago(cooldown_seconds)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes
                WHERE podcast_id = ?
                  AND transcript IS NULL
                  AND exclusion_tag IS NULL
                  AND (status_checked_at IS NULL OR status_checked_at < ?)
                ORDER BY published_at DESC, id DESC
                LIMIT ?
                """,
                (podcast_id, cutoff_iso, max(1, limit)),
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_episodes_needing_request(
        self,
        podcast_ids: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        filter_sql, params = _podcast_filter(podcast_ids)
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT ?"
            params.append(max(1, limit))
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes
                WHERE transcript IS NULL
                  AND exclusion_tag IS NULL
                  AND source_item_id IS NOT NULL
                  AND (source_status IS NULL OR source_status = 'NotStarted')
                  {filter_sql}
                ORDER BY published_at DESC, id DESC
                {limit_sql}
                """,
                params,
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_episodes_in_processing(
        self,
        podcast_ids: Sequence[str] | None = None,
    ) -> list[Episode]:
        filter_sql, params = _podcast_filter(podcast_ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes
                WHERE transcript IS NULL
                  AND exclusion_tag IS NULL
                  AND source_item_id IS NOT NULL
                  AND source_status IN ('Requested', 'Running', 'Processing', 'Done')
                  {filter_sql}
                ORDER BY published_at DESC, id DESC
                """,
                params,
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_episodes_needing_enrichment(
        self,
        podcast_ids: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        filter_sql, params = _podcast_filter(podcast_ids)
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT ?"
            params.append(max(1, limit))
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes
                WHERE transcript IS NOT NULL
                  AND transcript_data_json IS NULL
                  AND source_item_id IS NOT NULL
                  {filter_sql}
                ORDER BY published_at DESC, id DESC
                {limit_sql}
                """,
                params,
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def set_statuses(self, updates: Sequence[StatusUpdate]) -> None:
        if not updates:
            return
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.executemany(
                """
                UPDATE episodes
                SET source_status = ?,
                    source_transcription_id = ?,
                    status_checked_at = ?,
                    updated_at = ?
                WHERE podcast_id = ? AND guid = ?
                """,
                [
                    (
                        update.status,
                        update.transcription_id,
                        now_iso,
                        now_iso,
                        update.podcast_id,
                        update.guid,
                    )
                    for update in updates
                ],
            )

    def set_transcript(
        self,
        podcast_id: str,
        guid: str,
        text: str,
        origin: str,
        words: Sequence[TranscriptWord] | None = None,
    ) -> None:
        words_json = None if not words else _encode_words(words)
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE episodes
                SET transcript = ?,
                    transcript_origin = ?,
                    transcript_data_json = COALESCE(?, transcript_data_json),
                    updated_at = ?
                WHERE podcast_id = ? AND guid = ?
                """,
                (text, origin, words_json, utc_now_iso(), podcast_id, guid),
            )

    def set_transcript_data(self, episode_id: int, words: Sequence[TranscriptWord]) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE episodes
                SET transcript_data_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (_encode_words(words), utc_now_iso(), episode_id),
            )

    def get_transcript_words(self, episode_id: int) -> list[TranscriptWord]:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT transcript_data_json FROM episodes WHERE id = ?",
                (episode_id,),
            ).fetchone()
        if row is None:
            return []
        return _decode_words(row["transcript_data_json"])

    def set_exclusion_tag(self, podcast_id: str, guid: str, tag: str | None) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE episodes
                SET exclusion_tag = ?, updated_at = ?
                WHERE podcast_id = ? AND guid = ?
                """,
                (tag, utc_now_iso(), podcast_id, guid),
            )

    def count_by_status(self, podcast_id: str | None = None) -> dict[str, int]:
        filter_sql, params = _podcast_filter(None if podcast_id is None else [podcast_id])
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT
                    CASE
                        WHEN transcript IS NOT NULL THEN 'Transcribed'
                        WHEN exclusion_tag IS NOT NULL THEN 'Excluded'
                        ELSE COALESCE(source_status, 'Unchecked')
                    END AS bucket,
                    COUNT(*) AS total
                FROM episodes
                WHERE 1 = 1 {filter_sql}
                GROUP BY bucket
                """,
                params,
            ).fetchall()
        return {str(row["bucket"]): int(row["total"]) for row in rows}


def _insert_episode(conn: sqlite3.Connection, episode: FeedEpisode, now_iso: str) -> None:
    conn.execute(
        """
        INSERT INTO episodes
        (
            podcast_id,
            guid,
            title,
            description,
            published_at,
            duration_seconds,
            audio_url,
            episode_url,
            transcript_url,
            transcript,
            transcript_origin,
            source_item_id,
            source_url,
            created_at,
            updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            episode.podcast_id,
            episode.guid,
            episode.title,
            episode.description,
            episode.published_at,
            episode.duration_seconds,
            episode.audio_url,
            episode.episode_url,
            episode.transcript_url,
            episode.transcript,
            episode.transcript_origin if episode.transcript else None,
            episode.source_item_id,
            episode.source_url,
            now_iso,
            now_iso,
        ),
    )


def _metadata_changed(existing: sqlite3.Row, episode: FeedEpisode) -> bool:
    for field_name in _METADATA_FIELDS:
        incoming = getattr(episode, field_name)
        if field_name not in {"title", "description"} and incoming is None:
            continue
        if existing[field_name] != incoming:
            return True
    return False


def _podcast_filter(podcast_ids: Sequence[str] | None) -> tuple[str, list[Any]]:
    if not podcast_ids:
        return "", []
    placeholders = ", ".join("?" for _ in podcast_ids)
    return f"AND podcast_id IN ({placeholders})", list(podcast_ids)


def _row_to_episode(row: sqlite3.Row) -> Episode:
    raw_status = row["source_status"]
    return Episode(
        id=int(row["id"]),
        podcast_id=str(row["podcast_id"]),
        guid=str(row["guid"]),
        title=str(row["title"]),
        description=str(row["description"] or ""),
        published_at=_optional_text(row["published_at"]),
        duration_seconds=_optional_int(row["duration_seconds"]),
        audio_url=_optional_text(row["audio_url"]),
        episode_url=_optional_text(row["episode_url"]),
        transcript=_optional_text(row["transcript"]),
        transcript_origin=_optional_text(row["transcript_origin"]),
        has_transcript_data=bool(row["has_transcript_data"]),
        source_item_id=_optional_int(row["source_item_id"]),
        source_url=_optional_text(row["source_url"]),
        source_status=None if raw_status is None else normalize_status(raw_status),
        status_checked_at=parse_utc_timestamp(row["status_checked_at"]),
        exclusion_tag=_optional_text(row["exclusion_tag"]),
        transcript_url=_optional_text(row["transcript_url"]),
        source_transcription_id=_optional_text(row["source_transcription_id"]),
    )


def _encode_words(words: Sequence[TranscriptWord]) -> str:
    return json.dumps([word.to_dict() for word in words], separators=(",", ":"))


def _decode_words(raw_value: object) -> list[TranscriptWord]:
    if not isinstance(raw_value, str) or not raw_value:
        return []
    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [TranscriptWord.from_dict(item) for item in parsed if isinstance(item, dict)]


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except ValueError:
        return None
