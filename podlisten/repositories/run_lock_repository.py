from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from podlisten.repositories.common import parse_utc_timestamp, utc_now, utc_now_iso
from podlisten.repositories.database import Database

LOGGER = logging.getLogger("podcast_listener.run_lock")

ENGINE_LOCK_NAME = "episode-mutation"


@dataclass(frozen=True)
class RunLockHolder:
    holder: str
    run_kind: str
    acquired_at: datetime | None


@dataclass(frozen=True)
class RunLockAttempt:
    acquired: bool
    current: RunLockHolder | None
    replaced_stale: bool = False


class RunLockRepository:
    """One mutation lock over the episode set, stored next to the episodes.

    A holder older than `stale_after_seconds` is assumed to have crashed and
    is replaced by the next caller.
    """

    def __init__(self, db: Database, *, stale_after_seconds: float) -> None:
        self._db = db
        self._stale_after_seconds = stale_after_seconds

    def try_acquire(
        self,
        *,
        holder: str,
        run_kind: str,
        name: str = ENGINE_LOCK_NAME,
    ) -> RunLockAttempt:
        with self._db.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder, run_kind, acquired_at FROM run_locks WHERE name = ?",
                (name,),
            ).fetchone()

            replaced_stale = False
            if row is not None:
                current = RunLockHolder(
                    holder=str(row["holder"]),
                    run_kind=str(row["run_kind"]),
                    acquired_at=parse_utc_timestamp(row["acquired_at"]),
                )
                if not self._is_stale(current):
                    return RunLockAttempt(acquired=False, current=current)
                LOGGER.warning(
                    "run lock abandoned; replacing holder=%s run_kind=%s acquired_at=%s",
                    current.holder,
                    current.run_kind,
                    row["acquired_at"],
                )
                replaced_stale = True

            now_iso = utc_now_iso()
            conn.execute(
                """
                INSERT INTO run_locks (name, holder, run_kind, acquired_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    holder = excluded.holder,
                    run_kind = excluded.run_kind,
                    acquired_at = excluded.acquired_at
                """,
                (name, holder, run_kind, now_iso),
            )
        return RunLockAttempt(
            acquired=True,
            current=RunLockHolder(
                holder=holder,
                run_kind=run_kind,
                acquired_at=parse_utc_timestamp(now_iso),
            ),
            replaced_stale=replaced_stale,
        )

    def release(self, *, holder: str, name: str = ENGINE_LOCK_NAME) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM run_locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
            released = cursor.rowcount > 0
        if not released:
            LOGGER.warning("run lock release skipped; not held holder=%s", holder)
        return released

    def current_holder(self, name: str = ENGINE_LOCK_NAME) -> RunLockHolder | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT holder, run_kind, acquired_at FROM run_locks WHERE name = ?",
                (name,),
            ).fetchone()
        if row is None:
            return None
        return RunLockHolder(
            holder=str(row["holder"]),
            run_kind=str(row["run_kind"]),
            acquired_at=parse_utc_timestamp(row["acquired_at"]),
        )

    def _is_stale(self, current: RunLockHolder) -> bool:
        if current.acquired_at is None:
            return True
        age_seconds = (utc_now() - current.acquired_at).total_seconds()
        return age_seconds >= self._stale_after_seconds
