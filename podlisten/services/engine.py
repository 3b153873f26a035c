from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

from podlisten.config import PodcastSource
from podlisten.errors import ConfigurationError, RunInProgressError
from podlisten.logging_config import bound_run_context
from podlisten.models.results import EnrichmentResult, RequestTranscriptsResult, SyncResult
from podlisten.repositories.episode_repository import EpisodeRepository
from podlisten.repositories.run_lock_repository import RunLockRepository
from podlisten.services.cancellation import CancellationToken
from podlisten.services.credentials import CredentialProvider
from podlisten.services.enrichment_queue import EnrichmentOptions, EnrichmentQueue
from podlisten.services.feed_service import FeedService
from podlisten.services.progress import ProgressStream
from podlisten.services.request_queue import RequestQueueOptions, request_and_poll_transcripts
from podlisten.services.sync_service import SyncOptions, SyncService
from podlisten.services.transcript_source import TranscriptSource
from podlisten.telemetry import TelemetryClient

LOGGER = logging.getLogger("podcast_listener.engine")


class TranscriptEngine:
    """Entry point for sync, request and enrichment runs.

    Only one run mutates the episode set at a time: each run takes the
    shared lock in SQLite first and raises `RunInProgressError` when another
    holder is active. `stop()` cancels whichever run is in flight.
    """

    def __init__(
        self,
        *,
        repository: EpisodeRepository,
        run_locks: RunLockRepository,
        source: TranscriptSource,
        feed_service: FeedService,
        credentials: CredentialProvider,
        podcasts: Sequence[PodcastSource],
        sync_options: SyncOptions,
        progress: ProgressStream | None = None,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._repository = repository
        self._run_locks = run_locks
        self._source = source
        self._feed_service = feed_service
        self._credentials = credentials
        self._podcasts = tuple(podcasts)
        self._sync_options = sync_options
        self.progress = progress or ProgressStream()
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._cancellation: CancellationToken | None = None

    @property
    def podcasts(self) -> tuple[PodcastSource, ...]:
        return self._podcasts

    def stop(self) -> None:
        if self._cancellation is not None:
            self._cancellation.cancel()

    async def run_sync(self, podcast_ids: Sequence[str] | None = None) -> list[SyncResult]:
        podcasts = self._select_podcasts(podcast_ids)
        async with self._locked_run("sync") as run:
            service = SyncService(
                repository=self._repository,
                source=self._source,
                feed_service=self._feed_service,
                credentials=self._credentials,
                progress=self.progress,
                options=self._sync_options,
                cancellation=run.cancellation,
            )
            results = await service.sync_all(podcasts)
            run.record(
                podcasts=len(results),
                new_episodes=sum(result.new_episodes for result in results),
                acquired=sum(result.new_transcripts for result in results),
                errors=sum(len(result.errors) for result in results),
            )
            return results

    async def run_requests(self, options: RequestQueueOptions) -> RequestTranscriptsResult:
        run_kind = "retry" if options.retry_mode else "request"
        async with self._locked_run(run_kind) as run:
            result = await request_and_poll_transcripts(
                self._repository,
                self._source,
                self._credentials,
                options,
                self.progress,
                cancellation=run.cancellation,
            )
            run.record(
                requested=result.requested,
                downloaded=result.downloaded,
                failed=result.failed,
                still_processing=result.still_processing,
                errors=len(result.errors),
            )
            return result

    async def run_enrichment(self, options: EnrichmentOptions) -> EnrichmentResult:
        async with self._locked_run("enrich") as run:
            queue = EnrichmentQueue(
                self._repository,
                self._source,
                options,
                self.progress,
                cancellation=run.cancellation,
            )
            result = await queue.run()
            run.record(
                enriched=result.enriched,
                skipped=result.skipped,
                failed=result.failed,
            )
            return result

    def _select_podcasts(self, podcast_ids: Sequence[str] | None) -> list[PodcastSource]:
        if not podcast_ids:
            return list(self._podcasts)
        known = {podcast.id: podcast for podcast in self._podcasts}
        unknown = [podcast_id for podcast_id in podcast_ids if podcast_id not in known]
        if unknown:
            raise ConfigurationError(f"Unknown podcast ids: {', '.join(sorted(unknown))}")
        return [known[podcast_id] for podcast_id in dict.fromkeys(podcast_ids)]

    @asynccontextmanager
    async def _locked_run(self, run_kind: str) -> AsyncIterator[_RunHandle]:
        run_id = uuid.uuid4().hex[:12]
        attempt = self._run_locks.try_acquire(holder=run_id, run_kind=run_kind)
        if not attempt.acquired:
            current = attempt.current
            held_by = current.holder if current is not None else "unknown"
            acquired_at = (
                current.acquired_at.isoformat()
                if current is not None and current.acquired_at is not None
                else "unknown"
            )
            self._telemetry.emit(
                "engine.run.rejected",
                run_kind=run_kind,
                held_by=held_by,
                held_run_kind=current.run_kind if current is not None else None,
            )
            LOGGER.warning(
                "engine run rejected; lock held run_kind=%s held_by=%s since=%s",
                run_kind,
                held_by,
                acquired_at,
            )
            raise RunInProgressError(held_by=held_by, acquired_at=acquired_at)

        handle = _RunHandle(run_id=run_id, run_kind=run_kind)
        self._cancellation = handle.cancellation
        started = time.monotonic()
        outcome = "error"
        with bound_run_context(run_id=run_id, run_kind=run_kind):
            LOGGER.info(
                "engine run start run_kind=%s replaced_stale_lock=%s",
                run_kind,
                attempt.replaced_stale,
            )
            self._telemetry.emit("engine.run.start", run_id=run_id, run_kind=run_kind)
            try:
                yield handle
                outcome = "stopped" if handle.cancellation.cancelled else "ok"
            finally:
                self._cancellation = None
                self._run_locks.release(holder=run_id)
                duration_ms = int((time.monotonic() - started) * 1000)
                self._telemetry.emit(
                    "engine.run.finish",
                    run_id=run_id,
                    run_kind=run_kind,
                    outcome=outcome,
                    duration_ms=duration_ms,
                    **handle.counts,
                )
                LOGGER.info(
                    "engine run finish run_kind=%s outcome=%s duration_ms=%s",
                    run_kind,
                    outcome,
                    duration_ms,
                )


class _RunHandle:
    def __init__(self, *, run_id: str, run_kind: str) -> None:
        self.run_id = run_id
        self.run_kind = run_kind
        self.cancellation = CancellationToken()
        self.counts: dict[str, int] = {}

    def record(self, **counts: int) -> None:
        self.counts.update(counts)
