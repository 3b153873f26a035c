from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from podlisten.config import AppSettings
from podlisten.models.episodes import Episode
from podlisten.models.results import EnrichmentResult, EnrichmentStatus
from podlisten.repositories.episode_repository import EpisodeRepository
from podlisten.services.cancellation import CancellationToken
from podlisten.services.progress import ProgressStream
from podlisten.services.transcript_source import TranscriptSource

LOGGER = logging.getLogger("podcast_listener.enrichment")

_Outcome = Literal["enriched", "skipped"]


@dataclass(frozen=True)
class EnrichmentOptions:
    concurrency: int = 5
    delay_seconds: float = 0.3
    limit: int | None = None
    podcast_ids: tuple[str, ...] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        podcast_ids: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> EnrichmentOptions:
        return cls(
            concurrency=settings.enrichment_concurrency,
            delay_seconds=settings.enrichment_delay_seconds,
            limit=limit,
            podcast_ids=tuple(podcast_ids) if podcast_ids else None,
        )


class EnrichmentQueue:
    """Backfills word-level timing for episodes that only have plain text."""

    def __init__(
        self,
        repository: EpisodeRepository,
        client: TranscriptSource,
        options: EnrichmentOptions,
        progress: ProgressStream,
        *,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self._repository = repository
        self._client = client
        self._options = options
        self._progress = progress
        self._cancellation = cancellation or CancellationToken()
        self._pending: deque[Episode] = deque()
        self._result = EnrichmentResult()
        self._processed = 0
        self._active = 0
        self._total = 0

    def stop(self) -> None:
        LOGGER.info("enrichment stop requested pending=%s", len(self._pending))
        self._cancellation.cancel()
        self._pending.clear()

    def status(self) -> EnrichmentStatus:
        return EnrichmentStatus(
            queued=len(self._pending),
            active=self._active,
            enriched=self._result.enriched,
            failed=self._result.failed,
            skipped=self._result.skipped,
            total=self._total,
        )

    async def run(self) -> EnrichmentResult:
        episodes = self._repository.get_episodes_needing_enrichment(
            self._options.podcast_ids,
            self._options.limit,
        )
        self._pending.extend(episodes)
        self._total = len(episodes)
        if not episodes:
            self._progress.phase_complete("enrich", message="No transcripts need enrichment")
            return self._result

        self._progress.phase_start(
            "enrich",
            total=self._total,
            message=f"Enriching {self._total} transcripts with word timing",
        )
        workers = min(max(1, self._options.concurrency), self._total)
        await asyncio.gather(*(self._worker() for _ in range(workers)))

        result = self._result
        LOGGER.info(
            "enrichment finished enriched=%s skipped=%s failed=%s",
            result.enriched,
            result.skipped,
            result.failed,
        )
        self._progress.phase_complete(
            "enrich",
            message=(
                f"{result.enriched} enriched, {result.skipped} skipped, {result.failed} failed"
            ),
        )
        return result

    async def _worker(self) -> None:
        while self._pending and not self._cancellation.cancelled:
            episode = self._pending.popleft()
            self._active += 1
            try:
                outcome = await self._enrich(episode)
            except Exception as exc:
                LOGGER.warning(
                    "enrichment failed episode_id=%s error=%s",
                    episode.id,
                    exc,
                )
                self._result.failed += 1
                self._result.errors.append(f'Enrichment failed for "{episode.title}": {exc}')
            else:
                if outcome == "enriched":
                    self._result.enriched += 1
                else:
                    self._result.skipped += 1
            finally:
                self._active -= 1
            self._processed += 1
            self._progress.phase_progress("enrich", self._processed, self._total)
            if self._pending and self._options.delay_seconds > 0:
                await self._cancellation.sleep(self._options.delay_seconds)

    async def _enrich(self, episode: Episode) -> _Outcome:
        if episode.source_item_id is None:
            return "skipped"
        status = await self._client.fetch_status(episode.source_item_id)
        if not status.is_done or status.transcription_id is None:
            LOGGER.debug(
                "enrichment skipped episode_id=%s status=%s",
                episode.id,
                status.status,
            )
            return "skipped"
        payload = await self._client.fetch_text(episode.source_item_id, status.transcription_id)
        if payload is None or not payload.words:
            return "skipped"
        self._repository.set_transcript_data(episode.id, payload.words)
        return "enriched"
