from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass

from podlisten.config import AppSettings, PodcastSource
from podlisten.models.episodes import (
    CatalogEpisode,
    Episode,
    FeedEpisode,
    SourceStatus,
    StatusUpdate,
)
from podlisten.models.progress_contracts import (
    PodcastCompleteEvent,
    PodcastStartEvent,
    SyncCompleteEvent,
    SyncErrorEvent,
    SyncStartEvent,
)
from podlisten.models.results import SyncResult
from podlisten.repositories.episode_repository import EpisodeRepository
from podlisten.services.cancellation import CancellationToken
from podlisten.services.concurrency import pooled_map
from podlisten.services.credentials import CredentialProvider, SourceCredential
from podlisten.services.fallback_adapters import (
    CatalogLookupAdapter,
    CompositeTranscriptAdapter,
    FeedTranscriptAdapter,
    HtmlScrapeAdapter,
    TranscriptAdapter,
    normalize_title,
)
from podlisten.services.feed_service import FeedService, ParsedFeed
from podlisten.services.progress import ProgressStream
from podlisten.services.transcript_source import TranscriptSource

LOGGER = logging.getLogger("podcast_listener.sync")

CATALOG_ORIGIN = "catalog-api"


@dataclass(frozen=True)
class SyncOptions:
    max_episodes_per_feed: int = 50
    max_transcript_fetches: int = 50
    fetch_transcripts: bool = True
    fallback_delay_seconds: float = 1.0
    concurrency: int = 5
    stagger_seconds: float = 0.2
    status_cooldown_seconds: float = 86_400

    @classmethod
    def from_settings(cls, settings: AppSettings) -> SyncOptions:
        return cls(
            max_episodes_per_feed=settings.max_episodes_per_feed,
            max_transcript_fetches=settings.max_transcript_fetches,
            fetch_transcripts=settings.fetch_transcripts,
            fallback_delay_seconds=settings.fallback_delay_seconds,
            concurrency=settings.sync_concurrency,
            stagger_seconds=settings.sync_stagger_seconds,
            status_cooldown_seconds=settings.status_cooldown_seconds,
        )


@dataclass(frozen=True)
class _CatalogIndex:
    by_guid: dict[str, int]
    by_title: dict[str, int]

    @classmethod
    def empty(cls) -> _CatalogIndex:
        return cls(by_guid={}, by_title={})

    @property
    def is_empty(self) -> bool:
        return not self.by_guid and not self.by_title


@dataclass(frozen=True)
class _CheckedStatus:
    episode: Episode
    status: SourceStatus


class SyncService:
    """Feed-to-transcript sync for tracked podcasts.

    Per podcast the run goes through four phases: feed prefetch and catalog
    matching, pooled status checks, pooled downloads of ready transcripts,
    then request/reset of unstarted or bogus-done items plus a sequential
    fallback adapter chain for episodes the catalog does not know. Failures
    are recorded on the `SyncResult`; the coroutine itself does not raise.
    A cancelled token ends the run before the next podcast or fallback lookup.
    """

    def __init__(
        self,
        *,
        repository: EpisodeRepository,
        source: TranscriptSource,
        feed_service: FeedService,
        credentials: CredentialProvider,
        progress: ProgressStream,
        options: SyncOptions,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self._repository = repository
        self._source = source
        self._feed_service = feed_service
        self._credentials = credentials
        self._progress = progress
        self._options = options
        self._cancellation = cancellation or CancellationToken()

    async def sync_all(self, podcasts: Sequence[PodcastSource]) -> list[SyncResult]:
        started = time.monotonic()
        self._progress.publish(SyncStartEvent(total_podcasts=len(podcasts)))

        results: list[SyncResult] = []
        for index, podcast in enumerate(podcasts):
            if self._cancellation.cancelled:
                LOGGER.info("sync stopped remaining=%s", len(podcasts) - index)
                break
            self._progress.publish(
                PodcastStartEvent(
                    podcast_id=podcast.id,
                    podcast_name=podcast.name,
                    index=index,
                    total=len(podcasts),
                )
            )
            result = await self.sync_podcast(podcast)
            results.append(result)
            self._progress.publish(
                PodcastCompleteEvent(
                    podcast_id=podcast.id,
                    new_episodes=result.new_episodes,
                    new_transcripts=result.new_transcripts,
                    error_count=len(result.errors),
                )
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        self._progress.publish(
            SyncCompleteEvent(
                total_new_episodes=sum(result.new_episodes for result in results),
                total_new_transcripts=sum(result.new_transcripts for result in results),
                total_errors=sum(len(result.errors) for result in results),
                duration_ms=duration_ms,
            )
        )
        LOGGER.info(
            "sync finished podcasts=%s duration_ms=%s",
            len(podcasts),
            duration_ms,
        )
        return results

    async def sync_podcast(self, podcast: PodcastSource) -> SyncResult:
        result = SyncResult(podcast_id=podcast.id)
        try:
            await self._sync_podcast(podcast, result)
        except Exception as exc:
            message = f"Sync failed for {podcast.name}: {exc}"
            LOGGER.exception("sync podcast failed podcast_id=%s", podcast.id)
            result.errors.append(message)
            self._progress.publish(SyncErrorEvent(podcast_id=podcast.id, message=message))
        return result

    async def _sync_podcast(self, podcast: PodcastSource, result: SyncResult) -> None:
        LOGGER.info("sync podcast start podcast_id=%s name=%s", podcast.id, podcast.name)
        self._repository.upsert_podcast(podcast)

        feed = await self._prefetch(podcast, result)
        if feed is None:
            return
        parsed_feed, catalog = feed

        if not self._options.fetch_transcripts:
            self._repository.mark_synced(podcast.id)
            LOGGER.info("sync podcast done; transcript fetching disabled podcast_id=%s", podcast.id)
            return

        candidates = self._repository.get_episodes_missing_transcript(
            podcast.id,
            limit=self._options.max_transcript_fetches,
            cooldown_seconds=self._options.status_cooldown_seconds,
        )
        with_source = [episode for episode in candidates if episode.source_item_id is not None]
        without_source = [episode for episode in candidates if episode.source_item_id is None]
        LOGGER.info(
            "sync candidates podcast_id=%s missing=%s with_source=%s without_source=%s",
            podcast.id,
            len(candidates),
            len(with_source),
            len(without_source),
        )

        checked = await self._check_statuses(podcast, with_source, result)
        bogus_done = await self._download_ready(podcast, checked, result)
        not_started = [item.episode for item in checked if item.status.status == "NotStarted"]
        await self._request_and_reset(podcast, not_started, bogus_done, result)
        await self._run_fallback(podcast, without_source, parsed_feed, catalog, result)

        self._repository.mark_synced(podcast.id)
        LOGGER.info(
            "sync podcast done podcast_id=%s new_transcripts=%s errors=%s",
            podcast.id,
            result.new_transcripts,
            len(result.errors),
        )

    async def _prefetch(
        self,
        podcast: PodcastSource,
        result: SyncResult,
    ) -> tuple[ParsedFeed, _CatalogIndex] | None:
        self._progress.phase_start("feed", podcast_id=podcast.id, message="Parsing RSS feed")
        try:
            parsed_feed = await self._feed_service.parse_feed(podcast)
        except Exception as exc:
            message = f"Failed to parse feed: {exc}"
            LOGGER.warning("sync feed failed podcast_id=%s error=%s", podcast.id, exc)
            result.errors.append(message)
            self._progress.publish(SyncErrorEvent(podcast_id=podcast.id, message=message))
            return None

        episodes = _newest(parsed_feed.episodes, self._options.max_episodes_per_feed)
        counts = self._repository.upsert_episodes(episodes)
        result.new_episodes = counts.new_count
        result.updated_episodes = counts.updated_count
        LOGGER.info(
            "sync feed parsed podcast_id=%s items=%s kept=%s new=%s updated=%s",
            podcast.id,
            len(parsed_feed.episodes),
            len(episodes),
            counts.new_count,
            counts.updated_count,
        )

        catalog = _CatalogIndex.empty()
        if podcast.catalog_series_id is not None:
            try:
                catalog = await self._match_catalog(podcast, episodes, result)
            except Exception as exc:
                message = f"Catalog prefetch failed: {exc}"
                LOGGER.warning(
                    "sync catalog prefetch failed podcast_id=%s error=%s",
                    podcast.id,
                    exc,
                )
                result.errors.append(message)

        self._progress.phase_complete(
            "feed",
            podcast_id=podcast.id,
            message=f"{result.new_episodes} new, {result.updated_episodes} updated episodes",
        )
        return parsed_feed, catalog

    async def _match_catalog(
        self,
        podcast: PodcastSource,
        episodes: Sequence[FeedEpisode],
        result: SyncResult,
    ) -> _CatalogIndex:
        assert podcast.catalog_series_id is not None
        catalog_episodes = await self._source.fetch_series_episodes(podcast.catalog_series_id)

        by_guid: dict[str, CatalogEpisode] = {}
        by_title: dict[str, CatalogEpisode] = {}
        for item in catalog_episodes:
            if item.guid:
                by_guid[item.guid] = item
            if item.title:
                by_title[normalize_title(item.title)] = item

        guid_matches = 0
        title_matches = 0
        for episode in episodes:
            match = by_guid.get(episode.guid)
            if match is not None:
                guid_matches += 1
            else:
                match = by_title.get(normalize_title(episode.title))
                if match is None:
                    continue
                title_matches += 1
            self._repository.set_source_info(
                podcast_id=podcast.id,
                guid=episode.guid,
                source_item_id=match.item_id,
                source_url=self._source.episode_url(match.item_id),
            )

        feed_guids = {episode.guid for episode in episodes}
        feed_titles = {normalize_title(episode.title) for episode in episodes}
        backfill = [
            FeedEpisode(
                podcast_id=podcast.id,
                guid=item.guid or f"catalog-{item.item_id}",
                title=item.title,
                description=item.description,
                published_at=item.uploaded_at,
                duration_seconds=item.duration_seconds,
                audio_url=item.audio_url,
                source_item_id=item.item_id,
                source_url=self._source.episode_url(item.item_id),
            )
            for item in catalog_episodes
            if not (item.guid and item.guid in feed_guids)
            and normalize_title(item.title) not in feed_titles
        ]
        if backfill:
            counts = self._repository.upsert_episodes(backfill)
            result.new_episodes += counts.new_count
        LOGGER.info(
            "sync catalog matched podcast_id=%s catalog=%s by_guid=%s by_title=%s backfilled=%s",
            podcast.id,
            len(catalog_episodes),
            guid_matches,
            title_matches,
            len(backfill),
        )
        return _CatalogIndex(
            by_guid={guid: item.item_id for guid, item in by_guid.items()},
            by_title={title: item.item_id for title, item in by_title.items()},
        )

    async def _check_statuses(
        self,
        podcast: PodcastSource,
        episodes: Sequence[Episode],
        result: SyncResult,
    ) -> list[_CheckedStatus]:
        if not episodes:
            return []
        self._progress.phase_start(
            "status",
            podcast_id=podcast.id,
            total=len(episodes),
            message=f"Checking {len(episodes)} transcript statuses",
        )

        async def check(episode: Episode, _index: int) -> _CheckedStatus | None:
            assert episode.source_item_id is not None
            try:
                status = await self._source.fetch_status(episode.source_item_id)
            except Exception as exc:
                result.errors.append(f'Status check failed for "{episode.title}": {exc}')
                return None
            return _CheckedStatus(episode=episode, status=status)

        outcomes = await pooled_map(
            episodes,
            check,
            concurrency=self._options.concurrency,
            stagger_seconds=self._options.stagger_seconds,
            on_progress=lambda done, total: self._progress.phase_progress(
                "status", done, total, podcast_id=podcast.id
            ),
        )
        checked = [outcome for outcome in outcomes if outcome is not None]
        self._repository.set_statuses(
            [
                StatusUpdate.for_episode(
                    item.episode,
                    item.status.status,
                    item.status.transcription_id,
                )
                for item in checked
            ]
        )

        done = sum(1 for item in checked if item.status.status == "Done")
        not_started = sum(1 for item in checked if item.status.status == "NotStarted")
        summary = f"{done} Done, {not_started} NotStarted"
        other = len(checked) - done - not_started
        if other > 0:
            summary = f"{summary}, {other} other"
        LOGGER.info("sync status checked podcast_id=%s %s", podcast.id, summary)
        self._progress.phase_complete("status", podcast_id=podcast.id, message=summary)
        return checked

    async def _download_ready(
        self,
        podcast: PodcastSource,
        checked: Sequence[_CheckedStatus],
        result: SyncResult,
    ) -> list[Episode]:
        ready = [item for item in checked if item.status.is_done]
        if not ready:
            return []
        self._progress.phase_start(
            "download",
            podcast_id=podcast.id,
            total=len(ready),
            message=f"Downloading {len(ready)} transcripts",
        )
        bogus_done: list[Episode] = []

        async def download(item: _CheckedStatus, _index: int) -> None:
            episode = item.episode
            assert episode.source_item_id is not None
            assert item.status.transcription_id is not None
            try:
                payload = await self._source.fetch_text(
                    episode.source_item_id,
                    item.status.transcription_id,
                )
            except Exception as exc:
                result.errors.append(
                    f"Transcript download failed for episode {episode.source_item_id}: {exc}"
                )
                return
            if payload is None or not payload.text.strip():
                LOGGER.info(
                    "sync bogus done podcast_id=%s guid=%s item_id=%s",
                    podcast.id,
                    episode.guid,
                    episode.source_item_id,
                )
                bogus_done.append(episode)
                return
            self._repository.set_transcript(
                podcast.id,
                episode.guid,
                payload.text,
                CATALOG_ORIGIN,
                payload.words,
            )
            result.new_transcripts += 1

        await pooled_map(
            ready,
            download,
            concurrency=self._options.concurrency,
            stagger_seconds=self._options.stagger_seconds,
            on_progress=lambda done, total: self._progress.phase_progress(
                "download", done, total, podcast_id=podcast.id
            ),
        )
        self._progress.phase_complete(
            "download",
            podcast_id=podcast.id,
            message=f"{result.new_transcripts} transcripts downloaded",
        )
        return bogus_done

    async def _request_and_reset(
        self,
        podcast: PodcastSource,
        not_started: Sequence[Episode],
        bogus_done: Sequence[Episode],
        result: SyncResult,
    ) -> None:
        actions = [(episode, False) for episode in not_started]
        actions.extend((episode, True) for episode in bogus_done)
        if not actions:
            return

        credential = self._credentials.resolve()
        if credential is None:
            result.skipped_requests += len(actions)
            LOGGER.warning(
                "skipping transcript requests; no auth token podcast_id=%s skipped=%s",
                podcast.id,
                len(actions),
            )
            return

        self._progress.phase_start(
            "request",
            podcast_id=podcast.id,
            total=len(actions),
            message=f"Requesting {len(not_started)}, resetting {len(bogus_done)} transcripts",
        )
        auth_rejected = False

        async def act(action: tuple[Episode, bool], _index: int) -> None:
            nonlocal auth_rejected
            episode, is_reset = action
            if auth_rejected:
                result.skipped_requests += 1
                return
            try:
                attempted = await self._request_or_reset(
                    episode, is_reset=is_reset, credential=credential, result=result
                )
            except Exception as exc:
                result.errors.append(f"Request failed for episode {episode.source_item_id}: {exc}")
                return
            if attempted is None:
                return
            if attempted.auth_rejected and not auth_rejected:
                auth_rejected = True
                result.errors.append(
                    f"Auth token rejected while requesting transcripts for {podcast.name}; "
                    "remaining requests skipped."
                )
            self._repository.set_statuses([StatusUpdate.for_episode(episode, "Requested")])

        await pooled_map(
            actions,
            act,
            concurrency=self._options.concurrency,
            stagger_seconds=self._options.stagger_seconds,
            on_progress=lambda done, total: self._progress.phase_progress(
                "request", done, total, podcast_id=podcast.id
            ),
        )
        self._progress.phase_complete(
            "request",
            podcast_id=podcast.id,
            message=f"{result.requested} requested, {result.reset} reset",
        )

    async def _request_or_reset(
        self,
        episode: Episode,
        *,
        is_reset: bool,
        credential: SourceCredential,
        result: SyncResult,
    ) -> _Attempt | None:
        assert episode.source_item_id is not None
        if is_reset:
            if credential.user_id is None:
                result.skipped_requests += 1
                LOGGER.warning(
                    "reset skipped; credential has no user id podcast_id=%s guid=%s",
                    episode.podcast_id,
                    episode.guid,
                )
                return None
            outcome = await self._source.reset_transcription(
                episode.source_item_id, credential, credential.user_id
            )
        else:
            outcome = await self._source.request_transcription(episode.source_item_id, credential)

        verb = "reset" if is_reset else "request"
        if outcome.success:
            if is_reset:
                result.reset += 1
            else:
                result.requested += 1
            LOGGER.info("sync %s sent item_id=%s", verb, episode.source_item_id)
        else:
            LOGGER.warning(
                "sync %s failed item_id=%s error=%s",
                verb,
                episode.source_item_id,
                outcome.error,
            )
            if not outcome.auth_rejected:
                result.errors.append(
                    f'{verb.capitalize()} failed for "{episode.title}": {outcome.error}'
                )
        return _Attempt(auth_rejected=outcome.auth_rejected)

    async def _run_fallback(
        self,
        podcast: PodcastSource,
        episodes: Sequence[Episode],
        parsed_feed: ParsedFeed,
        catalog: _CatalogIndex,
        result: SyncResult,
    ) -> None:
        if not episodes:
            return
        self._progress.phase_start(
            "fallback",
            podcast_id=podcast.id,
            total=len(episodes),
            message=f"Checking {len(episodes)} episodes via adapters",
        )
        adapters: list[TranscriptAdapter] = [
            FeedTranscriptAdapter(self._feed_service, parsed_feed.transcript_urls())
        ]
        if not catalog.is_empty:
            adapters.append(
                CatalogLookupAdapter(
                    self._source,
                    by_guid=catalog.by_guid,
                    by_title=catalog.by_title,
                )
            )
        adapters.append(HtmlScrapeAdapter(self._feed_service))
        chain = CompositeTranscriptAdapter(adapters)

        for index, episode in enumerate(episodes, start=1):
            if index > 1 and not await self._cancellation.sleep(
                self._options.fallback_delay_seconds
            ):
                LOGGER.info(
                    "sync fallback stopped podcast_id=%s remaining=%s",
                    podcast.id,
                    len(episodes) - index + 1,
                )
                break
            try:
                hit = await chain.fetch_transcript(episode, podcast)
            except Exception as exc:
                result.errors.append(f'Transcript fetch failed for "{episode.title}": {exc}')
                hit = None
            if hit is not None:
                self._repository.set_transcript(
                    podcast.id, episode.guid, hit.text, hit.adapter_name
                )
                result.new_transcripts += 1
                LOGGER.info(
                    "sync fallback transcript podcast_id=%s guid=%s adapter=%s",
                    podcast.id,
                    episode.guid,
                    hit.adapter_name,
                )
            self._progress.phase_progress(
                "fallback", index, len(episodes), podcast_id=podcast.id
            )
        self._progress.phase_complete(
            "fallback",
            podcast_id=podcast.id,
            message=f"Adapter chain processed {len(episodes)} episodes",
        )


@dataclass(frozen=True)
class _Attempt:
    auth_rejected: bool


def _newest(episodes: Sequence[FeedEpisode], limit: int) -> list[FeedEpisode]:
    # Feeds are usually newest-first already; sorting keeps undated items in feed order at the end.
    dated = sorted(
        (episode for episode in episodes if episode.published_at is not None),
        key=lambda episode: episode.published_at or "",
        reverse=True,
    )
    undated = [episode for episode in episodes if episode.published_at is None]
    return [*dated, *undated][: max(1, limit)]

