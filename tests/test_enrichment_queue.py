from __future__ import annotations

import asyncio
from typing import Any, cast

from podlisten.config import PodcastSource
from podlisten.models.episodes import SourceStatus, TranscriptPayload
from podlisten.models.results import EnrichmentStatus
from podlisten.repositories.episode_repository import EpisodeRepository
from podlisten.services.enrichment_queue import EnrichmentOptions, EnrichmentQueue
from podlisten.services.progress import ProgressStream
from tests.fakes import FakeTranscriptSource, make_feed_episode, unreachable

FAST = EnrichmentOptions(concurrency=2, delay_seconds=0)


def _seed_transcribed(
    repository: EpisodeRepository,
    podcast: PodcastSource,
    item_ids: list[int],
) -> None:
    repository.upsert_podcast(podcast)
    repository.upsert_episodes(
        [
            make_feed_episode(
                podcast.id,
                f"ep-{item_id}",
                source_item_id=item_id,
                transcript=f"plain text {item_id}",
            )
            for item_id in item_ids
        ]
    )


def test_enrichment_stores_words_and_classifies_outcomes(
    repository: EpisodeRepository,
    podcast: PodcastSource,
    source: FakeTranscriptSource,
) -> None:
    _seed_transcribed(repository, podcast, [1, 2, 3, 4])
    source.statuses[1] = [SourceStatus(status="Done", transcription_id="tr-1")]
    source.texts[1] = "word level transcript"
    source.statuses[2] = [SourceStatus(status="Processing")]
    source.statuses[3] = [SourceStatus(status="Done", transcription_id="tr-3")]
    source.statuses[4] = [unreachable()]

    queue = EnrichmentQueue(repository, cast(Any, source), FAST, ProgressStream())
    result = asyncio.run(queue.run())

    assert (result.enriched, result.skipped, result.failed) == (1, 2, 1)
    assert len(result.errors) == 1
    assert result.errors[0].startswith('Enrichment failed for "Episode ep-4"')

    enriched = repository.get_episode(podcast.id, "ep-1")
    assert enriched is not None
    assert enriched.has_transcript_data is True
    assert enriched.transcript == "plain text 1"
    assert [word.word for word in repository.get_transcript_words(enriched.id)] == [
        "word",
        "level",
        "transcript",
    ]
    remaining = {episode.guid for episode in repository.get_episodes_needing_enrichment()}
    assert remaining == {"ep-2", "ep-3", "ep-4"}


def test_enrichment_with_nothing_to_do_completes_immediately(
    repository: EpisodeRepository,
    source: FakeTranscriptSource,
) -> None:
    progress = ProgressStream()
    seen: list[str] = []
    progress.add_callback(lambda event: seen.append(event.type))

    result = asyncio.run(EnrichmentQueue(repository, cast(Any, source), FAST, progress).run())

    assert (result.enriched, result.skipped, result.failed) == (0, 0, 0)
    assert seen == ["phase:complete"]
    assert source.calls == []


def test_stop_drains_pending_items(
    repository: EpisodeRepository,
    podcast: PodcastSource,
    source: FakeTranscriptSource,
) -> None:
    _seed_transcribed(repository, podcast, [11, 12, 13, 14, 15])
    for item_id in (11, 12, 13, 14, 15):
        source.statuses[item_id] = [SourceStatus(status="Done", transcription_id=f"tr-{item_id}")]
        source.texts[item_id] = "some words"
    options = EnrichmentOptions(concurrency=1, delay_seconds=30)
    queue = EnrichmentQueue(repository, cast(Any, source), options, ProgressStream())

    async def scenario() -> None:
        running = asyncio.create_task(queue.run())
        for _ in range(500):
            if source.count("text") == 1:
                break
            await asyncio.sleep(0.001)
        queue.stop()
        await asyncio.wait_for(running, timeout=5)

    asyncio.run(scenario())

    assert source.count("status") == 1
    assert len(repository.get_episodes_needing_enrichment()) == 4


def test_status_reports_queue_counts_while_running(
    repository: EpisodeRepository,
    podcast: PodcastSource,
) -> None:
    _seed_transcribed(repository, podcast, [21, 22, 23])
    snapshots: list[EnrichmentStatus] = []
    observed: list[EnrichmentQueue] = []

    class _ObservedSource(FakeTranscriptSource):
        async def fetch_text(self, item_id: int, transcription_id: str) -> TranscriptPayload | None:
            snapshots.append(observed[0].status())
            return await super().fetch_text(item_id, transcription_id)

    source = _ObservedSource()
    for item_id in (21, 22, 23):
        source.statuses[item_id] = [SourceStatus(status="Done", transcription_id=f"tr-{item_id}")]
        source.texts[item_id] = "timed words"
    options = EnrichmentOptions(concurrency=1, delay_seconds=30)
    queue = EnrichmentQueue(repository, cast(Any, source), options, ProgressStream())
    observed.append(queue)

    async def scenario() -> EnrichmentStatus:
        running = asyncio.create_task(queue.run())
        for _ in range(500):
            if queue.status().enriched == 1:
                break
            await asyncio.sleep(0.001)
        between = queue.status()
        queue.stop()
        await asyncio.wait_for(running, timeout=5)
        return between

    between = asyncio.run(scenario())

    assert snapshots[0] == EnrichmentStatus(
        queued=2, active=1, enriched=0, failed=0, skipped=0, total=3
    )
    assert between == EnrichmentStatus(
        queued=2, active=0, enriched=1, failed=0, skipped=0, total=3
    )
    assert queue.status().queued == 0
    assert queue.status().active == 0
