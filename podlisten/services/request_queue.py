from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from podlisten.config import AppSettings
from podlisten.errors import TranscriptSourceAuthError, TranscriptSourceError
from podlisten.models.episodes import (
    Episode,
    EpisodeQueueState,
    QueueTask,
    SourceStatus,
    StatusUpdate,
    TranscriptPayload,
)
from podlisten.models.results import QueueStatus, RequestTranscriptsResult
from podlisten.repositories.episode_repository import EpisodeRepository
from podlisten.services.cancellation import CancellationToken
from podlisten.services.credentials import CredentialProvider, SourceCredential
from podlisten.services.progress import ProgressStream
from podlisten.services.timing import compute_timing_stats, describe_timings
from podlisten.services.transcript_source import TranscriptSource

LOGGER = logging.getLogger("podcast_listener.request_queue")

TRANSCRIPT_ORIGIN = "catalog-api"
SLOT_POLL_SECONDS = 0.1
NO_CREDENTIAL_ERROR = (
    "No auth token available. Set PODLISTEN_SOURCE_AUTH_TOKEN to request transcripts."
)

_Step = Literal["waiting", "terminal"]


@dataclass(frozen=True)
class RequestQueueOptions:
    concurrency: int = 5
    stagger_seconds: float = 0.5
    check_delay_seconds: float = 240.0
    retry_delay_seconds: float = 120.0
    max_check_retries: int = 15
    max_requests: int | None = None
    podcast_ids: tuple[str, ...] | None = None
    retry_mode: bool = False

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        podcast_ids: Sequence[str] | None = None,
        retry_mode: bool = False,
        max_requests: int | None = None,
    ) -> RequestQueueOptions:
        return cls(
            concurrency=settings.request_concurrency,
            stagger_seconds=settings.request_stagger_seconds,
            check_delay_seconds=settings.check_delay_seconds,
            retry_delay_seconds=settings.retry_delay_seconds,
            max_check_retries=settings.max_check_retries,
            max_requests=max_requests if max_requests is not None else settings.max_requests,
            podcast_ids=tuple(podcast_ids) if podcast_ids else None,
            retry_mode=retry_mode,
        )


class TaskSupervisor:
    """Owns every per-episode coroutine the queue spawns.

    Tasks are held here until they finish, so none can be garbage collected
    mid-flight, and `on_complete` runs after each one ends.
    """

    def __init__(self, on_complete: Callable[[], None]) -> None:
        self._tasks: set[asyncio.Task[None]] = set()
        self._on_complete = on_complete

    @property
    def is_drained(self) -> bool:
        return not self._tasks

    def spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error(
                "request task crashed task=%s",
                task.get_name(),
                exc_info=task.exception(),
            )
        self._on_complete()


class _QueueHalted(Exception):
    """Raised inside a task once the credential has been rejected."""


class TranscriptRequestQueue:
    """Requests transcripts and polls them to completion.

    The first step of each episode (status check plus request or reset)
    holds one of `concurrency` slots; waiting between checks does not, so
    any number of episodes can be pending on the service at once. `stop()`
    cancels every sleep; network calls already in flight finish and persist
    before their task settles as stopped.
    """

    def __init__(
        self,
        repository: EpisodeRepository,
        client: TranscriptSource,
        credential: SourceCredential,
        options: RequestQueueOptions,
        progress: ProgressStream,
        *,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self._repository = repository
        self._client = client
        self._credential = credential
        self._options = options
        self._progress = progress
        self._cancellation = cancellation or CancellationToken()
        self._tasks: dict[tuple[str, str], QueueTask] = {}
        self._pending: deque[QueueTask] = deque()
        self._requesting = 0
        self._errors: list[str] = []
        self._requested = 0
        self._auth_rejected = False
        self._completed = asyncio.Event()
        self._supervisor = TaskSupervisor(self._check_completion)

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancellation

    def stop(self) -> None:
        if not self._cancellation.cancelled:
            LOGGER.info("request queue stop requested pending=%s", len(self._pending))
        self._cancellation.cancel()

    def status(self) -> QueueStatus:
        counts: dict[str, int] = {}
        for task in self._tasks.values():
            counts[task.state] = counts.get(task.state, 0) + 1
        return QueueStatus(
            queued=counts.get("queued", 0),
            requesting=counts.get("requesting", 0),
            waiting=counts.get("waiting", 0),
            checking=counts.get("checking", 0),
            done=counts.get("done", 0),
            failed=counts.get("failed", 0),
            total=len(self._tasks),
        )

    async def run(self) -> RequestTranscriptsResult:
        try:
            self._load_pending()
            total = len(self._tasks)
            if total == 0:
                self._progress.phase_complete("request", message="No episodes to process")
                return RequestTranscriptsResult()

            mode = "retry" if self._options.retry_mode else "request"
            LOGGER.info(
                "request queue start mode=%s total=%s concurrency=%s",
                mode,
                total,
                self._options.concurrency,
            )
            self._progress.phase_start(
                "request",
                total=total,
                message=f"Processing {total} episodes ({mode} mode)",
            )
            await self._pump()
            self._check_completion()
            await self._completed.wait()
        except Exception as exc:
            LOGGER.exception("request queue aborted")
            self._errors.append(f"Request queue aborted: {exc}")
            self.stop()
        return self._finalize()

    def _load_pending(self) -> None:
        options = self._options
        if options.retry_mode:
            episodes = self._repository.get_episodes_in_processing(options.podcast_ids)
            if options.max_requests is not None:
                episodes = episodes[: max(1, options.max_requests)]
        else:
            episodes = self._repository.get_episodes_needing_request(
                options.podcast_ids,
                options.max_requests,
            )
        for episode in episodes:
            if episode.key in self._tasks or episode.source_item_id is None:
                continue
            task = QueueTask(episode=episode)
            self._tasks[episode.key] = task
            self._pending.append(task)

    async def _pump(self) -> None:
        first_step = self._check if self._options.retry_mode else self._request
        spawned = 0
        while self._pending and not self._cancellation.cancelled:
            if self._requesting >= max(1, self._options.concurrency):
                await self._cancellation.sleep(SLOT_POLL_SECONDS)
                continue
            if spawned > 0 and self._options.stagger_seconds > 0:
                if not await self._cancellation.sleep(self._options.stagger_seconds):
                    break
            task = self._pending.popleft()
            self._requesting += 1
            spawned += 1
            self._supervisor.spawn(
                self._drive(task, first_step),
                name=f"request-{task.episode.id}",
            )

    async def _drive(
        self,
        task: QueueTask,
        first_step: Callable[[QueueTask], Coroutine[Any, Any, _Step]],
    ) -> None:
        task.started_at = time.monotonic()
        try:
            try:
                step = await first_step(task)
            finally:
                self._requesting -= 1
            while step == "waiting":
                if not await self._cancellation.sleep(task.wait_seconds):
                    self._settle(task, "stopped", "queue stopped while waiting")
                    return
                step = await self._check(task)
        except _QueueHalted:
            self._settle(task, "stopped", "credential rejected")
        except Exception as exc:
            LOGGER.warning(
                "request task failed episode_id=%s error=%s",
                task.episode.id,
                exc,
                exc_info=True,
            )
            self._fail(task, f'Request failed for "{task.episode.title}": {exc}')

    async def _request(self, task: QueueTask) -> _Step:
        episode = task.episode
        self._transition(task, "requesting")
        status = await self._fetch_status(episode)

        if status.status == "Done":
            payload = await self._fetch_payload(episode, status)
            if payload is not None:
                self._store(task, payload, status)
                return "terminal"
            if self._credential.user_id is None:
                self._fail(task, f'Cannot reset "{episode.title}": credential has no user id')
                return "terminal"
            LOGGER.info("request reset bogus done episode_id=%s", episode.id)
            outcome = await self._client.reset_transcription(
                self._require_item_id(episode),
                self._credential,
                self._credential.user_id,
            )
        elif status.status in ("Running", "Processing"):
            self._repository.set_statuses(
                [StatusUpdate.for_episode(episode, status.status, status.transcription_id)]
            )
            task.wait_seconds = self._options.check_delay_seconds
            self._transition(task, "waiting", f"already {status.status}")
            return "waiting"
        else:
            outcome = await self._client.request_transcription(
                self._require_item_id(episode),
                self._credential,
            )

        if outcome.auth_rejected:
            self._halt(outcome.error or "HTTP 401")
        if not outcome.success:
            self._fail(task, f'Request failed for "{episode.title}": {outcome.error}')
            return "terminal"

        self._requested += 1
        self._repository.set_statuses([StatusUpdate.for_episode(episode, "Requested")])
        task.wait_seconds = self._options.check_delay_seconds
        self._transition(task, "waiting", "requested")
        return "waiting"

    async def _check(self, task: QueueTask) -> _Step:
        episode = task.episode
        self._transition(task, "checking", f"check {task.retry_count + 1}")
        status: SourceStatus | None
        try:
            status = await self._fetch_status(episode)
        except TranscriptSourceError as exc:
            LOGGER.info(
                "request status check failed episode_id=%s error=%s",
                episode.id,
                exc,
            )
            status = None

        if status is not None:
            if status.status == "Done":
                try:
                    payload = await self._fetch_payload(episode, status)
                except TranscriptSourceError as exc:
                    LOGGER.info(
                        "request transcript download failed episode_id=%s error=%s",
                        episode.id,
                        exc,
                    )
                else:
                    if payload is not None:
                        self._store(task, payload, status)
                        return "terminal"
                    if self._options.retry_mode:
                        self._fail(task, f'"{episode.title}": Done but no text')
                        return "terminal"
            else:
                self._repository.set_statuses(
                    [StatusUpdate.for_episode(episode, status.status, status.transcription_id)]
                )

        if task.retry_count < self._options.max_check_retries:
            task.wait_seconds = self._retry_wait(task, status)
            task.retry_count += 1
            self._transition(task, "waiting", f"retry {task.retry_count}")
            return "waiting"

        last_status = "unreachable" if status is None else status.status
        self._fail(
            task,
            f'Timeout: "{episode.title}" still {last_status} after {task.retry_count + 1} checks',
        )
        return "terminal"

    def _retry_wait(self, task: QueueTask, status: SourceStatus | None) -> float:
        # A first check in retry mode that finds the item idle waits the full check delay.
        if (
            self._options.retry_mode
            and task.retry_count == 0
            and (status is None or status.status not in ("Running", "Processing"))
        ):
            return self._options.check_delay_seconds
        return self._options.retry_delay_seconds

    async def _fetch_status(self, episode: Episode) -> SourceStatus:
        try:
            return await self._client.fetch_status(self._require_item_id(episode))
        except TranscriptSourceAuthError as exc:
            self._halt(str(exc))
            raise _QueueHalted from exc

    async def _fetch_payload(
        self,
        episode: Episode,
        status: SourceStatus,
    ) -> TranscriptPayload | None:
        if status.transcription_id is None:
            return None
        payload = await self._client.fetch_text(
            self._require_item_id(episode),
            status.transcription_id,
        )
        if payload is None or not payload.text.strip():
            return None
        return payload

    def _store(self, task: QueueTask, payload: TranscriptPayload, status: SourceStatus) -> None:
        episode = task.episode
        self._repository.set_transcript(
            episode.podcast_id,
            episode.guid,
            payload.text,
            TRANSCRIPT_ORIGIN,
            payload.words,
        )
        self._repository.set_statuses(
            [StatusUpdate.for_episode(episode, "Done", status.transcription_id)]
        )
        self._settle(task, "done", f"{len(payload.words)} words")

    def _halt(self, message: str) -> None:
        if self._auth_rejected:
            raise _QueueHalted
        self._auth_rejected = True
        self._errors.append(
            f"Auth token rejected by the transcription service; stopping queue. {message}"
        )
        LOGGER.error("request queue halted; credential rejected error=%s", message)
        self.stop()
        raise _QueueHalted

    def _fail(self, task: QueueTask, message: str) -> None:
        self._errors.append(message)
        self._settle(task, "failed", message)

    def _transition(
        self,
        task: QueueTask,
        state: EpisodeQueueState,
        detail: str | None = None,
    ) -> None:
        task.state = state
        if detail is not None:
            task.notes.append(detail)
        LOGGER.debug(
            "request task state episode_id=%s state=%s detail=%s",
            task.episode.id,
            state,
            detail,
        )
        self._progress.episode_status(
            episode_id=task.episode.id,
            title=task.episode.title,
            state=state,
            detail=detail,
        )

    def _settle(self, task: QueueTask, state: EpisodeQueueState, detail: str) -> None:
        task.finished_at = time.monotonic()
        self._transition(task, state, detail)
        if state in ("done", "failed"):
            settled = sum(1 for item in self._tasks.values() if item.state in ("done", "failed"))
            self._progress.phase_progress("request", settled, len(self._tasks))

    def _check_completion(self) -> None:
        if self._pending and not self._cancellation.cancelled:
            return
        if self._supervisor.is_drained:
            self._completed.set()

    def _finalize(self) -> RequestTranscriptsResult:
        for task in self._pending:
            task.state = "stopped"
        self._pending.clear()

        tasks = list(self._tasks.values())
        downloaded = sum(1 for task in tasks if task.state == "done")
        failed = sum(1 for task in tasks if task.state == "failed")
        durations = [
            task.elapsed_seconds
            for task in tasks
            if task.state in ("done", "failed") and task.elapsed_seconds is not None
        ]
        result = RequestTranscriptsResult(
            requested=self._requested,
            downloaded=downloaded,
            failed=failed,
            still_processing=len(tasks) - downloaded - failed,
            errors=list(self._errors),
            timings=compute_timing_stats(durations),
        )
        summary = (
            f"{result.downloaded} downloaded, {result.failed} failed, "
            f"{result.still_processing} still processing"
        )
        LOGGER.info(
            "request queue finished requested=%s %s timings=%s",
            result.requested,
            summary,
            describe_timings(result.timings),
        )
        self._progress.phase_complete("request", message=summary)
        return result

    @staticmethod
    def _require_item_id(episode: Episode) -> int:
        if episode.source_item_id is None:
            raise TranscriptSourceError(f"Episode {episode.id} has no transcription service id")
        return episode.source_item_id


async def request_and_poll_transcripts(
    repository: EpisodeRepository,
    client: TranscriptSource,
    credentials: CredentialProvider,
    options: RequestQueueOptions,
    progress: ProgressStream,
    *,
    cancellation: CancellationToken | None = None,
) -> RequestTranscriptsResult:
    credential = credentials.resolve()
    if credential is None:
        LOGGER.warning("request queue skipped; no auth token")
        progress.phase_complete("request", message=NO_CREDENTIAL_ERROR)
        return RequestTranscriptsResult(errors=[NO_CREDENTIAL_ERROR])

    queue = TranscriptRequestQueue(
        repository,
        client,
        credential,
        options,
        progress,
        cancellation=cancellation,
    )
    return await queue.run()
