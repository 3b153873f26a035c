from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from podlisten.errors import TranscriptSourceAuthError, TranscriptSourceError
from podlisten.models.episodes import (
    CatalogEpisode,
    SourceActionResult,
    SourceStatus,
    TranscriptPayload,
    TranscriptWord,
    normalize_status,
)
from podlisten.services.credentials import SourceCredential
from podlisten.services.transcript_format import format_transcript_text

LOGGER = logging.getLogger("podcast_listener.transcript_source")

_ERROR_BODY_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class _HttpResponse:
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class CredentialCheck:
    valid: bool
    status_code: int | None = None
    error: str | None = None


class TranscriptSource(Protocol):
    async def fetch_series_episodes(self, series_id: str) -> list[CatalogEpisode]:
        ...

    async def fetch_status(self, item_id: int) -> SourceStatus:
        ...

    async def fetch_text(self, item_id: int, transcription_id: str) -> TranscriptPayload | None:
        ...

    async def request_transcription(
        self,
        item_id: int,
        credential: SourceCredential,
    ) -> SourceActionResult:
        ...

    async def reset_transcription(
        self,
        item_id: int,
        credential: SourceCredential,
        user_id: str,
    ) -> SourceActionResult:
        ...

    def episode_url(self, item_id: int) -> str:
        ...


class TranscriptSourceClient:
    """JSON client for the external transcription service.

    Every call runs the blocking `urllib` request on a worker thread so the
    event loop keeps serving other tasks. Read endpoints raise
    `TranscriptSourceError` on transport or HTTP failure; the request and
    reset calls report failure in a `SourceActionResult` instead, with
    `auth_rejected` set for HTTP 401.
    """

    def __init__(
        self,
        *,
        base_url: str,
        app_base_url: str,
        user_agent: str,
        timeout_seconds: float,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._app_base_url = app_base_url.rstrip("/")
        self._user_agent = user_agent
        self._timeout_seconds = timeout_seconds

    def episode_url(self, item_id: int) -> str:
        return f"{self._app_base_url}/episode/{item_id}"

    async def fetch_series_episodes(self, series_id: str) -> list[CatalogEpisode]:
        payload = await self._get_json(f"/series/{quote(series_id, safe='')}/episodes")
        if not isinstance(payload, list):
            raise TranscriptSourceError(
                f"Unexpected series episodes payload for series {series_id}"
            )
        episodes: list[CatalogEpisode] = []
        for raw in payload:
            episode = _parse_catalog_episode(raw)
            if episode is not None:
                episodes.append(episode)
        return episodes

    async def fetch_status(self, item_id: int) -> SourceStatus:
        payload = await self._get_json(
            "/episode",
            params={"id": str(item_id), "includeAds": "false", "includeOriginal": "false"},
        )
        transcription = payload.get("transcription") if isinstance(payload, dict) else None
        if not isinstance(transcription, dict):
            return SourceStatus(status="NotStarted")
        raw_id = transcription.get("id")
        return SourceStatus(
            status=normalize_status(transcription.get("status")),
            transcription_id=str(raw_id) if raw_id not in (None, "") else None,
        )

    async def fetch_text(self, item_id: int, transcription_id: str) -> TranscriptPayload | None:
        response = await self._send(
            "GET",
            f"/episode/{item_id}/transcription",
            params={"transcriptVersionReqId": transcription_id},
        )
        if not response.ok:
            LOGGER.debug(
                "transcript text unavailable item_id=%s status=%s",
                item_id,
                response.status_code,
            )
            return None
        payload = _parse_json(response.body)
        raw_words = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(raw_words, list) or not raw_words:
            return None
        words = tuple(
            TranscriptWord.from_dict(item) for item in raw_words if isinstance(item, dict)
        )
        if not words:
            return None
        return TranscriptPayload(text=format_transcript_text(words), words=words)

    async def request_transcription(
        self,
        item_id: int,
        credential: SourceCredential,
    ) -> SourceActionResult:
        return await self._authenticated_action(
            path=f"/episode/{item_id}/self-hosting-request",
            credential=credential,
            body=None,
            action="request",
        )

    async def reset_transcription(
        self,
        item_id: int,
        credential: SourceCredential,
        user_id: str,
    ) -> SourceActionResult:
        return await self._authenticated_action(
            path="/episode/reset",
            credential=credential,
            body={"episodeId": item_id, "userId": user_id},
            action="reset",
        )

    async def validate_credential(
        self,
        credential: SourceCredential,
        sample_item_id: int,
    ) -> CredentialCheck:
        """Hit the request endpoint once; only a 401 means the token itself is bad."""
        try:
            response = await self._send(
                "POST",
                f"/episode/{sample_item_id}/self-hosting-request",
                credential=credential,
            )
        except TranscriptSourceError as exc:
            return CredentialCheck(valid=False, error=str(exc))
        if response.status_code == 401:
            return CredentialCheck(
                valid=False,
                status_code=401,
                error="Token rejected by the transcription service (401)",
            )
        return CredentialCheck(valid=True, status_code=response.status_code)

    async def _authenticated_action(
        self,
        *,
        path: str,
        credential: SourceCredential,
        body: dict[str, Any] | None,
        action: str,
    ) -> SourceActionResult:
        try:
            response = await self._send("POST", path, credential=credential, body=body)
        except TranscriptSourceError as exc:
            return SourceActionResult(success=False, error=str(exc))

        if response.ok:
            return SourceActionResult(success=True)
        preview = response.body[:_ERROR_BODY_PREVIEW_CHARS]
        if response.status_code == 401:
            return SourceActionResult(
                success=False,
                error="Auth expired (401): token rejected. Refresh the auth token and retry.",
                auth_rejected=True,
            )
        if response.status_code == 403:
            return SourceActionResult(
                success=False,
                error=f"Forbidden (403): not permitted to {action} this episode. {preview[:100]}",
            )
        return SourceActionResult(
            success=False,
            error=f"HTTP {response.status_code}: {preview}",
        )

    async def _get_json(self, path: str, *, params: dict[str, str] | None = None) -> Any:
        response = await self._send("GET", path, params=params)
        if response.status_code == 401:
            raise TranscriptSourceAuthError(
                f"Transcription service rejected credentials for {path}",
                status_code=401,
            )
        if not response.ok:
            raise TranscriptSourceError(
                f"Transcription service error {response.status_code} for {path}",
                status_code=response.status_code,
            )
        return _parse_json(response.body)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        credential: SourceCredential | None = None,
        body: dict[str, Any] | None = None,
    ) -> _HttpResponse:
        query = urlencode(params or {})
        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{query}"
        headers = {
            "accept": "application/json",
            "user-agent": self._user_agent,
        }
        data: bytes | None = None
        if method == "POST":
            headers["content-type"] = "application/json"
            data = json.dumps(body).encode("utf-8") if body is not None else b""
        if credential is not None:
            headers["authorization"] = credential.authorization_header

        request = Request(url, data=data, headers=headers, method=method)
        return await asyncio.to_thread(_perform_request, request, self._timeout_seconds)


def _perform_request(request: Request, timeout_seconds: float) -> _HttpResponse:
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")
    except (URLError, TimeoutError, OSError) as exc:
        raise TranscriptSourceError(
            f"Transcription service request failed: {exc}"
        ) from exc
    return _HttpResponse(status_code=status_code, body=raw_body)


def _parse_json(raw_body: str) -> Any:
    if not raw_body.strip():
        return {}
    try:
        return json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise TranscriptSourceError(f"Transcription service returned invalid JSON: {exc}") from exc


def _parse_catalog_episode(raw: object) -> CatalogEpisode | None:
    if not isinstance(raw, dict):
        return None
    raw_id = raw.get("id")
    if isinstance(raw_id, bool) or not isinstance(raw_id, int | str):
        return None
    try:
        item_id = int(raw_id)
    except ValueError:
        return None
    guid = raw.get("guid")
    duration = raw.get("duration")
    return CatalogEpisode(
        item_id=item_id,
        title=str(raw.get("title") or "Untitled"),
        guid=guid.strip() if isinstance(guid, str) and guid.strip() else None,
        description=str(raw.get("description") or ""),
        uploaded_at=raw.get("uploadedAt") if isinstance(raw.get("uploadedAt"), str) else None,
        duration_seconds=(
            int(duration)
            if isinstance(duration, int | float) and not isinstance(duration, bool)
            else None
        ),
        audio_url=raw.get("url") if isinstance(raw.get("url"), str) else None,
    )
