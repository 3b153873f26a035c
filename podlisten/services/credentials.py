from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from podlisten.config import AppSettings

LOGGER = logging.getLogger("podcast_listener.credentials")


@dataclass(frozen=True)
class SourceCredential:
    token: str
    origin: str
    expires_at: datetime | None = None
    email: str | None = None
    user_id: str | None = None

    def is_expired(self, *, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(UTC))

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.token}"


class CredentialProvider(Protocol):
    def resolve(self) -> SourceCredential | None:
        ...


class SettingsCredentialProvider:
    """Reads the bearer token from settings each time a run asks for it."""

    def __init__(self, settings: AppSettings) -> None:
        self._settings = settings

    def resolve(self) -> SourceCredential | None:
        return load_credential(self._settings)


class StaticCredentialProvider:
    def __init__(self, credential: SourceCredential | None) -> None:
        self._credential = credential

    def resolve(self) -> SourceCredential | None:
        return self._credential


def load_credential(settings: AppSettings) -> SourceCredential | None:
    token = settings.source_auth_token
    if token is None:
        return None

    claims = decode_jwt_claims(token)
    if claims is None:
        LOGGER.warning("auth token is not a decodable JWT; using it without expiry info")
        return SourceCredential(token=token, origin="env")

    credential = SourceCredential(
        token=token,
        origin="env",
        expires_at=_expiry_from_claims(claims),
        email=_optional_claim(claims, "email"),
        user_id=_optional_claim(claims, "sub"),
    )
    if credential.is_expired():
        LOGGER.warning(
            "auth token expired; request and reset calls disabled expired_at=%s",
            credential.expires_at.isoformat() if credential.expires_at else None,
        )
        return None
    return credential


def decode_jwt_claims(token: str) -> dict[str, Any] | None:
    parts = token.split(".")
    if len(parts) < 3:
        return None
    payload = parts[1]
    padded = payload + "=" * (-len(payload) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii"))
        parsed = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _expiry_from_claims(claims: dict[str, Any]) -> datetime | None:
    raw_exp = claims.get("exp")
    if isinstance(raw_exp, bool) or not isinstance(raw_exp, int | float):
        return None
    return datetime.fromtimestamp(raw_exp, tz=UTC)


def _optional_claim(claims: dict[str, Any], key: str) -> str | None:
    value = claims.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
