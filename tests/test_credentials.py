from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from podlisten.config import load_settings
from podlisten.services.credentials import (
    SettingsCredentialProvider,
    SourceCredential,
    decode_jwt_claims,
    load_credential,
)


def _jwt(claims: dict[str, Any]) -> str:
    def encode(part: dict[str, Any]) -> str:
        raw = json.dumps(part).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{encode({'alg': 'HS256', 'typ': 'JWT'})}.{encode(claims)}.signature"


def test_load_credential_decodes_jwt_claims(monkeypatch: pytest.MonkeyPatch) -> None:
    expires = datetime.now(UTC) + timedelta(hours=2)
    token = _jwt({"sub": "user-7", "email": "host@example.com", "exp": int(expires.timestamp())})
    monkeypatch.setenv("PODLISTEN_SOURCE_AUTH_TOKEN", token)

    credential = load_credential(load_settings())

    assert credential is not None
    assert credential.token == token
    assert credential.origin == "env"
    assert credential.user_id == "user-7"
    assert credential.email == "host@example.com"
    assert credential.expires_at == datetime.fromtimestamp(int(expires.timestamp()), tz=UTC)
    assert credential.authorization_header == f"Bearer {token}"


def test_expired_token_is_not_used(monkeypatch: pytest.MonkeyPatch) -> None:
    expired = datetime.now(UTC) - timedelta(minutes=5)
    monkeypatch.setenv("PODLISTEN_SOURCE_AUTH_TOKEN", _jwt({"exp": expired.timestamp()}))

    assert load_credential(load_settings()) is None


def test_missing_token_yields_no_credential() -> None:
    assert SettingsCredentialProvider(load_settings()).resolve() is None


def test_opaque_token_is_used_without_claims(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PODLISTEN_SOURCE_AUTH_TOKEN", "opaque-session-token")

    credential = load_credential(load_settings())

    assert credential == SourceCredential(token="opaque-session-token", origin="env")
    assert credential.is_expired() is False


@pytest.mark.parametrize(
    "token",
    ["only.two", "a.!!!.c", f"a.{base64.urlsafe_b64encode(b'[1, 2]').decode()}.c"],
)
def test_decode_jwt_claims_rejects_malformed_tokens(token: str) -> None:
    assert decode_jwt_claims(token) is None


def test_is_expired_uses_supplied_clock() -> None:
    moment = datetime(2026, 3, 1, tzinfo=UTC)
    credential = SourceCredential(token="t", origin="test", expires_at=moment)

    assert credential.is_expired(now=moment - timedelta(seconds=1)) is False
    assert credential.is_expired(now=moment) is True
