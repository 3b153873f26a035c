from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from podlisten.telemetry import (
    StructuredLogTelemetrySink,
    TelemetryClient,
    build_telemetry_client,
)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_telemetry_client_redacts_sensitive_fields() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(sink)

    client.emit(
        "engine.run.finish",
        run_id="run_123",
        outcome="ok",
        auth_token="eyJhbGciOi",
        transcript_count=4,
        User_Id="user-7",
        downloaded=3,
        held_run_kind=None,
    )

    assert sink.events == [
        (
            "engine.run.finish",
            {
                "run_id": "run_123",
                "outcome": "ok",
                "auth_token": "[redacted]",
                "transcript_count": "[redacted]",
                "User_Id": "[redacted]",
                "downloaded": 3,
                "held_run_kind": None,
            },
        )
    ]


def test_disabled_telemetry_client_does_not_emit() -> None:
    client = TelemetryClient.disabled()

    assert client.enabled is False
    client.emit("engine.run.start", run_id="run_1")


def test_build_telemetry_client_none_sink_is_disabled() -> None:
    assert build_telemetry_client(enabled=True, sink="none").enabled is False
    assert build_telemetry_client(enabled=False, sink="log").enabled is False


def test_build_telemetry_client_log_sink() -> None:
    client = build_telemetry_client(enabled=True, sink="log")

    assert client.enabled is True
    assert isinstance(client.sink, StructuredLogTelemetrySink)
