from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal, Protocol

import structlog

TelemetryEvent = Literal["engine.run.start", "engine.run.finish", "engine.run.rejected"]
TelemetryValue = int | str | None

# Any attribute whose key contains one of these is sent as "[redacted]".
_REDACTED_KEY_FRAGMENTS = (
    "authorization",
    "credential",
    "email",
    "jwt",
    "secret",
    "text",
    "token",
    "transcript",
    "user_id",
    "words",
)


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class StructuredLogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger("podcast_listener.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **attributes)


@dataclass(frozen=True)
class TelemetryClient:
    """Engine run lifecycle events: start, finish and lock rejection.

    A client without a sink drops every event.
    """

    sink: TelemetrySink | None = None

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls()

    def emit(self, event_name: TelemetryEvent, **attributes: TelemetryValue) -> None:
        if self.sink is None:
            return
        self.sink.emit(
            event_name=event_name,
            attributes={
                key: "[redacted]" if _is_redacted(key) else value
                for key, value in attributes.items()
            },
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(StructuredLogTelemetrySink())

    logging.getLogger("podcast_listener.telemetry").warning(
        "unknown telemetry sink; telemetry disabled sink=%s",
        sink,
    )
    return TelemetryClient.disabled()


def _is_redacted(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _REDACTED_KEY_FRAGMENTS)
