from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from podlisten.config import load_settings
from podlisten.logging_config import (
    LOG_FILE_NAME,
    ROOT_LOGGER_NAME,
    TELEMETRY_LOG_FILE_NAME,
    TELEMETRY_LOGGER_NAME,
    _stream_supports_color,  # pyright: ignore[reportPrivateUsage]
    bound_run_context,
    configure_application_logging,
    resolve_log_level,
)
from podlisten.telemetry import build_telemetry_client


@pytest.fixture
def _restore_loggers() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    yield
    for name in (ROOT_LOGGER_NAME, TELEMETRY_LOGGER_NAME):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True


def _records(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


@pytest.mark.usefixtures("_restore_loggers")
def test_configure_application_logging_writes_json_files(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("PODLISTEN_DATA_DIR", str(tmp_path / "runtime"))
    settings = load_settings()

    log_file = configure_application_logging(settings)
    with bound_run_context(run_id="run-42", run_kind="sync"):
        logging.getLogger("podcast_listener.sync").info("sync podcast start podcast=%s", "x")
    logging.getLogger("podcast_listener.sync").debug("sync idle")
    build_telemetry_client(enabled=True, sink="log").emit("engine.run.start", run_kind="sync")

    assert log_file == settings.log_dir / LOG_FILE_NAME
    records = _records(log_file)
    started = next(
        record for record in records if record["event"] == "sync podcast start podcast=x"
    )
    assert started["run_id"] == "run-42"
    assert started["run_kind"] == "sync"
    assert started["logger"] == "podcast_listener.sync"
    assert started["level"] == "info"
    idle = next(record for record in records if record["event"] == "sync idle")
    assert "run_id" not in idle

    telemetry_records = _records(settings.log_dir / TELEMETRY_LOG_FILE_NAME)
    assert telemetry_records[-1]["telemetry_event"] == "engine.run.start"


def test_resolve_log_level_falls_back_to_info() -> None:
    assert resolve_log_level(" debug ") == logging.DEBUG
    assert resolve_log_level("chatty") == logging.INFO


class _BrokenStream:
    def isatty(self) -> bool:
        raise ValueError("I/O operation on closed file")


def test_stream_supports_color() -> None:
    assert _stream_supports_color(io.StringIO()) is False
    assert _stream_supports_color(object()) is False
    assert _stream_supports_color(_BrokenStream()) is False
