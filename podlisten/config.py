from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from podlisten.errors import ConfigurationError

LOGGER = logging.getLogger("podcast_listener.config")

DEFAULT_DATA_DIR = "./data"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("podcasts.db")),
    ("podcasts_path", Path("podcasts.json")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "fetch_transcripts",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{PODLISTEN_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every engine tunable lives here, read from `PODLISTEN_*` environment
    variables (or `.env`). Durations are expressed in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="PODLISTEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the episode store, podcast list, and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("podcasts.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('podcasts.db'))}",
    )
    podcasts_path: Path = Field(
        default=_default_in_data_dir(Path("podcasts.json")),
        description=(
            "JSON array of podcast sources to track. "
            f"{_data_dir_default_note(Path('podcasts.json'))}"
        ),
    )

    # Transcript service.
    source_base_url: str = Field(
        default="https://backend.podscribe.ai/api",
        description="Base URL of the transcription service JSON API.",
    )
    source_app_base_url: str = Field(
        default="https://app.podscribe.com",
        description="Base URL used to build human-facing episode links.",
    )
    source_user_agent: str = Field(
        default="podcast-listener/0.1 (podcast transcript collector)",
        description="User-Agent sent to the transcription service and feed hosts.",
    )
    source_http_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for transcription service, feed, and scrape requests.",
    )
    source_auth_token: str | None = Field(
        default=None,
        description=(
            "Bearer token (JWT) used for request and reset calls. "
            "Expiry, email, and user id are decoded from its payload."
        ),
    )

    # Sync orchestrator.
    fetch_transcripts: bool = Field(
        default=True,
        description="Run the status, download, and request phases after the feed phase.",
    )
    max_episodes_per_feed: int = Field(
        default=50,
        ge=1,
        description="Newest feed items kept per podcast on every sync.",
    )
    max_transcript_fetches: int = Field(
        default=50,
        ge=1,
        description="Maximum candidates considered per podcast by the status-check phase.",
    )
    sync_concurrency: int = Field(
        default=5,
        ge=1,
        description="Pool size for status checks, downloads, and requests during sync.",
    )
    sync_stagger_seconds: float = Field(
        default=0.2,
        ge=0,
        description="Delay before each pooled sync task beyond the first pool-width batch.",
    )
    status_cooldown_seconds: int = Field(
        default=86_400,
        ge=0,
        description="Episodes whose status was checked within this window are not re-checked.",
    )
    fallback_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay between sequential fallback adapter attempts.",
    )

    # Request queue.
    request_concurrency: int = Field(
        default=5,
        ge=1,
        description="Maximum tasks in the requesting state at once.",
    )
    request_stagger_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Delay between successive task starts in the request queue.",
    )
    check_delay_seconds: float = Field(
        default=240.0,
        ge=0,
        description="Wait before the first status check after a request or reset.",
    )
    retry_delay_seconds: float = Field(
        default=120.0,
        ge=0,
        description="Wait between subsequent status checks.",
    )
    max_check_retries: int = Field(
        default=15,
        ge=0,
        description="Status re-checks allowed before a task times out.",
    )
    max_requests: int | None = Field(
        default=None,
        description="Cap on the number of episodes taken into one request run.",
    )

    # Enrichment queue.
    enrichment_concurrency: int = Field(
        default=5,
        ge=1,
        description="Pool size for the word-level enrichment queue.",
    )
    enrichment_delay_seconds: float = Field(
        default=0.3,
        ge=0,
        description="Delay between dequeues in the enrichment queue.",
    )

    # Run lock.
    run_lock_stale_seconds: int = Field(
        default=1_800,
        ge=1,
        description="A held run lock older than this is treated as abandoned.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("PODLISTEN_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("PODLISTEN_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("source_base_url", "source_app_base_url", mode="before")
    @classmethod
    def _normalize_base_urls(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"PODLISTEN_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("source_auth_token", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("max_requests", mode="before")
    @classmethod
    def _normalize_max_requests(cls, value: Any) -> int | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)


class PodcastSource(BaseModel):
    """One tracked podcast, as listed in `podcasts.json`."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    feed_url: str = Field(min_length=1, alias="feedUrl")
    catalog_series_id: str | None = Field(default=None, alias="seriesId")
    catalog_page_url: str | None = Field(default=None, alias="pageUrl")
    tags: tuple[str, ...] = ()

    @field_validator("id", "name", "feed_url", mode="before")
    @classmethod
    def _strip_required_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("catalog_series_id", mode="before")
    @classmethod
    def _normalize_series_id(cls, value: Any) -> str | None:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return _normalize_optional_text(value)

    @field_validator("catalog_page_url", mode="before")
    @classmethod
    def _normalize_page_url(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


EXAMPLE_PODCASTS: tuple[PodcastSource, ...] = (
    PodcastSource(
        id="huberman-lab",
        name="Huberman Lab",
        feed_url="https://feeds.megaphone.fm/hubermanlab",
        tags=("science", "health", "neuroscience"),
    ),
    PodcastSource(
        id="lex-fridman",
        name="Lex Fridman Podcast",
        feed_url="https://lexfridman.com/feed/podcast/",
        tags=("technology", "science", "philosophy"),
    ),
    PodcastSource(
        id="acquired",
        name="Acquired",
        feed_url="https://feeds.acquired.fm/acquired",
        tags=("business", "technology", "history"),
    ),
)


def load_podcast_config(path: Path) -> list[PodcastSource]:
    if not path.exists():
        LOGGER.warning(
            "podcast config missing; using example podcast list path=%s",
            path,
        )
        return list(EXAMPLE_PODCASTS)

    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read podcast config {path}: {exc}") from exc

    if not isinstance(parsed, list):
        raise ConfigurationError(
            f"Podcast config {path} must contain a JSON array of podcast entries."
        )

    podcasts: list[PodcastSource] = []
    seen_ids: set[str] = set()
    for index, entry in enumerate(parsed):
        try:
            podcast = PodcastSource.model_validate(entry)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid podcast entry #{index} in {path}: "
                "each entry needs id, name, and feedUrl."
            ) from exc
        if podcast.id in seen_ids:
            raise ConfigurationError(f"Duplicate podcast id in {path}: {podcast.id}")
        seen_ids.add(podcast.id)
        podcasts.append(podcast)
    return podcasts
