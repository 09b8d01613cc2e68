from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "YT_ORCHESTRATOR_"
DEFAULT_DATA_DIR = ".yt-orchestrator"
DEFAULT_CACHE_UPDATE_SCHEDULE = "0 */30 * * * *"
CRON_FIELD_COUNTS = (5, 6)

# Paths that follow `data_dir` unless set explicitly.
_DATA_DIR_CHILDREN: dict[str, Path] = {
    "db_path": Path("state.db"),
    "log_dir": Path("logs"),
}
_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})
_FLAG_FIELDS = (
    "scheduler_enabled",
    "cache_update_run_on_startup",
    "cache_update_force_on_startup",
    "telemetry_enabled",
)


def _data_dir_child(name: str) -> Path:
    return Path(DEFAULT_DATA_DIR) / _DATA_DIR_CHILDREN[name]


def _follows_data_dir(name: str) -> str:
    return f"Defaults to `${{{ENV_PREFIX}DATA_DIR}}/{_DATA_DIR_CHILDREN[name]}`."


def _coerce_flag(value: Any, *, default: bool) -> bool:
    """Env flags accept 1/0, true/false, yes/no, on/off; anything else keeps the default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUTHY:
            return True
        if normalized in _FALSY:
            return False
    return default


def _blank_to_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `YT_ORCHESTRATOR_*` (or `.env`). Background
    cache synchronization spends YouTube Data API quota, so the scheduler and
    both startup runs are opt-in.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_data_dir_child("db_path"),
        description=f"SQLite cache store path. {_follows_data_dir('db_path')}",
    )

    # Google OAuth client used for refresh-token exchange.
    google_client_id: str | None = Field(
        default=None,
        description="OAuth client id used when refreshing user access tokens.",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret used when refreshing user access tokens.",
    )
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Token endpoint of the identity provider.",
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=False,
        validation_alias="YT_ORCHESTRATOR_ENABLE_CACHE_UPDATE_JOB",
        description=(
            "Enable the recurring background cache update job. Disabled by default "
            "to protect the YouTube Data API quota."
        ),
    )
    cache_update_schedule: str = Field(
        default=DEFAULT_CACHE_UPDATE_SCHEDULE,
        description=(
            "Cron expression for the recurring cache update. Five fields, or six "
            "fields with a leading seconds field."
        ),
    )
    cache_update_run_on_startup: bool = Field(
        default=False,
        description="Run one extra cache update shortly after process start.",
    )
    cache_update_force_on_startup: bool = Field(
        default=False,
        description="Make the startup run a forced (quota-expensive) full refresh.",
    )
    cache_update_startup_delay_seconds: int = Field(
        default=5,
        ge=0,
        description="Delay before the optional startup run.",
    )

    # Credential refresh.
    token_expiry_safety_seconds: int = Field(
        default=60,
        ge=0,
        description="Treat access tokens as expired this many seconds before their expiry.",
    )
    token_default_lifetime_seconds: int = Field(
        default=3300,
        ge=60,
        description="Assumed lifetime of a refreshed token when the provider omits expiry.",
    )

    # Differential update tuning.
    channel_recent_videos_max_results: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum new videos fetched per channel per update cycle.",
    )
    channel_watermark_lookback_days: int = Field(
        default=7,
        ge=1,
        description="Watermark used for channels that never recorded a latest video.",
    )
    channel_classifier_sample_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of recent videos sampled to classify a channel as music.",
    )
    api_response_cache_ttl_seconds: int = Field(
        default=300,
        ge=0,
        description="TTL of the in-process YouTube listing response cache.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_data_dir_child("log_dir"),
        description=f"Directory for backend log files. {_follows_data_dir('log_dir')}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )
    log_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Rotate the backend log file once it reaches this size.",
    )
    log_backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of rotated backend log files kept.",
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
            raise ValueError("YT_ORCHESTRATOR_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("YT_ORCHESTRATOR_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("cache_update_schedule", mode="before")
    @classmethod
    def _normalize_schedule(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("YT_ORCHESTRATOR_CACHE_UPDATE_SCHEDULE must be a string.")
        normalized = " ".join(value.split())
        if len(normalized.split(" ")) not in (5, 6):
            raise ValueError(
                "YT_ORCHESTRATOR_CACHE_UPDATE_SCHEDULE must have 5 or 6 cron fields."
            )
        return normalized

    @field_validator("google_token_uri", mode="before")
    @classmethod
    def _normalize_token_uri(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("YT_ORCHESTRATOR_GOOGLE_TOKEN_URI must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("YT_ORCHESTRATOR_GOOGLE_TOKEN_URI must not be empty.")
        return normalized

    @field_validator("data_dir", *_DATA_DIR_CHILDREN, mode="before")
    @classmethod
    def _expand_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return Path(value).expanduser().resolve()

    @field_validator(*_FLAG_FIELDS, mode="before")
    @classmethod
    def _parse_flags(cls, value: Any, info: ValidationInfo) -> bool:
        assert info.field_name is not None
        default = cls.model_fields[info.field_name].default
        return _coerce_flag(value, default=bool(default))

    @field_validator("google_client_id", "google_client_secret", mode="before")
    @classmethod
    def _strip_client_credentials(cls, value: Any) -> str | None:
        return _blank_to_none(value)

    def missing_oauth_client_fields(self) -> list[str]:
        missing: list[str] = []
        if self.google_client_id is None:
            missing.append(f"{ENV_PREFIX}GOOGLE_CLIENT_ID")
        if self.google_client_secret is None:
            missing.append(f"{ENV_PREFIX}GOOGLE_CLIENT_SECRET")
        return missing


def _anchor_to_data_dir(settings: AppSettings) -> AppSettings:
    """Re-home unset child paths under the configured `data_dir`."""
    updates = {
        name: (settings.data_dir / relative).resolve()
        for name, relative in _DATA_DIR_CHILDREN.items()
        if name not in settings.model_fields_set
    }
    return settings.model_copy(update=updates) if updates else settings


def load_settings(*, validate_oauth_secrets: bool = True) -> AppSettings:
    settings = _anchor_to_data_dir(AppSettings())

    # Without a client id/secret every refresh fails with a confusing
    # provider error, so refuse to start instead.
    missing = settings.missing_oauth_client_fields() if validate_oauth_secrets else []
    if missing:
        bullets = "\n".join(f"- {name} is required to refresh user tokens." for name in missing)
        raise ValueError(f"Invalid OAuth configuration:\n{bullets}")

    return settings
