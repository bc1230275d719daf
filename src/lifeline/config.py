from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import dotenv
import pydantic

dotenv.load_dotenv()


DEFAULT_SYNC_INTERVAL_ACTIVE_MS = 10_000
DEFAULT_SYNC_INTERVAL_IDLE_MS = 30_000
DEFAULT_SYNC_INTERVAL_HIDDEN_MS = 120_000
DEFAULT_SYNC_RATE_LIMIT_BACKOFF_MS = 60_000

_POSITIVE_INT_DEFAULTS = {
    "SYNC_INTERVAL_ACTIVE_MS": DEFAULT_SYNC_INTERVAL_ACTIVE_MS,
    "SYNC_INTERVAL_IDLE_MS": DEFAULT_SYNC_INTERVAL_IDLE_MS,
    "SYNC_INTERVAL_HIDDEN_MS": DEFAULT_SYNC_INTERVAL_HIDDEN_MS,
    "SYNC_RATE_LIMIT_BACKOFF_MS": DEFAULT_SYNC_RATE_LIMIT_BACKOFF_MS,
    "STREAM_MAX_EVENTS": 50,
    "DESTROY_STALE_MINUTES": 15,
    "GITHUB_API_RATE_PER_MINUTE": 60,
    "INSIGHTS_TTL_SECONDS": 60,
}


def read_positive_int(raw: Any, fallback: int) -> int:
    """Parse ``raw`` as a positive integer, returning ``fallback`` otherwise."""
    if raw is None:
        return fallback
    if isinstance(raw, bool):
        return fallback
    try:
        value = int(str(raw).strip(), 10)
    except ValueError:
        return fallback
    if value <= 0:
        return fallback
    return value


def _read_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    GITHUB_WEBHOOK_SECRET: str | None = None
    GITHUB_TOKEN: str | None = None
    GITHUB_API_RATE_PER_MINUTE: int = 60

    LIFELINE_DB_PATH: Path = Path("data/lifeline.sqlite3")
    DISKCACHE_DIR: Path = Path("data/diskcache")

    STREAM_MAX_EVENTS: int = 50

    DESTROY_STALE_MINUTES: int = 15
    REPAIR_EAGER_DESTROY_DISCOVERY: bool = False

    SYNC_INTERVAL_ACTIVE_MS: int = DEFAULT_SYNC_INTERVAL_ACTIVE_MS
    SYNC_INTERVAL_IDLE_MS: int = DEFAULT_SYNC_INTERVAL_IDLE_MS
    SYNC_INTERVAL_HIDDEN_MS: int = DEFAULT_SYNC_INTERVAL_HIDDEN_MS
    SYNC_RATE_LIMIT_BACKOFF_MS: int = DEFAULT_SYNC_RATE_LIMIT_BACKOFF_MS

    INSIGHTS_TTL_SECONDS: int = 60

    OVERRIDE_LOGGING: int = logging.WARNING

    TELEGRAM_TOKEN: str | None = None
    TELEGRAM_CHAT_ID: str | None = None

    @pydantic.field_validator(*_POSITIVE_INT_DEFAULTS.keys(), mode="before")
    @classmethod
    def _positive_int_or_default(cls, value: Any, info: pydantic.ValidationInfo):
        return read_positive_int(value, _POSITIVE_INT_DEFAULTS[info.field_name])

    @pydantic.field_validator("OVERRIDE_LOGGING", mode="before")
    @classmethod
    def _log_level(cls, value: Any):
        if isinstance(value, int):
            return value
        level = logging.getLevelName(str(value).upper())
        if not isinstance(level, int):
            return logging.WARNING
        return level

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        for name in cls.model_fields:
            if name in env:
                data[name] = env[name]
        if "REPAIR_EAGER_DESTROY_DISCOVERY" in data:
            data["REPAIR_EAGER_DESTROY_DISCOVERY"] = _read_bool(
                data["REPAIR_EAGER_DESTROY_DISCOVERY"]
            )
        for name in ("GITHUB_WEBHOOK_SECRET", "GITHUB_TOKEN", "TELEGRAM_TOKEN"):
            if data.get(name) == "":
                data[name] = None
        return cls(**data)


SETTINGS = Settings.from_env()
