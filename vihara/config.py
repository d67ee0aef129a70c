from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from vihara.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/vihara", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store's JSON snapshot; unset keeps it in-process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Session lifecycle
    session_timeout_seconds: int = env_field(
        3600,
        "SESSION_TIMEOUT_SECONDS",
        description="Idle time after which a session is expired",
    )
    max_concurrent_sessions: int = env_field(
        0,
        "MAX_CONCURRENT_SESSIONS",
        description="Active sessions allowed per principal; 0 means unlimited",
    )
    session_sweep_interval_seconds: int = env_field(
        300,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Seconds between background sweeps of idle sessions",
    )
    session_retention_days: int = env_field(
        30,
        "SESSION_RETENTION_DAYS",
        description="Days an inactive session row is kept for audit; 0 disables purging",
    )
    session_sweeper_enabled: bool = env_field(True, "SESSION_SWEEPER_ENABLED")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Credentials. The minimum is intentionally low to match the deployed
    # portal; raise it through the environment rather than in code.
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("session_timeout_seconds", "session_sweep_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("interval must be a positive number of seconds")
        return value

    @field_validator("password_min_length")
    @classmethod
    def _validate_password_min_length(cls, value: int) -> int:
        if value < 1:
            raise ValueError("password_min_length must be at least 1")
        if value < 8:
            logger.debug("password_min_length_low", password_min_length=value)
        return value

    @field_validator("max_concurrent_sessions", "session_retention_days")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be zero or positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
