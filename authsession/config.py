from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authsession.logging import get_logger

logger = get_logger(__name__)

# 128 bits of entropy at 6 bits per URL-safe character
MIN_TOKEN_LENGTH = 22
# Longest session ID the manager will look up
MAX_TOKEN_LENGTH = 256


class StoreBackend(str, Enum):
    """Session store implementations supported by the runtime."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for session lifecycle and storage."""

    session_lifetime_seconds: int = env_field(
        14 * 24 * 60 * 60,
        "SESSION_LIFETIME_SECONDS",
        description="Total lifetime of a session from creation or last refresh",
    )
    session_refresh_throttle_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_REFRESH_THROTTLE_SECONDS",
        description="Minimum time between two expiration refreshes of one session",
    )
    session_token_length: int = env_field(
        32,
        "SESSION_TOKEN_LENGTH",
        description="Length of generated session IDs and CSRF tokens",
    )
    session_store: StoreBackend = env_field(StoreBackend.MEMORY, "SESSION_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/authsession", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_fs_root: str | None = env_field(
        None,
        "STATE_FS_ROOT",
        description="Directory for the memory store snapshot; unset keeps sessions in process only",
    )
    refresh_in_background: bool = env_field(
        True,
        "SESSION_REFRESH_IN_BACKGROUND",
        description="Run expiration refresh writes on a worker thread",
    )

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

    @field_validator("session_store")
    @classmethod
    def _validate_store(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("session_token_length")
    @classmethod
    def _validate_token_length(cls, value: int) -> int:
        if value < MIN_TOKEN_LENGTH:
            raise ValueError(
                f"session_token_length must be at least {MIN_TOKEN_LENGTH} characters"
            )
        if value > MAX_TOKEN_LENGTH:
            raise ValueError(
                f"session_token_length must be at most {MAX_TOKEN_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _validate_refresh_window(self) -> "Settings":
        if self.session_refresh_throttle_seconds <= 0:
            raise ValueError("session_refresh_throttle_seconds must be positive")
        if self.session_lifetime_seconds <= self.session_refresh_throttle_seconds:
            raise ValueError(
                "session_lifetime_seconds must exceed session_refresh_throttle_seconds"
            )
        return self

    @property
    def session_lifetime(self) -> timedelta:
        return timedelta(seconds=self.session_lifetime_seconds)

    @property
    def session_refresh_throttle(self) -> timedelta:
        return timedelta(seconds=self.session_refresh_throttle_seconds)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            session_store=_settings_cache.session_store.value,
            session_lifetime_seconds=_settings_cache.session_lifetime_seconds,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
