from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fixerauth.logging import get_logger

logger = get_logger(__name__)


class PasswordScheme(str, Enum):
    """How credential passwords are stored and compared."""

    PLAIN = "plain"
    ARGON2ID = "argon2id"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fixerauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/fixerauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, in-process rate limits).",
    )
    # Token lifetimes
    login_token_ttl_hours: int = env_field(
        24, "LOGIN_TOKEN_TTL_HOURS", description="Lifetime of LOGIN tokens"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Lifetime of REFRESH tokens"
    )
    reset_token_ttl_minutes: int = env_field(
        30, "RESET_TOKEN_TTL_MINUTES", description="Lifetime of RESET_PASSWORD tokens"
    )
    # Session lifetimes
    session_idle_timeout_minutes: int = env_field(
        120,
        "SESSION_IDLE_TIMEOUT_MINUTES",
        description="Idle time after which validation expires an ACTIVE session",
    )
    session_sweep_idle_hours: int = env_field(
        24,
        "SESSION_SWEEP_IDLE_HOURS",
        description="Idle time after which the periodic sweep expires an ACTIVE session",
    )
    # Maintenance
    token_retention_days: int = env_field(
        30,
        "TOKEN_RETENTION_DAYS",
        description="Inactive tokens issued earlier than this are purged by the sweep",
    )
    sweep_interval_seconds: int = env_field(
        300, "SWEEP_INTERVAL_SECONDS", description="0 disables the background sweep"
    )
    password_scheme: PasswordScheme = env_field(PasswordScheme.PLAIN, "PASSWORD_SCHEME")
    # User directory
    user_directory_url: str | None = env_field(None, "USER_DIRECTORY_URL")
    user_directory_timeout_seconds: float = env_field(
        5.0, "USER_DIRECTORY_TIMEOUT_SECONDS"
    )
    # Rate limits
    login_rate_limit_per_minute: int = env_field(
        30, "LOGIN_RATE_LIMIT_PER_MINUTE", description="0 disables login rate limiting"
    )
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("password_scheme")
    @classmethod
    def _validate_password_scheme(cls, value: PasswordScheme) -> PasswordScheme:
        return PasswordScheme(value)

    @field_validator(
        "login_token_ttl_hours",
        "refresh_token_ttl_days",
        "reset_token_ttl_minutes",
        "session_idle_timeout_minutes",
        "session_sweep_idle_hours",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lifetime settings must be positive")
        return value

    @field_validator("user_directory_url")
    @classmethod
    def _normalize_directory_url(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.rstrip("/")

    def allowed_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
