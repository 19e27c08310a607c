from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dashauth.logging import get_logger

logger = get_logger(__name__)

SESSION_TTL_SECONDS_DEFAULT = 30 * 24 * 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/dashauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/dashauth", "SHARED_FS_ROOT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of origins allowed to send credentialed requests",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Sessions
    session_ttl_seconds: int = env_field(
        SESSION_TTL_SECONDS_DEFAULT,
        "SESSION_TTL_SECONDS",
        description="Sliding lifetime of a session; refreshed on every validated request",
    )
    recovery_ttl_seconds: int = env_field(
        5 * 60,
        "RECOVERY_TTL_SECONDS",
        description="Lifetime of a session re-issued by the recovery endpoint",
    )
    recovery_window_seconds: int = env_field(
        15 * 60,
        "RECOVERY_WINDOW_SECONDS",
        description="How long an expired token stays eligible for one recovery",
    )

    # Cookies
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Mark cookies Secure; defaults to true when APP_BASE_URL is https",
    )
    session_cookie_name: str = env_field("dash_session", "SESSION_COOKIE_NAME")
    kind_cookie_name: str = env_field("dash_auth_kind", "KIND_COOKIE_NAME")

    # Auth surface
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")

    # Client heartbeat defaults
    heartbeat_interval_seconds: int = env_field(30, "HEARTBEAT_INTERVAL_SECONDS")
    heartbeat_staleness_seconds: int = env_field(60, "HEARTBEAT_STALENESS_SECONDS")

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

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "session_ttl_seconds", "recovery_ttl_seconds", "recovery_window_seconds"
    )
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @model_validator(mode="after")
    def _resolve_cookie_secure(self):
        if self.cookie_secure is None:
            self.cookie_secure = self.app_base_url.lower().startswith("https://")
        if self.recovery_ttl_seconds >= self.session_ttl_seconds:
            logger.warning(
                "recovery_ttl_exceeds_session_ttl",
                recovery_ttl_seconds=self.recovery_ttl_seconds,
                session_ttl_seconds=self.session_ttl_seconds,
            )
        return self


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
