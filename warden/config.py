from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


class TokenBackend(str, Enum):
    """Where token cache entries live."""

    DATABASE = "database"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token and directory services."""

    model_config = ConfigDict(extra="ignore")

    app_env: str = env_field("development", "APP_ENV")
    log_level: str = env_field("INFO", "LOG_LEVEL")

    database_url: str = env_field(
        "postgresql://localhost:5432/warden", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    store_timeout_seconds: float = env_field(
        2.0, "STORE_TIMEOUT_SECONDS", gt=0, le=60
    )

    token_backend: TokenBackend = env_field(TokenBackend.DATABASE, "TOKEN_BACKEND")
    token_secret: str | None = env_field(None, "TOKEN_SECRET", validate_default=True)
    token_ttl_seconds: int = env_field(300, "TOKEN_TTL_SECONDS", gt=0)
    token_renew_threshold_seconds: int = env_field(
        30, "TOKEN_RENEW_THRESHOLD_SECONDS", gt=0
    )
    token_issue_attempts: int = env_field(3, "TOKEN_ISSUE_ATTEMPTS", ge=1, le=10)

    reaper_enabled: bool = env_field(True, "TOKEN_REAPER_ENABLED")
    reaper_interval_seconds: int | None = env_field(
        None, "TOKEN_REAPER_INTERVAL_SECONDS", gt=0
    )

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

    @field_validator("token_backend")
    @classmethod
    def _validate_token_backend(cls, value: TokenBackend) -> TokenBackend:
        return TokenBackend(value)

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning("token_secret_generated", message="TOKEN_SECRET not set; using a random secret")
        return secrets.token_urlsafe(48)

    @model_validator(mode="after")
    def _validate_token_window(self) -> "Settings":
        if not 0 < self.token_renew_threshold_seconds < self.token_ttl_seconds:
            raise ValueError(
                "TOKEN_RENEW_THRESHOLD_SECONDS must be greater than 0 and lower than TOKEN_TTL_SECONDS"
            )
        if self.token_backend == TokenBackend.REDIS and not self.redis_url:
            raise ValueError("TOKEN_BACKEND=redis requires REDIS_URL")
        return self

    @property
    def sweep_interval_seconds(self) -> int:
        """Reaper cadence; defaults to half the TTL with a 30 second floor."""

        if self.reaper_interval_seconds:
            return self.reaper_interval_seconds
        return max(self.token_ttl_seconds // 2, 30)


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
