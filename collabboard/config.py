from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_SECRET_LENGTH = 32


class StoreBackend(str, Enum):
    """Credential store implementations the runtime can build."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    access_token_secret: str = env_field(
        None,
        "ACCESS_TOKEN_SECRET",
        description="HMAC secret for access tokens",
        validate_default=True,
    )
    refresh_token_secret: str = env_field(
        None,
        "REFRESH_TOKEN_SECRET",
        description="HMAC secret for refresh tokens; must differ from the access secret",
        validate_default=True,
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    token_cleanup_enabled: bool = env_field(True, "TOKEN_CLEANUP_ENABLED")
    token_cleanup_interval_hours: float = env_field(
        24,
        "TOKEN_CLEANUP_INTERVAL_HOURS",
        description="Hours between system-wide expired refresh token sweeps",
    )
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("collabboard", "REDIS_KEY_PREFIX")
    shared_fs_root: str = env_field("/srv/collabboard", "SHARED_FS_ROOT")
    cookie_secure: bool = env_field(
        True,
        "COOKIE_SECURE",
        description="Mark the refresh cookie Secure; disable only for plain-http local dev",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    node_env: str = env_field("development", "NODE_ENV")
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _require_secret(cls, value: str | None, info) -> str:
        env_name = info.field_name.upper()
        if not value:
            raise ValueError(f"{env_name} must be set")
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"{env_name} must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("token_cleanup_interval_hours")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("cleanup interval must be positive")
        return value

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @property
    def is_production(self) -> bool:
        return self.node_env.lower() == "production"


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
