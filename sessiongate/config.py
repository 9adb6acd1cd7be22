from __future__ import annotations

import os
import re
import secrets
from datetime import time as dt_time
from typing import Any, Type, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessiongate.logging import get_logger

logger = get_logger(__name__)

_CUTOFF_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_S = TypeVar("_S", bound="StoreSettings")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class StoreSettings(BaseModel):
    """Session store connection settings; enough for maintenance jobs."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS", gt=0)
    sweep_batch_size: int = env_field(500, "SWEEP_BATCH_SIZE", ge=1)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls: Type[_S]) -> _S:
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


class Settings(StoreSettings):
    """Runtime settings for token issuance, session storage and transport."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessiongate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep sessions and identities in process memory (development only)",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow generated secrets",
    )
    jwt_access_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("sessiongate", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime", ge=1
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime", ge=1
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Mint a new refresh token on every refresh and blacklist the old one",
    )
    session_cutoff: str = env_field(
        "00:00",
        "SESSION_CUTOFF",
        description="Daily wall-clock time (HH:MM) at which every session expires",
    )
    session_timezone: str = env_field("UTC", "SESSION_TIMEZONE")
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)
    security_log_ttl_days: int = env_field(30, "SECURITY_LOG_TTL_DAYS", ge=1)
    security_log_user_max: int = env_field(100, "SECURITY_LOG_USER_MAX", ge=1)
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS", ge=1)
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES", ge=1)
    access_cookie_name: str = env_field("token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    @field_validator("session_cutoff")
    @classmethod
    def _validate_cutoff(cls, value: str) -> str:
        value = value.strip()
        if not _CUTOFF_PATTERN.match(value):
            raise ValueError("session_cutoff must be HH:MM (24h clock)")
        return value

    @field_validator("session_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_SECRET and JWT_REFRESH_SECRET must both be set outside TEST_MODE"
                )
            # Ephemeral secrets: tokens do not survive a restart in test mode
            self.jwt_access_secret = self.jwt_access_secret or secrets.token_urlsafe(48)
            self.jwt_refresh_secret = self.jwt_refresh_secret or secrets.token_urlsafe(48)
            logger.warning("jwt_secrets_generated", test_mode=True)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        return self

    @property
    def cutoff_time(self) -> dt_time:
        hour, minute = self.session_cutoff.split(":")
        return dt_time(hour=int(hour), minute=int(minute))

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.session_timezone)


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
