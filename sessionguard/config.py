from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    """Deployment environments; production tightens the secret checks."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


# Placeholder secrets shipped in sample .env files; never acceptable in production
DEFAULT_ACCESS_SECRET = "change-me-access-secret"
DEFAULT_REFRESH_SECRET = "change-me-refresh-secret"
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, session tracking and revocation."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, synchronous audit).",
    )

    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("kyokwon119.app", "JWT_ISSUER")
    jwt_audience: str = env_field("kyokwon119.users", "JWT_AUDIENCE")
    access_token_lifetime: str = env_field(
        "30m",
        "ACCESS_TOKEN_LIFETIME",
        description="Access token lifetime, e.g. 30m, 1h (unknown units fall back to 30 minutes)",
    )
    refresh_token_lifetime: str = env_field(
        "7d",
        "REFRESH_TOKEN_LIFETIME",
        description="Refresh token lifetime, e.g. 7d",
    )
    clock_skew_seconds: int = env_field(
        30,
        "JWT_CLOCK_SKEW_SECONDS",
        description="Not-before is backdated by this much to tolerate clock drift",
    )
    refresh_threshold_seconds: int = env_field(
        300,
        "REFRESH_THRESHOLD_SECONDS",
        description="Remaining lifetime under which clients are told to refresh",
    )

    max_tracked_access_tokens: int = env_field(3, "MAX_TRACKED_ACCESS_TOKENS")
    session_max_age_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_MAX_AGE_SECONDS")
    sweep_interval_seconds: int = env_field(15 * 60, "SWEEP_INTERVAL_SECONDS")
    sweep_batch_size: int = env_field(
        500,
        "SWEEP_BATCH_SIZE",
        description="Sessions invalidated per lock acquisition during a sweep",
    )
    revocation_max_entries: int = env_field(10_000, "REVOCATION_MAX_ENTRIES")
    revocation_trim_batch: int = env_field(1_000, "REVOCATION_TRIM_BATCH")

    user_status_timeout_seconds: float = env_field(2.0, "USER_STATUS_TIMEOUT_SECONDS")
    audit_background: bool = env_field(
        True,
        "AUDIT_BACKGROUND",
        description="Dispatch audit events on a worker thread so sinks never block requests",
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional shared mirror for the revocation ledger",
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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("jwt_access_secret", "jwt_refresh_secret", "redis_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("max_tracked_access_tokens", "sweep_batch_size", "revocation_trim_batch")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


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
