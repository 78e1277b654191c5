from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fleetauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the device authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fleetauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_state_path: str | None = env_field(
        None,
        "MEMORY_STATE_PATH",
        description="JSON file the in-memory store persists to; unset keeps state in process only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviour: sync Redis client, Redis optional.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("fleetauth", "JWT_ISSUER")
    jwt_audience: str = env_field("fleet-devices", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "TOKEN_TTL_MINUTES",
        description="Validity window of device tokens in minutes",
    )
    clock_skew_seconds: int = env_field(
        0,
        "CLOCK_SKEW_SECONDS",
        description="Fixed tolerance applied when comparing token expiry",
    )
    multi_tenant: bool = env_field(
        False,
        "MULTI_TENANT",
        description="Require a tenant token on every auth request",
    )
    tenant_token_secret: str | None = env_field(
        None,
        "TENANT_TOKEN_SECRET",
        description="HS256 key for tenant tokens; unset means tokens name the tenant verbatim",
    )
    default_tenant_id: str = env_field("", "DEFAULT_TENANT_ID")
    default_per_page: int = env_field(20, "DEFAULT_PER_PAGE")
    max_per_page: int = env_field(500, "MAX_PER_PAGE")
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Upper bound for pool checkout and statement execution",
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

    @field_validator("redis_url", "memory_state_path", "tenant_token_secret")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("token_ttl_minutes")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value < 1:
            raise ValueError("token_ttl_minutes must be at least 1")
        return value

    @field_validator("clock_skew_seconds")
    @classmethod
    def _validate_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock_skew_seconds must not be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated key do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is unset; issued tokens become invalid on restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _validate_paging(self) -> "Settings":
        if self.max_per_page < 1:
            raise ValueError("max_per_page must be at least 1")
        if not 1 <= self.default_per_page <= self.max_per_page:
            raise ValueError("default_per_page must be between 1 and max_per_page")
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
