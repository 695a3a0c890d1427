from __future__ import annotations

import os
import re
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authgate", "DATABASE_URL"
    )
    database_pool_timeout_seconds: float = env_field(
        5.0,
        "DATABASE_POOL_TIMEOUT_SECONDS",
        gt=0,
        description="Longest wait for a pooled Postgres connection",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: in-memory fallbacks and logged SMS delivery.",
    )
    cache_operation_timeout_seconds: float = env_field(
        2.0, "CACHE_OPERATION_TIMEOUT_SECONDS", gt=0
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    jwt_audience: str = env_field("authgate-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        60, "TOKEN_TTL_MINUTES", ge=1, description="Session token lifetime in minutes"
    )

    field_encryption_key: str | None = env_field(
        None,
        "FIELD_ENCRYPTION_KEY",
        validate_default=True,
        description="64 hex chars; encrypts phone numbers at rest",
    )
    transport_encryption_key: str | None = env_field(
        None,
        "TRANSPORT_ENCRYPTION_KEY",
        validate_default=True,
        description="64 hex chars; AES-256-GCM key for encrypted request bodies",
    )

    sms_account_sid: str | None = env_field(None, "SMS_ACCOUNT_SID")
    sms_auth_token: str | None = env_field(None, "SMS_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")
    sms_api_base_url: str = env_field(
        "https://api.twilio.com/2010-04-01", "SMS_API_BASE_URL"
    )
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS", gt=0)

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=32, description="argon2 memory cost in KiB"
    )

    auth_rate_limit_requests: int = env_field(
        20,
        "AUTH_RATE_LIMIT_REQUESTS",
        ge=1,
        description="Requests a single client may make to auth routes per window",
    )
    auth_rate_limit_window_seconds: int = env_field(
        900, "AUTH_RATE_LIMIT_WINDOW_SECONDS", ge=1
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

    @field_validator("redis_url", "sms_account_sid", "sms_auth_token", "sms_from_number")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("jwt_secret")
    @classmethod
    def _validate_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET is required")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("field_encryption_key", "transport_encryption_key")
    @classmethod
    def _validate_hex_key(cls, value: str | None, info) -> str:
        env_name = info.field_name.upper()
        if not value:
            raise ValueError(f"{env_name} is required")
        value = value.strip()
        if not _HEX_KEY_PATTERN.match(value):
            raise ValueError(f"{env_name} must be 64 hex characters (32 bytes)")
        return value.lower()

    @model_validator(mode="after")
    def _require_sms_credentials(self) -> "Settings":
        missing = [
            env
            for env, value in (
                ("SMS_ACCOUNT_SID", self.sms_account_sid),
                ("SMS_AUTH_TOKEN", self.sms_auth_token),
                ("SMS_FROM_NUMBER", self.sms_from_number),
            )
            if not value
        ]
        if missing and not self.test_mode:
            raise ValueError(f"missing SMS credentials: {', '.join(missing)}")
        if missing:
            logger.warning("sms_credentials_missing_test_mode", missing=missing)
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
