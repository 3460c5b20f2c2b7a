from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agora.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, built once at startup and passed to the services."""

    database_url: str = env_field("postgresql://localhost:5432/agora", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/agora", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases.",
    )
    log_level: str = env_field("INFO", "LOG_LEVEL")
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("agora", "JWT_ISSUER")
    jwt_audience: str = env_field("agora-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    # One-time codes
    code_ttl_seconds: int = env_field(
        5 * 60, "CODE_TTL_SECONDS", description="Lifetime of recovery codes"
    )
    code_retry_seconds: int = env_field(
        60,
        "CODE_RETRY_SECONDS",
        description="Minimum gap between two confirmations of the same code",
    )
    code_length: int = env_field(6, "CODE_LENGTH")
    # Cookies. The refresh/access max-ages mirror the deployed frontend contract
    # and are intentionally not derived from the token TTLs above.
    session_cookie_max_age_seconds: int = env_field(
        10 * 365 * 24 * 60 * 60, "SESSION_COOKIE_MAX_AGE_SECONDS"
    )
    refresh_cookie_max_age_seconds: int = env_field(
        60 * 60, "REFRESH_COOKIE_MAX_AGE_SECONDS"
    )
    access_cookie_max_age_seconds: int = env_field(
        7 * 24 * 60 * 60, "ACCESS_COOKIE_MAX_AGE_SECONDS"
    )
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Agora", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    # Object storage
    supabase_url: str | None = env_field(None, "SUPABASE_PROJECT_URL")
    supabase_key: str | None = env_field(None, "SUPABASE_PROJECT_API_KEY")
    supabase_bucket: str = env_field("cdn", "SUPABASE_BUCKET")
    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [o.strip() for o in value.split(",") if o.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "code_ttl_seconds",
        "code_length",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("code_retry_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
