from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenward.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, lockout, and rate limiting."""

    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        validate_default=True,
        description="HMAC-SHA256 signing key, fixed at startup",
    )
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    verification_token_ttl_seconds: int = env_field(
        24 * 60 * 60, "VERIFICATION_TOKEN_TTL_SECONDS", gt=0
    )
    reset_token_ttl_seconds: int = env_field(60 * 60, "RESET_TOKEN_TTL_SECONDS", gt=0)
    login_attempts_max: int = env_field(
        5,
        "LOGIN_ATTEMPTS_MAX",
        gt=0,
        description="Failed credential checks before the account is locked",
    )
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES", ge=0)
    rate_limit_burst_capacity: int = env_field(
        20,
        "RATE_LIMIT_BURST_CAPACITY",
        description="Token bucket size per client; 0 disables rate limiting",
    )
    rate_limit_replenish_per_minute: int = env_field(
        10, "RATE_LIMIT_REPLENISH_PER_MINUTE", ge=0
    )
    default_role: str = env_field("user", "DEFAULT_ROLE")
    admin_role: str = env_field("admin", "ADMIN_ROLE")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tokenward", "EMAIL_FROM_NAME")
    shared_fs_root: str = env_field("/srv/tokenward", "SHARED_FS_ROOT")
    persist_state: bool = env_field(
        False,
        "PERSIST_STATE",
        description="Write a JSON snapshot of the memory store under SHARED_FS_ROOT",
    )
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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        # The signing key is never generated; it must come from the environment
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("rate_limit_burst_capacity", "smtp_port")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            access_token_ttl_seconds=_settings_cache.access_token_ttl_seconds,
            login_attempts_max=_settings_cache.login_attempts_max,
            rate_limit_burst_capacity=_settings_cache.rate_limit_burst_capacity,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
