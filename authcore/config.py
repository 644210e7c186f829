from __future__ import annotations

import os
import re
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from authcore.logging import get_logger
from authcore.service.errors import ConfigurationError

logger = get_logger(__name__)

_TTL_PATTERN = re.compile(r"^(\d+)([smhd])$")
_TTL_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

DEFAULT_ACCESS_TOKEN_TTL = "1h"
DEFAULT_REFRESH_TOKEN_TTL = "7d"


def parse_ttl(ttl: str) -> int:
    """Convert a ``<integer><unit>`` TTL string (units s/m/h/d) to seconds."""
    match = _TTL_PATTERN.match(ttl.strip()) if isinstance(ttl, str) else None
    if not match:
        raise ConfigurationError(f"invalid TTL format: {ttl!r}", detail={"ttl": ttl})
    value, unit = match.groups()
    seconds = int(value) * _TTL_UNITS[unit]
    if seconds <= 0:
        raise ConfigurationError(f"TTL must be positive: {ttl!r}", detail={"ttl": ttl})
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, session policy and storage."""

    # Token signing; access and refresh tokens never share a secret
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    access_token_ttl: str = env_field(
        DEFAULT_ACCESS_TOKEN_TTL,
        "ACCESS_TOKEN_TTL",
        description="Access token lifetime, e.g. 15m or 1h",
    )
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    refresh_token_ttl: str = env_field(
        DEFAULT_REFRESH_TOKEN_TTL,
        "REFRESH_TOKEN_TTL",
        description="Refresh token / session lifetime, e.g. 7d",
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    expiring_soon_threshold_seconds: int = env_field(
        300,
        "EXPIRING_SOON_THRESHOLD_SECONDS",
        description="Window before expiry in which clients are told to refresh",
    )

    # Password hashing
    password_pepper: str | None = env_field(None, "PASSWORD_PEPPER")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Session policy
    max_sessions_per_user: int | None = env_field(
        None,
        "MAX_SESSIONS_PER_USER",
        description="Active sessions kept per user and device; unset or 0 disables capping",
    )
    session_pruner_enabled: bool = env_field(True, "SESSION_PRUNER_ENABLED")
    session_prune_interval_seconds: int = env_field(
        60 * 60, "SESSION_PRUNE_INTERVAL_SECONDS"
    )

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for memory-store state snapshots; unset keeps state in-process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_apple_client_id: str | None = env_field(None, "OAUTH_APPLE_CLIENT_ID")
    oauth_apple_client_secret: str | None = env_field(
        None,
        "OAUTH_APPLE_CLIENT_SECRET",
        description="Pre-signed Apple client secret JWT",
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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
        try:
            return cls(**merged)
        except ValidationError as exc:
            fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
            logger.error("settings_invalid", fields=fields)
            raise ConfigurationError(
                "invalid configuration", detail={"fields": fields}
            ) from exc

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def _validate_ttl(cls, value: str) -> str:
        try:
            parse_ttl(value)
        except ConfigurationError as exc:
            raise ValueError(exc.message) from exc
        return value.strip()

    @field_validator("max_sessions_per_user")
    @classmethod
    def _normalize_session_cap(cls, value: int | None) -> int | None:
        if value is None or value == 0:
            return None
        if value < 0:
            raise ValueError("max_sessions_per_user must be positive")
        return value

    @field_validator("expiring_soon_threshold_seconds", "session_prune_interval_seconds")
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_ttl(self.access_token_ttl)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_ttl(self.refresh_token_ttl)


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
