from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gonews.logging import get_logger

logger = get_logger(__name__)


class TokenStoreBackend(str, Enum):
    """Where the client persists its token pair and profile snapshot."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session client and the reference auth backend."""

    # Client: remote API
    api_base_url: str = env_field("http://localhost:8080", "GONEWS_API_BASE_URL")
    api_base_path: str = env_field("/api/v1", "GONEWS_API_BASE_PATH")
    connect_timeout_seconds: float = env_field(30.0, "GONEWS_CONNECT_TIMEOUT")
    read_timeout_seconds: float = env_field(30.0, "GONEWS_READ_TIMEOUT")
    get_max_retries: int = env_field(
        3,
        "GONEWS_GET_MAX_RETRIES",
        description="Retries for idempotent GET requests on network/server errors",
    )
    get_retry_delay_seconds: float = env_field(2.0, "GONEWS_GET_RETRY_DELAY")
    remember_me_default: bool = env_field(False, "GONEWS_REMEMBER_ME")

    # Client: token persistence
    token_store_backend: TokenStoreBackend = env_field(
        TokenStoreBackend.FILE, "GONEWS_TOKEN_STORE"
    )
    token_store_path: str = env_field(
        str(Path.home() / ".gonews" / "session.json"), "GONEWS_TOKEN_STORE_PATH"
    )
    token_store_encryption_key: str | None = env_field(
        None,
        "GONEWS_TOKEN_STORE_KEY",
        description="Key material for encrypting the file token store at rest",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_key_prefix: str = env_field("gonews:session:", "GONEWS_REDIS_PREFIX")
    token_refresh_threshold_seconds: int = env_field(
        300,
        "GONEWS_TOKEN_REFRESH_THRESHOLD",
        description="Refresh the access token when it expires within this window",
    )

    # Client: refresh hardening
    refresh_max_attempts: int = env_field(3, "GONEWS_REFRESH_MAX_ATTEMPTS")
    refresh_backoff_base_seconds: float = env_field(0.5, "GONEWS_REFRESH_BACKOFF_BASE")
    refresh_backoff_max_seconds: float = env_field(8.0, "GONEWS_REFRESH_BACKOFF_MAX")
    refresh_circuit_failure_threshold: int = env_field(
        5, "GONEWS_REFRESH_CIRCUIT_THRESHOLD"
    )
    refresh_circuit_cooldown_seconds: float = env_field(
        60.0, "GONEWS_REFRESH_CIRCUIT_COOLDOWN"
    )

    # Reference backend
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gonews", "JWT_ISSUER")
    jwt_audience: str = env_field("gonews-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    remember_me_refresh_ttl_minutes: int = env_field(
        30 * 24 * 60, "REMEMBER_ME_REFRESH_TTL_MINUTES"
    )
    otp_expiry_minutes: int = env_field(10, "OTP_EXPIRY_MINUTES")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_hourly_limit: int = env_field(5, "OTP_HOURLY_LIMIT")
    otp_daily_limit: int = env_field(10, "OTP_DAILY_LIMIT")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")
    backend_state_path: str | None = env_field(
        None,
        "BACKEND_STATE_PATH",
        description="Persist reference backend users to this JSON file",
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("GoNews", "EMAIL_FROM_NAME")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for tests (in-memory outbox, runtime reset)",
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

    @property
    def full_base_url(self) -> str:
        return self.api_base_url.rstrip("/") + "/" + self.api_base_path.strip("/")

    @field_validator("token_store_backend")
    @classmethod
    def _validate_store_backend(cls, value: TokenStoreBackend) -> TokenStoreBackend:
        return TokenStoreBackend(value)

    @field_validator(
        "token_refresh_threshold_seconds",
        "refresh_max_attempts",
        "refresh_circuit_failure_threshold",
        "otp_max_attempts",
        "otp_expiry_minutes",
        "otp_resend_cooldown_seconds",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("refresh_max_attempts", "otp_max_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens minted by an unconfigured dev backend do not survive restarts
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using an ephemeral secret",
        )
        return secrets.token_urlsafe(64)


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
