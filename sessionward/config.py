from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Storage implementations selectable at construction time."""

    MEMORY = "memory"
    POSTGRES = "postgres"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session engine."""

    storage_backend: StorageBackend = env_field(StorageBackend.MEMORY, "STORAGE_BACKEND")
    database_url: str | None = env_field(None, "DATABASE_URL")
    database_pool_min: int = env_field(1, "DATABASE_POOL_MIN")
    database_pool_max: int = env_field(10, "DATABASE_POOL_MAX")
    redis_url: str | None = env_field(None, "REDIS_URL")

    # Token signing
    jwt_secret: str = env_field("", "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Refresh token signing secret; derived from JWT_SECRET when unset",
    )
    jwt_pending_secret: str | None = env_field(None, "JWT_PENDING_SECRET")
    jwt_issuer: str = env_field("sessionward", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionward-clients", "JWT_AUDIENCE")

    # Lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES")
    pending_token_ttl_minutes: int = env_field(5, "PENDING_TOKEN_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(
        60 * 24, "EMAIL_VERIFICATION_TTL_MINUTES"
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Account rules
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    token_blacklisting: bool = env_field(True, "TOKEN_BLACKLISTING")
    default_role: str = env_field("user", "DEFAULT_ROLE")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")

    # argon2id cost; argon2-cffi defaults
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Second factor
    totp_issuer: str = env_field("Sessionward", "TOTP_ISSUER")
    totp_window: int = env_field(1, "TOTP_WINDOW")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; falls back to JWT_SECRET",
    )

    # Deadlines for offloaded work
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS")
    hash_timeout_seconds: float = env_field(10.0, "HASH_TIMEOUT_SECONDS")
    cleanup_interval_minutes: int = env_field(5, "CLEANUP_INTERVAL_MINUTES")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Email notifier
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sessionward", "EMAIL_FROM_NAME")
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
        return cls(**merged)

    @field_validator("storage_backend")
    @classmethod
    def _validate_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "pending_token_ttl_minutes",
        "email_verification_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _check_backend_requirements(self) -> "Settings":
        if self.storage_backend == StorageBackend.POSTGRES and not self.database_url:
            raise ValueError("DATABASE_URL is required when STORAGE_BACKEND=postgres")
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
