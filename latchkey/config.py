from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from latchkey.logging import get_logger
from latchkey.service.errors import ConfigMissingError
from latchkey.service.roles import Role

logger = get_logger(__name__)

MIN_SIGNING_SECRET_LENGTH = 32
MIN_ADMIN_PASSWORD_LENGTH = 12
WEAK_SECRET_VALUES = frozenset(
    {"password", "password123", "admin", "admin123", "changeme", "letmein", "123456", "qwerty"}
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _is_weak(value: str) -> bool:
    return value.strip().lower() in WEAK_SECRET_VALUES


class Settings(BaseModel):
    """Process-wide configuration, resolved once from the environment.

    Secrets are optional at load time so a partially configured deployment
    can still serve the roles it has secrets for; the accessors below raise
    ConfigMissingError the moment an unconfigured secret is needed.
    """

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Permit the in-memory store and other deterministic test behaviors",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins allowed to call the API with credentials",
    )

    # Secrets
    auth_secret: str | None = env_field(None, "AUTH_SECRET")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")
    staff_pin: str | None = env_field(None, "STAFF_PIN")
    upload_pin: str | None = env_field(None, "UPLOAD_PIN")
    cron_secret: str | None = env_field(None, "CRON_SECRET")

    # Sessions
    admin_session_ttl_seconds: int = env_field(60 * 60, "ADMIN_SESSION_TTL_SECONDS", gt=0)
    staff_session_ttl_seconds: int = env_field(24 * 60 * 60, "STAFF_SESSION_TTL_SECONDS", gt=0)
    upload_session_ttl_seconds: int = env_field(12 * 60 * 60, "UPLOAD_SESSION_TTL_SECONDS", gt=0)
    step_up_ttl_seconds: int = env_field(5 * 60, "STEP_UP_TTL_SECONDS", gt=0)
    session_listing_limit: int = env_field(250, "SESSION_LISTING_LIMIT", gt=0)

    # Credential verification
    verify_max_attempts: int = env_field(5, "VERIFY_MAX_ATTEMPTS", gt=0)
    verify_lockout_seconds: int = env_field(15 * 60, "VERIFY_LOCKOUT_SECONDS", gt=0)
    verify_rate_limit_per_minute: int = env_field(
        30,
        "VERIFY_RATE_LIMIT_PER_MINUTE",
        gt=0,
        description="Burst limit on verify calls per role and client address",
    )

    # Share links
    share_default_expiry_days: int = env_field(7, "SHARE_DEFAULT_EXPIRY_DAYS", gt=0)
    share_max_expiry_days: int = env_field(30, "SHARE_MAX_EXPIRY_DAYS", gt=0)
    share_record_retention_days: int = env_field(30, "SHARE_RECORD_RETENTION_DAYS", ge=0)
    share_pin_max_attempts: int = env_field(5, "SHARE_PIN_MAX_ATTEMPTS", gt=0)
    share_pin_lockout_seconds: int = env_field(15 * 60, "SHARE_PIN_LOCKOUT_SECONDS", gt=0)
    share_access_token_max_ttl_seconds: int = env_field(
        24 * 60 * 60, "SHARE_ACCESS_TOKEN_MAX_TTL_SECONDS", gt=0
    )

    # Vote codes
    vote_code_default_ttl_minutes: int = env_field(6 * 60, "VOTE_CODE_DEFAULT_TTL_MINUTES", gt=0)
    vote_code_min_ttl_minutes: int = env_field(15, "VOTE_CODE_MIN_TTL_MINUTES", gt=0)
    vote_code_max_ttl_minutes: int = env_field(12 * 60, "VOTE_CODE_MAX_TTL_MINUTES", gt=0)
    vote_code_max_batch: int = env_field(200, "VOTE_CODE_MAX_BATCH", gt=0)

    mint_max_attempts: int = env_field(
        5,
        "MINT_MAX_ATTEMPTS",
        gt=0,
        description="Set-if-absent retries before minting a token or code gives up",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator(
        "auth_secret", "admin_password", "staff_pin", "upload_pin", "cron_secret", "redis_url"
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "Settings":
        if self.share_default_expiry_days > self.share_max_expiry_days:
            raise ValueError("SHARE_DEFAULT_EXPIRY_DAYS exceeds SHARE_MAX_EXPIRY_DAYS")
        if self.vote_code_min_ttl_minutes > self.vote_code_max_ttl_minutes:
            raise ValueError("VOTE_CODE_MIN_TTL_MINUTES exceeds VOTE_CODE_MAX_TTL_MINUTES")
        return self

    def signing_secret(self) -> str:
        """Return the HMAC key for every signed token, refusing unusable values."""
        secret = self.auth_secret
        if not secret:
            raise ConfigMissingError("AUTH_SECRET")
        if len(secret) < MIN_SIGNING_SECRET_LENGTH or _is_weak(secret):
            raise ConfigMissingError("AUTH_SECRET", "too weak to sign tokens")
        return secret

    def role_secret(self, role: Role) -> str:
        name, value = {
            Role.ADMIN: ("ADMIN_PASSWORD", self.admin_password),
            Role.STAFF: ("STAFF_PIN", self.staff_pin),
            Role.UPLOAD: ("UPLOAD_PIN", self.upload_pin),
            Role.CRON: ("CRON_SECRET", self.cron_secret),
        }[role]
        if not value:
            raise ConfigMissingError(name)
        return value

    def session_ttl_seconds(self, role: Role) -> int:
        return {
            Role.ADMIN: self.admin_session_ttl_seconds,
            Role.STAFF: self.staff_session_ttl_seconds,
            Role.UPLOAD: self.upload_session_ttl_seconds,
        }[role]

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        if not self.auth_secret:
            warnings.append("AUTH_SECRET is not set; no sessions can be issued")
        else:
            if len(self.auth_secret) < MIN_SIGNING_SECRET_LENGTH:
                warnings.append(
                    f"AUTH_SECRET must be at least {MIN_SIGNING_SECRET_LENGTH} characters"
                )
            if _is_weak(self.auth_secret):
                warnings.append("AUTH_SECRET uses a common value")
        if self.admin_password:
            if len(self.admin_password) < MIN_ADMIN_PASSWORD_LENGTH:
                warnings.append(
                    f"ADMIN_PASSWORD should be at least {MIN_ADMIN_PASSWORD_LENGTH} characters"
                )
            if _is_weak(self.admin_password):
                warnings.append("ADMIN_PASSWORD uses a common value")
        for name, value in (("STAFF_PIN", self.staff_pin), ("UPLOAD_PIN", self.upload_pin)):
            if value and _is_weak(value):
                warnings.append(f"{name} uses a common value")
        if self.cron_secret and len(self.cron_secret) < MIN_SIGNING_SECRET_LENGTH:
            warnings.append(
                f"CRON_SECRET should be at least {MIN_SIGNING_SECRET_LENGTH} characters"
            )
        return warnings


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        for warning in _settings_cache.security_warnings():
            logger.warning("security_config_warning", warning=warning)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
