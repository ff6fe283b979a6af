from __future__ import annotations

import os
import re
import secrets
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sportauth.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> int:
    """Convert ``7d`` / ``12h`` / ``30m`` / ``45s`` / ``3600`` into seconds."""
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '7d'")
    if isinstance(value, (int, float)):
        seconds = int(value)
    else:
        match = _DURATION_PATTERN.match(str(value))
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        seconds = int(amount) * _DURATION_UNITS[unit.lower()]
    if seconds <= 0:
        raise ValueError("duration must be positive")
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sportification", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sportauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: sync Redis client, in-process fallbacks allowed.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Tokens
    jwt_access_secret: Optional[str] = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: Optional[str] = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("sportification-api", "JWT_ISSUER")
    jwt_audience: str = env_field("sportification-client", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        7 * 86400,
        "ACCESS_TOKEN_TTL",
        description="Access token lifetime; accepts 7d, 12h, 30m, 45s or bare seconds",
    )
    refresh_token_ttl_seconds: int = env_field(
        30 * 86400,
        "REFRESH_TOKEN_TTL",
        description="Refresh token lifetime; accepts 30d, 12h, 30m, 45s or bare seconds",
    )

    # Password hashing (argon2id work factor)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_KIB", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    lockout_failure_window_minutes: int = env_field(
        120,
        "LOCKOUT_FAILURE_WINDOW_MINUTES",
        ge=1,
        description="Failures older than this no longer count toward the threshold",
    )

    max_sessions_per_account: int = env_field(5, "MAX_SESSIONS_PER_ACCOUNT", ge=1)

    # MFA
    mfa_issuer_name: str = env_field("Sportification", "MFA_ISSUER_NAME")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT", ge=1)
    mfa_status_cache_seconds: int = env_field(300, "MFA_STATUS_CACHE_SECONDS", ge=1)
    mfa_valid_window: int = env_field(2, "MFA_VALID_WINDOW", ge=0)
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS", ge=30)
    mfa_encryption_key: Optional[str] = env_field(None, "MFA_ENCRYPTION_KEY")

    audit_retention_days: int = env_field(730, "AUDIT_RETENTION_DAYS", ge=1)

    # Account recovery / email
    email_token_ttl_hours: int = env_field(24, "EMAIL_TOKEN_TTL_HOURS", ge=1)
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sportification", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    disclose_social_only_login: bool = env_field(
        True,
        "DISCLOSE_SOCIAL_ONLY_LOGIN",
        description="Tell password logins on social-only accounts to use social login",
    )

    oauth_callback_secret: Optional[str] = env_field(
        None,
        "OAUTH_CALLBACK_SECRET",
        description="Shared secret the provider callback layer sends with exchanged OAuth profiles",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("access_token_ttl_seconds", "refresh_token_ttl_seconds", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> int:
        return parse_duration(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_secret(cls, value: Optional[str], info) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", field=info.field_name, length=len(value))
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning("jwt_secret_generated", field=info.field_name)
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _check_secrets_differ(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if self.refresh_token_ttl_seconds < self.access_token_ttl_seconds:
            logger.warning(
                "refresh_ttl_shorter_than_access",
                access_ttl=self.access_token_ttl_seconds,
                refresh_ttl=self.refresh_token_ttl_seconds,
            )
        return self

    @property
    def mfa_key_material(self) -> str:
        return self.mfa_encryption_key or f"mfa:{self.jwt_refresh_secret}"


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
