from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sportauth.logging import get_correlation_id

MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 2048


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "token_invalid",
    "invalid_code",
    "mfa_state",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.]+$")


def _validate_username(value: str) -> str:
    """3-30 characters: letters, digits, underscores and dots."""
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 30:
        raise ValueError("username must be at most 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username must contain only letters, digits, underscores and dots")
    return value


def _validate_password_length(value: str) -> str:
    # Composition rules are enforced by the password policy, which reports all of them
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


# -- requests -----------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str
    username: str
    first_name: str = Field(default="", max_length=50)
    last_name: str = Field(default="", max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MfaLoginRequest(BaseModel):
    challenge_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    code: str = Field(..., min_length=1, max_length=16)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(default="", max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    """Omit ``refresh_token`` to end every session of the account."""

    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class TokenRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ResendVerificationRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class MfaEnableRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=128)
    code: str = Field(..., min_length=1, max_length=16)
    backup_codes: List[str] = Field(..., min_length=1, max_length=20)


class OAuthProfileRequest(BaseModel):
    """Profile returned by a provider after the code exchange."""

    provider: str = Field(..., max_length=32)
    provider_id: str = Field(..., min_length=1, max_length=256)
    email: str = Field(default="", max_length=254)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    display_name: Optional[str] = Field(default=None, max_length=100)
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("email")
    @classmethod
    def _validate_oauth_email(cls, value: str) -> str:
        return _validate_email(value) if value else value


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: List[str] = Field(default_factory=list, max_length=16)
    allowed_ips: List[str] = Field(default_factory=list, max_length=50)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=3650)
    max_requests: int = 1000
    window_seconds: int = 3600


class ApiKeyUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    permissions: Optional[List[str]] = Field(default=None, max_length=16)
    allowed_ips: Optional[List[str]] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None
    max_requests: Optional[int] = None
    window_seconds: Optional[int] = None


# -- responses ----------------------------------------------------------------


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class ProfileResponse(BaseModel):
    id: str
    username: str
    first_name: str = ""
    last_name: str = ""
    avatar: Optional[str] = None


class AccountResponse(BaseModel):
    id: str
    email: str
    role: str = "user"
    is_active: bool = True
    is_email_verified: bool = False
    mfa_enabled: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None
    profile: Optional[ProfileResponse] = None
    linked_providers: List[str] = Field(default_factory=list)


class AuthResponse(BaseModel):
    account: Optional[AccountResponse] = None
    tokens: Optional[TokenResponse] = None
    is_new_account: bool = False
    mfa_required: bool = False
    challenge_token: Optional[str] = None


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str]


class MfaStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int


class SessionResponse(BaseModel):
    index: int
    token: str = Field(..., description="Masked refresh token hint")
    issued_at: datetime
    last_used_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class AuditEventResponse(BaseModel):
    id: str
    action: str
    resource: str
    status: str
    severity: str
    timestamp: datetime
    account_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    api_key_id: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None


class AuditPageResponse(BaseModel):
    events: List[AuditEventResponse]
    total: int
    page: int
    limit: int
    pages: int


class SecurityMetricsResponse(BaseModel):
    period: str
    start: datetime
    end: datetime
    total_events: int
    failed_logins: int
    successful_logins: int
    login_success_rate: int
    events_by_severity: Dict[str, int]
    mfa_events: Dict[str, int]
    top_failed_ips: List[Dict[str, Any]]


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    key_prefix: str = Field(..., description="First characters of the key, for recognition")
    permissions: List[str]
    is_active: bool
    max_requests: int
    window_seconds: int
    allowed_ips: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime


class IssuedApiKeyResponse(BaseModel):
    api_key: ApiKeyResponse
    key: str = Field(..., description="Shown once; only its digest is stored")
