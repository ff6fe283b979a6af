from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(str, Enum):
    """Closed set of security-relevant actions written to the audit log."""

    REGISTER = "register"
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    REFRESH_TOKEN_REUSE = "refresh_token_reuse"
    SESSION_REVOKED = "session_revoked"
    ALL_SESSIONS_REVOKED = "all_sessions_revoked"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_CHANGE_FAILED = "password_change_failed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    PASSWORD_RESET_FAILED = "password_reset_failed"
    EMAIL_VERIFICATION_REQUESTED = "email_verification_requested"
    EMAIL_VERIFIED = "email_verified"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    ACCOUNT_DEACTIVATION_FAILED = "account_deactivation_failed"
    MFA_SETUP_STARTED = "mfa_setup_started"
    MFA_ENABLED = "mfa_enabled"
    MFA_ENABLE_FAILED = "mfa_enable_failed"
    MFA_DISABLED = "mfa_disabled"
    MFA_DISABLE_FAILED = "mfa_disable_failed"
    MFA_LOGIN_SUCCESS = "mfa_login_success"
    MFA_LOGIN_FAILED = "mfa_login_failed"
    MFA_BACKUP_CODE_USED = "mfa_backup_code_used"
    MFA_BACKUP_CODES_REGENERATED = "mfa_backup_codes_regenerated"
    OAUTH_LOGIN = "oauth_login"
    OAUTH_LOGIN_FAILED = "oauth_login_failed"
    OAUTH_ACCOUNT_LINKED = "oauth_account_linked"
    OAUTH_LINK_FAILED = "oauth_link_failed"
    OAUTH_ACCOUNT_UNLINKED = "oauth_account_unlinked"
    OAUTH_UNLINK_FAILED = "oauth_unlink_failed"
    SECURITY_ALERT_ACKNOWLEDGED = "security_alert_acknowledged"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    API_KEY_CREATED = "api_key_created"
    API_KEY_USED = "api_key_used"
    API_KEY_UPDATED = "api_key_updated"
    API_KEY_REGENERATED = "api_key_regenerated"
    API_KEY_DELETED = "api_key_deleted"
    API_KEY_RATE_LIMITED = "api_key_rate_limited"
    API_KEY_EXPIRED = "api_key_expired"
    API_KEY_REJECTED = "api_key_rejected"


class AuditResource(str, Enum):
    USER = "user"
    AUTH = "auth"
    MFA = "mfa"
    OAUTH = "oauth"
    SECURITY = "security"
    ADMIN = "admin"
    API_KEY = "api_key"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class SecurityState:
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_failed_login: Optional[datetime] = None


@dataclass
class MfaSettings:
    """MFA state as seen by services; ``secret`` is plaintext here, encrypted at rest."""

    enabled: bool = False
    secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    last_used_at: Optional[datetime] = None


@dataclass
class SessionEntry:
    """One live refresh token. Only the SHA-256 digest of the token is kept."""

    token_hash: str
    token_hint: str
    issued_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class SocialIdentity:
    provider: str
    provider_id: str
    email: Optional[str] = None
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class Profile:
    id: str
    account_id: str
    username: str
    first_name: str = ""
    last_name: str = ""
    avatar: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    role: str = "user"
    profile_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    security: SecurityState = field(default_factory=SecurityState)
    mfa: MfaSettings = field(default_factory=MfaSettings)
    sessions: List[SessionEntry] = field(default_factory=list)
    social_logins: List[SocialIdentity] = field(default_factory=list)
    password_reset_token_hash: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_expires: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def auth_method_count(self) -> int:
        return (1 if self.has_password else 0) + len(self.social_logins)

    def social_login(self, provider: str) -> Optional[SocialIdentity]:
        return next((s for s in self.social_logins if s.provider == provider), None)


@dataclass
class ApiKey:
    """A service credential. Only the SHA-256 digest of the key is stored."""

    id: str
    account_id: str
    name: str
    key_hash: str
    key_prefix: str
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    max_requests: int = 1000
    window_seconds: int = 3600
    allowed_ips: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class AuditEvent:
    id: str
    action: AuditAction
    resource: AuditResource
    status: AuditStatus
    severity: Severity
    timestamp: datetime
    account_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    api_key_id: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        action: AuditAction,
        resource: AuditResource,
        *,
        status: AuditStatus,
        severity: Severity,
        account_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        api_key_id: Optional[str] = None,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            resource=resource,
            status=status,
            severity=severity,
            timestamp=utcnow(),
            account_id=account_id,
            resource_id=resource_id,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
            api_key_id=api_key_id,
        )


@dataclass
class AuditFilters:
    account_id: Optional[str] = None
    severity: Optional[Severity] = None
    action: Optional[AuditAction] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    severities: Optional[List[Severity]] = None
