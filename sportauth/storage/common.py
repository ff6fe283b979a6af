"""Helpers and contracts shared by the memory and Postgres account stores.

Both backends must uphold the same invariants: case-insensitive unique
email, unique username, one identity per provider per account, a
(provider, provider_id) pair owned by at most one account, and atomic
session-list mutation (a rotation or removal either observes the token and
replaces it in one step, or reports that it was absent).
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from sportauth.logging import get_logger
from sportauth.storage.models import (
    Account,
    ApiKey,
    AuditEvent,
    AuditFilters,
    MfaSettings,
    Profile,
    SessionEntry,
    SocialIdentity,
)

logger = get_logger(__name__)

TOKEN_HINT_LENGTH = 8


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    return username.strip().lower()


def hash_token(token: str) -> str:
    """SHA-256 digest used to store refresh and recovery tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_hint(token: str) -> str:
    """Tail of the signature segment; JWT headers and claims prefixes are shared by every token."""
    return "..." + token.rsplit(".", 1)[-1][-TOKEN_HINT_LENGTH:]


class SecretCipher:
    """Fernet wrapper for MFA secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(key)

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # A secret encrypted under another key is unusable; treat as missing
            logger.error("mfa_secret_decrypt_failed")
            return None


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        username: str,
        first_name: str = "",
        last_name: str = "",
        is_email_verified: bool = False,
        social_login: Optional[SocialIdentity] = None,
    ) -> Tuple[Account, Profile]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Account]: ...

    def get_profile(self, account_id: str) -> Optional[Profile]: ...

    def username_exists(self, username: str) -> bool: ...

    def update_account(self, account_id: str, **fields) -> Optional[Account]: ...

    # sessions
    def add_session(
        self, account_id: str, entry: SessionEntry, *, max_sessions: int
    ) -> List[SessionEntry]: ...

    def remove_session(self, account_id: str, token_hash: str) -> bool: ...

    def remove_session_at(self, account_id: str, index: int) -> Optional[SessionEntry]: ...

    def rotate_session(
        self,
        account_id: str,
        old_token_hash: str,
        new_token_hash: str,
        new_token_hint: str,
        *,
        used_at: datetime,
    ) -> bool: ...

    def clear_sessions(self, account_id: str) -> int: ...

    def list_sessions(self, account_id: str) -> List[SessionEntry]: ...

    # lockout
    def register_login_failure(
        self,
        account_id: str,
        *,
        now: datetime,
        window_start: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[Tuple[int, Optional[datetime]]]: ...

    def reset_login_failures(self, account_id: str) -> None: ...

    # mfa
    def get_mfa(self, account_id: str) -> Optional[MfaSettings]: ...

    def enable_mfa(
        self, account_id: str, secret: str, backup_code_hashes: List[str]
    ) -> bool: ...

    def replace_backup_codes(
        self, account_id: str, backup_code_hashes: List[str]
    ) -> None: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...

    def touch_mfa(self, account_id: str, used_at: datetime) -> None: ...

    def clear_mfa(self, account_id: str) -> None: ...

    # social identities
    def add_social_login(self, account_id: str, identity: SocialIdentity) -> None: ...

    def remove_social_login(self, account_id: str, provider: str) -> bool: ...

    # recovery tokens
    def set_password_reset(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def find_password_reset(self, token_hash: str, now: datetime) -> Optional[Account]: ...

    def complete_password_reset(
        self, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def set_email_verification(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def consume_email_verification(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]: ...


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> None: ...

    def get_audit_event(self, event_id: str) -> Optional[AuditEvent]: ...

    def query_audit_events(
        self, filters: AuditFilters, *, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[AuditEvent], int]: ...

    def acknowledge_audit_event(
        self, event_id: str, actor_id: str, at: datetime
    ) -> Optional[AuditEvent]: ...

    def purge_expired_audit_events(self, cutoff: datetime) -> int: ...


class ApiKeyStore(Protocol):
    def create_api_key(self, key: ApiKey) -> ApiKey: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKey]: ...

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]: ...

    def list_api_keys(
        self, account_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[ApiKey], int]: ...

    def update_api_key(self, key_id: str, **fields) -> Optional[ApiKey]: ...

    def touch_api_key(self, key_id: str, used_at: datetime) -> None: ...

    def delete_api_key(self, key_id: str) -> bool: ...


def audit_matches(event: AuditEvent, filters: AuditFilters) -> bool:
    """In-process equivalent of the Postgres audit WHERE clause."""
    if filters.account_id and event.account_id != filters.account_id:
        return False
    if filters.severity and event.severity != filters.severity:
        return False
    if filters.severities and event.severity not in filters.severities:
        return False
    if filters.action and event.action != filters.action:
        return False
    if filters.start and event.timestamp < filters.start:
        return False
    if filters.end and event.timestamp > filters.end:
        return False
    return True


__all__ = [
    "AccountStore",
    "ApiKeyStore",
    "AuditStore",
    "SecretCipher",
    "audit_matches",
    "hash_token",
    "normalize_email",
    "normalize_username",
    "token_hint",
]
