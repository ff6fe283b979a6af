from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sportauth.logging import get_logger
from sportauth.storage.common import (
    SecretCipher,
    audit_matches,
    normalize_email,
    normalize_username,
)
from sportauth.storage.errors import ConstraintViolation, StorageUnavailable
from sportauth.storage.models import (
    Account,
    ApiKey,
    AuditAction,
    AuditEvent,
    AuditFilters,
    AuditResource,
    AuditStatus,
    MfaSettings,
    Profile,
    SecurityState,
    SessionEntry,
    Severity,
    SocialIdentity,
    utcnow,
)


class MemoryStore:
    """In-process account and audit store.

    Every read and write happens under one re-entrant lock, which makes the
    session-list operations atomic conditional updates. Callers always get
    copies, never the live records. When ``fs_root`` is given the state is
    snapshotted to ``<fs_root>/state/account_store.json`` after each write.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        mfa_encryption_key: str,
        audit_retention_days: int = 730,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.profiles: Dict[str, Profile] = {}
        self.audit_events: List[AuditEvent] = []
        self.api_keys: Dict[str, ApiKey] = {}
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)
        self.audit_retention = timedelta(days=audit_retention_days)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- helpers -----------------------------------------------------------

    def _account_view(self, account: Optional[Account]) -> Optional[Account]:
        if account is None:
            return None
        view = copy.deepcopy(account)
        view.mfa.secret = self._cipher.decrypt(view.mfa.secret)
        return view

    def _require(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    def _find_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        return next((a for a in self.accounts.values() if a.email == normalized), None)

    def _find_by_provider(self, provider: str, provider_id: str) -> Optional[Account]:
        for account in self.accounts.values():
            for identity in account.social_logins:
                if identity.provider == provider and identity.provider_id == provider_id:
                    return account
        return None

    # -- accounts ----------------------------------------------------------

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
    ) -> Tuple[Account, Profile]:
        normalized_email = normalize_email(email)
        handle = normalize_username(username)
        with self._data_lock:
            if self._find_by_email(normalized_email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(p.username == handle for p in self.profiles.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if social_login and self._find_by_provider(
                social_login.provider, social_login.provider_id
            ):
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider"}
                )
            account_id = str(uuid.uuid4())
            profile = Profile(
                id=str(uuid.uuid4()),
                account_id=account_id,
                username=handle,
                first_name=first_name,
                last_name=last_name,
            )
            account = Account(
                id=account_id,
                email=normalized_email,
                password_hash=password_hash,
                is_email_verified=is_email_verified,
                profile_id=profile.id,
                social_logins=[copy.deepcopy(social_login)] if social_login else [],
            )
            # Both records are inserted in the same critical section
            self.accounts[account_id] = account
            self.profiles[account_id] = profile
            self._persist_state()
            return self._account_view(account), copy.deepcopy(profile)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._account_view(self.accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return self._account_view(self._find_by_email(email))

    def get_account_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            return self._account_view(self._find_by_provider(provider, provider_id))

    def get_profile(self, account_id: str) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(account_id)
            return copy.deepcopy(profile) if profile else None

    def username_exists(self, username: str) -> bool:
        handle = normalize_username(username)
        with self._data_lock:
            return any(p.username == handle for p in self.profiles.values())

    _UPDATABLE_FIELDS = {"password_hash", "is_active", "is_email_verified", "last_login_at", "role"}

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for name, value in fields.items():
                setattr(account, name, value)
            self._persist_state()
            return self._account_view(account)

    # -- sessions ----------------------------------------------------------

    def add_session(
        self, account_id: str, entry: SessionEntry, *, max_sessions: int
    ) -> List[SessionEntry]:
        """Append a session, evicting the oldest entries beyond ``max_sessions``."""
        with self._data_lock:
            account = self._require(account_id)
            account.sessions.append(copy.deepcopy(entry))
            evicted: List[SessionEntry] = []
            while len(account.sessions) > max_sessions:
                evicted.append(account.sessions.pop(0))
            self._persist_state()
            return evicted

    def remove_session(self, account_id: str, token_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            for idx, entry in enumerate(account.sessions):
                if entry.token_hash == token_hash:
                    del account.sessions[idx]
                    self._persist_state()
                    return True
            return False

    def remove_session_at(self, account_id: str, index: int) -> Optional[SessionEntry]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or index < 0 or index >= len(account.sessions):
                return None
            removed = account.sessions.pop(index)
            self._persist_state()
            return removed

    def rotate_session(
        self,
        account_id: str,
        old_token_hash: str,
        new_token_hash: str,
        new_token_hint: str,
        *,
        used_at: datetime,
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            for entry in account.sessions:
                if entry.token_hash == old_token_hash:
                    entry.token_hash = new_token_hash
                    entry.token_hint = new_token_hint
                    entry.last_used_at = used_at
                    self._persist_state()
                    return True
            return False

    def clear_sessions(self, account_id: str) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return 0
            count = len(account.sessions)
            account.sessions = []
            if count:
                self._persist_state()
            return count

    def list_sessions(self, account_id: str) -> List[SessionEntry]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account.sessions) if account else []

    # -- lockout -----------------------------------------------------------

    def register_login_failure(
        self,
        account_id: str,
        *,
        now: datetime,
        window_start: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Optional[Tuple[int, Optional[datetime]]]:
        """Count a failure; returns (attempts counted, lock-until after the write)."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            state = account.security
            if state.last_failed_login is None or state.last_failed_login < window_start:
                attempts = 1
            else:
                attempts = state.login_attempts + 1
            state.last_failed_login = now
            if attempts >= threshold:
                state.login_attempts = 0
                state.lock_until = lock_until
            else:
                state.login_attempts = attempts
            self._persist_state()
            return attempts, state.lock_until

    def reset_login_failures(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.security.login_attempts == 0:
                return
            account.security.login_attempts = 0
            account.security.last_failed_login = None
            self._persist_state()

    # -- mfa ---------------------------------------------------------------

    def get_mfa(self, account_id: str) -> Optional[MfaSettings]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            view = copy.deepcopy(account.mfa)
            view.secret = self._cipher.decrypt(view.secret)
            return view

    def enable_mfa(
        self, account_id: str, secret: str, backup_code_hashes: List[str]
    ) -> bool:
        """Commit MFA settings unless MFA is already enabled."""
        with self._data_lock:
            account = self._require(account_id)
            if account.mfa.enabled:
                return False
            account.mfa = MfaSettings(
                enabled=True,
                secret=self._cipher.encrypt(secret),
                backup_codes=list(backup_code_hashes),
            )
            self._persist_state()
            return True

    def replace_backup_codes(
        self, account_id: str, backup_code_hashes: List[str]
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.mfa.backup_codes = list(backup_code_hashes)
            self._persist_state()

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or code_hash not in account.mfa.backup_codes:
                return False
            account.mfa.backup_codes.remove(code_hash)
            account.mfa.last_used_at = utcnow()
            self._persist_state()
            return True

    def touch_mfa(self, account_id: str, used_at: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.mfa.last_used_at = used_at
                self._persist_state()

    def clear_mfa(self, account_id: str) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.mfa = MfaSettings()
            self._persist_state()

    # -- social identities -------------------------------------------------

    def add_social_login(self, account_id: str, identity: SocialIdentity) -> None:
        with self._data_lock:
            account = self._require(account_id)
            if account.social_login(identity.provider):
                raise ConstraintViolation(
                    "provider already linked to this account", {"field": "provider"}
                )
            owner = self._find_by_provider(identity.provider, identity.provider_id)
            if owner:
                raise ConstraintViolation(
                    "provider identity linked to another account",
                    {"field": "provider_id"},
                )
            account.social_logins.append(copy.deepcopy(identity))
            self._persist_state()

    def remove_social_login(self, account_id: str, provider: str) -> bool:
        """Unlink ``provider``; refuses to remove the last authentication method."""
        with self._data_lock:
            account = self._require(account_id)
            identity = account.social_login(provider)
            if not identity:
                return False
            if account.auth_method_count() <= 1:
                raise ConstraintViolation(
                    "cannot remove the last authentication method",
                    {"field": "provider"},
                )
            account.social_logins.remove(identity)
            self._persist_state()
            return True

    # -- recovery tokens ---------------------------------------------------

    def set_password_reset(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.password_reset_token_hash = token_hash
            account.password_reset_expires = expires_at
            self._persist_state()

    def _reset_holder(self, token_hash: str, now: datetime) -> Optional[Account]:
        for account in self.accounts.values():
            if (
                account.password_reset_token_hash == token_hash
                and account.password_reset_expires
                and account.password_reset_expires > now
            ):
                return account
        return None

    def find_password_reset(self, token_hash: str, now: datetime) -> Optional[Account]:
        with self._data_lock:
            return self._account_view(self._reset_holder(token_hash, now))

    def complete_password_reset(
        self, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        """Consume the reset token, store the new hash and drop every session."""
        with self._data_lock:
            account = self._reset_holder(token_hash, now)
            if not account:
                return None
            account.password_hash = password_hash
            account.password_reset_token_hash = None
            account.password_reset_expires = None
            account.sessions = []
            account.security = SecurityState()
            self._persist_state()
            return self._account_view(account)

    def set_email_verification(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.email_verification_token_hash = token_hash
            account.email_verification_expires = expires_at
            self._persist_state()

    def consume_email_verification(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.email_verification_token_hash == token_hash
                    and account.email_verification_expires
                    and account.email_verification_expires > now
                ):
                    account.is_email_verified = True
                    account.email_verification_token_hash = None
                    account.email_verification_expires = None
                    self._persist_state()
                    return self._account_view(account)
            return None

    # -- audit -------------------------------------------------------------

    def _retention_cutoff(self) -> datetime:
        return utcnow() - self.audit_retention

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self._prune_audit(self._retention_cutoff())
            self.audit_events.append(copy.deepcopy(event))
            self._persist_state()

    def get_audit_event(self, event_id: str) -> Optional[AuditEvent]:
        cutoff = self._retention_cutoff()
        with self._data_lock:
            for event in self.audit_events:
                if event.id == event_id and event.timestamp >= cutoff:
                    return copy.deepcopy(event)
            return None

    def query_audit_events(
        self, filters: AuditFilters, *, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[AuditEvent], int]:
        cutoff = self._retention_cutoff()
        with self._data_lock:
            matched = [
                e
                for e in self.audit_events
                if e.timestamp >= cutoff and audit_matches(e, filters)
            ]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        total = len(matched)
        window = matched[offset:] if limit is None else matched[offset : offset + limit]
        return copy.deepcopy(window), total

    def acknowledge_audit_event(
        self, event_id: str, actor_id: str, at: datetime
    ) -> Optional[AuditEvent]:
        with self._data_lock:
            for event in self.audit_events:
                if event.id == event_id:
                    if event.acknowledged_at is None:
                        event.acknowledged_at = at
                        event.acknowledged_by = actor_id
                        self._persist_state()
                    return copy.deepcopy(event)
            return None

    def _prune_audit(self, cutoff: datetime) -> int:
        before = len(self.audit_events)
        self.audit_events = [e for e in self.audit_events if e.timestamp >= cutoff]
        return before - len(self.audit_events)

    def purge_expired_audit_events(self, cutoff: datetime) -> int:
        with self._data_lock:
            removed = self._prune_audit(cutoff)
            if removed:
                self._persist_state()
            return removed

    # -- api keys ----------------------------------------------------------

    _API_KEY_FIELDS = {
        "name",
        "key_hash",
        "key_prefix",
        "permissions",
        "is_active",
        "max_requests",
        "window_seconds",
        "allowed_ips",
        "expires_at",
    }

    def create_api_key(self, key: ApiKey) -> ApiKey:
        with self._data_lock:
            self._require(key.account_id)
            if any(k.key_hash == key.key_hash for k in self.api_keys.values()):
                raise ConstraintViolation("api key already exists", {"field": "key_hash"})
            self.api_keys[key.id] = copy.deepcopy(key)
            self._persist_state()
            return copy.deepcopy(key)

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            return copy.deepcopy(key) if key else None

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = next((k for k in self.api_keys.values() if k.key_hash == key_hash), None)
            return copy.deepcopy(key) if key else None

    def list_api_keys(
        self, account_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[ApiKey], int]:
        with self._data_lock:
            owned = [k for k in self.api_keys.values() if k.account_id == account_id]
        owned.sort(key=lambda k: k.created_at, reverse=True)
        window = owned[offset:] if limit is None else owned[offset : offset + limit]
        return copy.deepcopy(window), len(owned)

    def update_api_key(self, key_id: str, **fields) -> Optional[ApiKey]:
        unknown = set(fields) - self._API_KEY_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if not key:
                return None
            for name, value in fields.items():
                setattr(key, name, copy.deepcopy(value))
            key.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(key)

    def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key:
                key.last_used_at = used_at
                self._persist_state()

    def delete_api_key(self, key_id: str) -> bool:
        with self._data_lock:
            if self.api_keys.pop(key_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- snapshot ----------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "account_store.json"

    @staticmethod
    def _jsonable(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {k: MemoryStore._jsonable(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [MemoryStore._jsonable(v) for v in value]
        if hasattr(value, "__dataclass_fields__"):
            return {
                name: MemoryStore._jsonable(getattr(value, name))
                for name in value.__dataclass_fields__
            }
        return value

    @staticmethod
    def _dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _deserialize_account(self, data: Dict[str, Any]) -> Account:
        security = data.get("security") or {}
        mfa = data.get("mfa") or {}
        return Account(
            id=data["id"],
            email=data["email"],
            password_hash=data.get("password_hash"),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            role=data.get("role", "user"),
            profile_id=data.get("profile_id"),
            created_at=self._dt(data.get("created_at")) or utcnow(),
            last_login_at=self._dt(data.get("last_login_at")),
            security=SecurityState(
                login_attempts=security.get("login_attempts", 0),
                lock_until=self._dt(security.get("lock_until")),
                last_failed_login=self._dt(security.get("last_failed_login")),
            ),
            mfa=MfaSettings(
                enabled=mfa.get("enabled", False),
                secret=mfa.get("secret"),
                backup_codes=list(mfa.get("backup_codes") or []),
                last_used_at=self._dt(mfa.get("last_used_at")),
            ),
            sessions=[
                SessionEntry(
                    token_hash=s["token_hash"],
                    token_hint=s["token_hint"],
                    issued_at=self._dt(s.get("issued_at")) or utcnow(),
                    last_used_at=self._dt(s.get("last_used_at")) or utcnow(),
                    user_agent=s.get("user_agent"),
                    ip_address=s.get("ip_address"),
                )
                for s in data.get("sessions", [])
            ],
            social_logins=[
                SocialIdentity(
                    provider=s["provider"],
                    provider_id=s["provider_id"],
                    email=s.get("email"),
                    linked_at=self._dt(s.get("linked_at")) or utcnow(),
                )
                for s in data.get("social_logins", [])
            ],
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_expires=self._dt(data.get("password_reset_expires")),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            email_verification_expires=self._dt(data.get("email_verification_expires")),
        )

    def _deserialize_audit_event(self, data: Dict[str, Any]) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            action=AuditAction(data["action"]),
            resource=AuditResource(data["resource"]),
            status=AuditStatus(data["status"]),
            severity=Severity(data["severity"]),
            timestamp=self._dt(data["timestamp"]),
            account_id=data.get("account_id"),
            resource_id=data.get("resource_id"),
            details=data.get("details") or {},
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            session_id=data.get("session_id"),
            api_key_id=data.get("api_key_id"),
            acknowledged_at=self._dt(data.get("acknowledged_at")),
            acknowledged_by=data.get("acknowledged_by"),
        )

    def _deserialize_api_key(self, data: Dict[str, Any]) -> ApiKey:
        return ApiKey(
            id=data["id"],
            account_id=data["account_id"],
            name=data["name"],
            key_hash=data["key_hash"],
            key_prefix=data.get("key_prefix", ""),
            permissions=list(data.get("permissions") or []),
            is_active=data.get("is_active", True),
            max_requests=data.get("max_requests", 1000),
            window_seconds=data.get("window_seconds", 3600),
            allowed_ips=list(data.get("allowed_ips") or []),
            expires_at=self._dt(data.get("expires_at")),
            last_used_at=self._dt(data.get("last_used_at")),
            created_at=self._dt(data.get("created_at")) or utcnow(),
            updated_at=self._dt(data.get("updated_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "accounts": [self._jsonable(a) for a in self.accounts.values()],
            "profiles": [self._jsonable(p) for p in self.profiles.values()],
            "audit_events": [self._jsonable(e) for e in self.audit_events],
            "api_keys": [self._jsonable(k) for k in self.api_keys.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist account store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.profiles = {
            p["account_id"]: Profile(
                id=p["id"],
                account_id=p["account_id"],
                username=p["username"],
                first_name=p.get("first_name", ""),
                last_name=p.get("last_name", ""),
                avatar=p.get("avatar"),
                created_at=self._dt(p.get("created_at")) or utcnow(),
            )
            for p in data.get("profiles", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.api_keys = {
            k["id"]: self._deserialize_api_key(k) for k in data.get("api_keys", [])
        }
        self.logger.info(
            "account_store_state_loaded",
            accounts=len(self.accounts),
            audit_events=len(self.audit_events),
            api_keys=len(self.api_keys),
        )
        return True
