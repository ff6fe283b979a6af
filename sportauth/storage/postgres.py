from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sportauth.logging import get_logger
from sportauth.storage.common import SecretCipher, normalize_email, normalize_username
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

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    password_hash TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    role TEXT NOT NULL DEFAULT 'user',
    profile_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_login_at TIMESTAMPTZ,
    login_attempts INTEGER NOT NULL DEFAULT 0,
    lock_until TIMESTAMPTZ,
    last_failed_login TIMESTAMPTZ,
    mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    mfa_secret TEXT,
    mfa_backup_codes TEXT[] NOT NULL DEFAULT '{}',
    mfa_last_used_at TIMESTAMPTZ,
    password_reset_token_hash TEXT,
    password_reset_expires TIMESTAMPTZ,
    email_verification_token_hash TEXT,
    email_verification_expires TIMESTAMPTZ,
    CONSTRAINT account_email_unique UNIQUE (email)
);
CREATE TABLE IF NOT EXISTS profile (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    username TEXT NOT NULL,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    avatar TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT profile_username_unique UNIQUE (username),
    CONSTRAINT profile_account_unique UNIQUE (account_id)
);
CREATE TABLE IF NOT EXISTS account_session (
    id BIGSERIAL PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL,
    token_hint TEXT NOT NULL,
    issued_at TIMESTAMPTZ NOT NULL,
    last_used_at TIMESTAMPTZ NOT NULL,
    user_agent TEXT,
    ip_address TEXT,
    CONSTRAINT account_session_token_unique UNIQUE (token_hash)
);
CREATE INDEX IF NOT EXISTS account_session_account_idx ON account_session (account_id, id);
CREATE TABLE IF NOT EXISTS social_identity (
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    email TEXT,
    linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT social_identity_account_provider PRIMARY KEY (account_id, provider),
    CONSTRAINT social_identity_provider_uid UNIQUE (provider, provider_id)
);
CREATE TABLE IF NOT EXISTS audit_event (
    id TEXT PRIMARY KEY,
    account_id TEXT,
    action TEXT NOT NULL,
    resource TEXT NOT NULL,
    resource_id TEXT,
    details JSONB NOT NULL DEFAULT '{}'::jsonb,
    ip_address TEXT,
    user_agent TEXT,
    status TEXT NOT NULL,
    severity TEXT NOT NULL,
    ts TIMESTAMPTZ NOT NULL,
    session_id TEXT,
    api_key_id TEXT,
    acknowledged_at TIMESTAMPTZ,
    acknowledged_by TEXT
);
CREATE INDEX IF NOT EXISTS audit_event_ts_idx ON audit_event (ts DESC);
CREATE INDEX IF NOT EXISTS audit_event_account_ts_idx ON audit_event (account_id, ts DESC);
CREATE INDEX IF NOT EXISTS audit_event_severity_ts_idx ON audit_event (severity, ts DESC);
CREATE INDEX IF NOT EXISTS audit_event_action_ts_idx ON audit_event (action, ts DESC);
CREATE TABLE IF NOT EXISTS api_key (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    key_hash TEXT NOT NULL,
    key_prefix TEXT NOT NULL,
    permissions TEXT[] NOT NULL DEFAULT '{}',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    max_requests INTEGER NOT NULL DEFAULT 1000,
    window_seconds INTEGER NOT NULL DEFAULT 3600,
    allowed_ips TEXT[] NOT NULL DEFAULT '{}',
    expires_at TIMESTAMPTZ,
    last_used_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT api_key_hash_unique UNIQUE (key_hash)
);
CREATE INDEX IF NOT EXISTS api_key_account_idx ON api_key (account_id, created_at DESC);
"""

_CONSTRAINT_FIELDS = {
    "account_email_unique": ("email already exists", "email"),
    "profile_username_unique": ("username already exists", "username"),
    "social_identity_account_provider": (
        "provider already linked to this account",
        "provider",
    ),
    "social_identity_provider_uid": (
        "provider identity linked to another account",
        "provider_id",
    ),
    "api_key_hash_unique": ("api key already exists", "key_hash"),
}


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    name = getattr(exc.diag, "constraint_name", None) or ""
    message, field = _CONSTRAINT_FIELDS.get(name, ("duplicate value", name or "unknown"))
    return ConstraintViolation(message, {"field": field})


class PostgresStore:
    """Postgres-backed account and audit store.

    Each public method runs in one pooled connection, i.e. one transaction.
    Session rotation and removal are single conditional statements so two
    concurrent redemptions of the same refresh token cannot both succeed.
    """

    _UPDATABLE_FIELDS = {"password_hash", "is_active", "is_email_verified", "last_login_at", "role"}

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        audit_retention_days: int = 730,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.audit_retention = timedelta(days=audit_retention_days)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        # PoolTimeout subclasses OperationalError
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, errors.InterfaceError) as exc:
            logger.error("postgres_unavailable", error=str(exc), error_type=type(exc).__name__)
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    def _account_from_rows(
        self,
        row: Dict[str, Any],
        sessions: List[Dict[str, Any]],
        socials: List[Dict[str, Any]],
    ) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            role=row.get("role") or "user",
            profile_id=row.get("profile_id"),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            security=SecurityState(
                login_attempts=row.get("login_attempts") or 0,
                lock_until=row.get("lock_until"),
                last_failed_login=row.get("last_failed_login"),
            ),
            mfa=MfaSettings(
                enabled=bool(row.get("mfa_enabled")),
                secret=self._cipher.decrypt(row.get("mfa_secret")),
                backup_codes=list(row.get("mfa_backup_codes") or []),
                last_used_at=row.get("mfa_last_used_at"),
            ),
            sessions=[self._session_from_row(s) for s in sessions],
            social_logins=[
                SocialIdentity(
                    provider=s["provider"],
                    provider_id=s["provider_id"],
                    email=s.get("email"),
                    linked_at=s.get("linked_at") or utcnow(),
                )
                for s in socials
            ],
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expires=row.get("password_reset_expires"),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires=row.get("email_verification_expires"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> SessionEntry:
        return SessionEntry(
            token_hash=row["token_hash"],
            token_hint=row["token_hint"],
            issued_at=row["issued_at"],
            last_used_at=row["last_used_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    @staticmethod
    def _profile_from_row(row: Dict[str, Any]) -> Profile:
        return Profile(
            id=row["id"],
            account_id=row["account_id"],
            username=row["username"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            avatar=row.get("avatar"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEvent:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEvent(
            id=row["id"],
            action=AuditAction(row["action"]),
            resource=AuditResource(row["resource"]),
            status=AuditStatus(row["status"]),
            severity=Severity(row["severity"]),
            timestamp=row["ts"],
            account_id=row.get("account_id"),
            resource_id=row.get("resource_id"),
            details=details,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            session_id=row.get("session_id"),
            api_key_id=row.get("api_key_id"),
            acknowledged_at=row.get("acknowledged_at"),
            acknowledged_by=row.get("acknowledged_by"),
        )

    def _load_account(self, conn, where: str, params: tuple) -> Optional[Account]:
        row = conn.execute(f"SELECT * FROM account WHERE {where}", params).fetchone()
        if not row:
            return None
        sessions = conn.execute(
            "SELECT * FROM account_session WHERE account_id = %s ORDER BY id",
            (row["id"],),
        ).fetchall()
        socials = conn.execute(
            "SELECT * FROM social_identity WHERE account_id = %s ORDER BY linked_at",
            (row["id"],),
        ).fetchall()
        return self._account_from_rows(row, sessions, socials)

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
        account_id = str(uuid.uuid4())
        profile = Profile(
            id=str(uuid.uuid4()),
            account_id=account_id,
            username=normalize_username(username),
            first_name=first_name,
            last_name=last_name,
        )
        account = Account(
            id=account_id,
            email=normalize_email(email),
            password_hash=password_hash,
            is_email_verified=is_email_verified,
            profile_id=profile.id,
            social_logins=[social_login] if social_login else [],
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, is_email_verified, profile_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        password_hash,
                        is_email_verified,
                        profile.id,
                        account.created_at,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO profile (id, account_id, username, first_name, last_name, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        profile.id,
                        account_id,
                        profile.username,
                        first_name,
                        last_name,
                        profile.created_at,
                    ),
                )
                if social_login:
                    conn.execute(
                        """
                        INSERT INTO social_identity (account_id, provider, provider_id, email, linked_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (
                            account_id,
                            social_login.provider,
                            social_login.provider_id,
                            social_login.email,
                            social_login.linked_at,
                        ),
                    )
        except errors.UniqueViolation as exc:
            # The connection context rolled back, so neither row exists
            raise _constraint_violation(exc) from exc
        return account, profile

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            return self._load_account(conn, "id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            return self._load_account(conn, "email = %s", (normalize_email(email),))

    def get_account_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            return self._load_account(
                conn,
                "id = (SELECT account_id FROM social_identity WHERE provider = %s AND provider_id = %s)",
                (provider, provider_id),
            )

    def get_profile(self, account_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profile WHERE account_id = %s", (account_id,)
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM profile WHERE username = %s",
                (normalize_username(username),),
            ).fetchone()
        return row is not None

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._connect() as conn:
            if fields:
                assignments = ", ".join(f"{name} = %s" for name in fields)
                conn.execute(
                    f"UPDATE account SET {assignments} WHERE id = %s",
                    (*fields.values(), account_id),
                )
            return self._load_account(conn, "id = %s", (account_id,))

    # -- sessions ----------------------------------------------------------

    def add_session(
        self, account_id: str, entry: SessionEntry, *, max_sessions: int
    ) -> List[SessionEntry]:
        with self._connect() as conn:
            locked = conn.execute(
                "SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not locked:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            conn.execute(
                """
                INSERT INTO account_session (account_id, token_hash, token_hint, issued_at, last_used_at, user_agent, ip_address)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    account_id,
                    entry.token_hash,
                    entry.token_hint,
                    entry.issued_at,
                    entry.last_used_at,
                    entry.user_agent,
                    entry.ip_address,
                ),
            )
            evicted = conn.execute(
                """
                DELETE FROM account_session
                WHERE account_id = %s AND id NOT IN (
                    SELECT id FROM account_session WHERE account_id = %s
                    ORDER BY id DESC LIMIT %s
                )
                RETURNING *
                """,
                (account_id, account_id, max_sessions),
            ).fetchall()
        return [self._session_from_row(row) for row in evicted]

    def remove_session(self, account_id: str, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account_session WHERE account_id = %s AND token_hash = %s RETURNING id",
                (account_id, token_hash),
            ).fetchone()
        return row is not None

    def remove_session_at(self, account_id: str, index: int) -> Optional[SessionEntry]:
        if index < 0:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM account_session WHERE id = (
                    SELECT id FROM account_session WHERE account_id = %s
                    ORDER BY id OFFSET %s LIMIT 1 FOR UPDATE
                )
                RETURNING *
                """,
                (account_id, index),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self,
        account_id: str,
        old_token_hash: str,
        new_token_hash: str,
        new_token_hint: str,
        *,
        used_at: datetime,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account_session
                SET token_hash = %s, token_hint = %s, last_used_at = %s
                WHERE account_id = %s AND token_hash = %s
                RETURNING id
                """,
                (new_token_hash, new_token_hint, used_at, account_id, old_token_hash),
            ).fetchone()
        return row is not None

    def clear_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM account_session WHERE account_id = %s", (account_id,)
            )
            return cur.rowcount

    def list_sessions(self, account_id: str) -> List[SessionEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account_session WHERE account_id = %s ORDER BY id",
                (account_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH cur AS (
                    SELECT id,
                           CASE WHEN last_failed_login IS NULL OR last_failed_login < %(window_start)s
                                THEN 1 ELSE login_attempts + 1 END AS attempts
                    FROM account WHERE id = %(account_id)s FOR UPDATE
                )
                UPDATE account a
                SET login_attempts = CASE WHEN cur.attempts >= %(threshold)s THEN 0 ELSE cur.attempts END,
                    lock_until = CASE WHEN cur.attempts >= %(threshold)s THEN %(lock_until)s ELSE a.lock_until END,
                    last_failed_login = %(now)s
                FROM cur
                WHERE a.id = cur.id
                RETURNING cur.attempts AS attempts, a.lock_until AS lock_until
                """,
                {
                    "account_id": account_id,
                    "window_start": window_start,
                    "threshold": threshold,
                    "lock_until": lock_until,
                    "now": now,
                },
            ).fetchone()
        if not row:
            return None
        return row["attempts"], row["lock_until"]

    def reset_login_failures(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account SET login_attempts = 0, last_failed_login = NULL
                WHERE id = %s AND login_attempts <> 0
                """,
                (account_id,),
            )

    # -- mfa ---------------------------------------------------------------

    def get_mfa(self, account_id: str) -> Optional[MfaSettings]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT mfa_enabled, mfa_secret, mfa_backup_codes, mfa_last_used_at
                FROM account WHERE id = %s
                """,
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return MfaSettings(
            enabled=bool(row["mfa_enabled"]),
            secret=self._cipher.decrypt(row["mfa_secret"]),
            backup_codes=list(row["mfa_backup_codes"] or []),
            last_used_at=row["mfa_last_used_at"],
        )

    def enable_mfa(
        self, account_id: str, secret: str, backup_code_hashes: List[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET mfa_enabled = TRUE, mfa_secret = %s, mfa_backup_codes = %s, mfa_last_used_at = NULL
                WHERE id = %s AND NOT mfa_enabled
                RETURNING id
                """,
                (self._cipher.encrypt(secret), list(backup_code_hashes), account_id),
            ).fetchone()
        return row is not None

    def replace_backup_codes(
        self, account_id: str, backup_code_hashes: List[str]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET mfa_backup_codes = %s WHERE id = %s",
                (list(backup_code_hashes), account_id),
            )

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET mfa_backup_codes = array_remove(mfa_backup_codes, %s), mfa_last_used_at = %s
                WHERE id = %s AND %s = ANY(mfa_backup_codes)
                RETURNING id
                """,
                (code_hash, utcnow(), account_id, code_hash),
            ).fetchone()
        return row is not None

    def touch_mfa(self, account_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET mfa_last_used_at = %s WHERE id = %s",
                (used_at, account_id),
            )

    def clear_mfa(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET mfa_enabled = FALSE, mfa_secret = NULL, mfa_backup_codes = '{}', mfa_last_used_at = NULL
                WHERE id = %s
                """,
                (account_id,),
            )

    # -- social identities -------------------------------------------------

    def add_social_login(self, account_id: str, identity: SocialIdentity) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO social_identity (account_id, provider, provider_id, email, linked_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        identity.provider,
                        identity.provider_id,
                        identity.email,
                        identity.linked_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc

    def remove_social_login(self, account_id: str, provider: str) -> bool:
        with self._connect() as conn:
            account = conn.execute(
                "SELECT password_hash FROM account WHERE id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            providers = [
                row["provider"]
                for row in conn.execute(
                    "SELECT provider FROM social_identity WHERE account_id = %s",
                    (account_id,),
                ).fetchall()
            ]
            if provider not in providers:
                return False
            methods = len(providers) + (1 if account["password_hash"] else 0)
            if methods <= 1:
                raise ConstraintViolation(
                    "cannot remove the last authentication method",
                    {"field": "provider"},
                )
            conn.execute(
                "DELETE FROM social_identity WHERE account_id = %s AND provider = %s",
                (account_id, provider),
            )
            return True

    # -- recovery tokens ---------------------------------------------------

    def set_password_reset(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account SET password_reset_token_hash = %s, password_reset_expires = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, account_id),
            )

    def find_password_reset(self, token_hash: str, now: datetime) -> Optional[Account]:
        with self._connect() as conn:
            return self._load_account(
                conn,
                "password_reset_token_hash = %s AND password_reset_expires > %s",
                (token_hash, now),
            )

    def complete_password_reset(
        self, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_hash = %s,
                    password_reset_token_hash = NULL,
                    password_reset_expires = NULL,
                    login_attempts = 0,
                    lock_until = NULL,
                    last_failed_login = NULL
                WHERE password_reset_token_hash = %s AND password_reset_expires > %s
                RETURNING id
                """,
                (password_hash, token_hash, now),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "DELETE FROM account_session WHERE account_id = %s", (row["id"],)
            )
            return self._load_account(conn, "id = %s", (row["id"],))

    def set_email_verification(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account SET email_verification_token_hash = %s, email_verification_expires = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, account_id),
            )

    def consume_email_verification(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET is_email_verified = TRUE,
                    email_verification_token_hash = NULL,
                    email_verification_expires = NULL
                WHERE email_verification_token_hash = %s AND email_verification_expires > %s
                RETURNING id
                """,
                (token_hash, now),
            ).fetchone()
            if not row:
                return None
            return self._load_account(conn, "id = %s", (row["id"],))

    # -- audit -------------------------------------------------------------

    def _retention_cutoff(self) -> datetime:
        return utcnow() - self.audit_retention

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (
                    id, account_id, action, resource, resource_id, details, ip_address,
                    user_agent, status, severity, ts, session_id, api_key_id
                )
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.account_id,
                    event.action.value,
                    event.resource.value,
                    event.resource_id,
                    json.dumps(event.details, default=str),
                    event.ip_address,
                    event.user_agent,
                    event.status.value,
                    event.severity.value,
                    event.timestamp,
                    event.session_id,
                    event.api_key_id,
                ),
            )

    def get_audit_event(self, event_id: str) -> Optional[AuditEvent]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM audit_event WHERE id = %s AND ts >= %s",
                (event_id, self._retention_cutoff()),
            ).fetchone()
        return self._audit_from_row(row) if row else None

    def _audit_where(self, filters: AuditFilters) -> Tuple[str, List[Any]]:
        clauses = ["ts >= %s"]
        params: List[Any] = [self._retention_cutoff()]
        if filters.account_id:
            clauses.append("account_id = %s")
            params.append(filters.account_id)
        if filters.severity:
            clauses.append("severity = %s")
            params.append(filters.severity.value)
        if filters.severities:
            clauses.append("severity = ANY(%s)")
            params.append([s.value for s in filters.severities])
        if filters.action:
            clauses.append("action = %s")
            params.append(filters.action.value)
        if filters.start:
            clauses.append("ts >= %s")
            params.append(filters.start)
        if filters.end:
            clauses.append("ts <= %s")
            params.append(filters.end)
        return " AND ".join(clauses), params

    def query_audit_events(
        self, filters: AuditFilters, *, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[AuditEvent], int]:
        where, params = self._audit_where(filters)
        sql = f"SELECT * FROM audit_event WHERE {where} ORDER BY ts DESC OFFSET %s"
        page_params = [*params, offset]
        if limit is not None:
            sql += " LIMIT %s"
            page_params.append(limit)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM audit_event WHERE {where}", params
            ).fetchone()
            rows = conn.execute(sql, page_params).fetchall()
        return [self._audit_from_row(row) for row in rows], int(total_row["total"])

    def acknowledge_audit_event(
        self, event_id: str, actor_id: str, at: datetime
    ) -> Optional[AuditEvent]:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE audit_event SET acknowledged_at = %s, acknowledged_by = %s
                WHERE id = %s AND acknowledged_at IS NULL
                """,
                (at, actor_id, event_id),
            )
            row = conn.execute(
                "SELECT * FROM audit_event WHERE id = %s", (event_id,)
            ).fetchone()
        return self._audit_from_row(row) if row else None

    def purge_expired_audit_events(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM audit_event WHERE ts < %s", (cutoff,))
            removed = cur.rowcount
        if removed:
            self.logger.info("audit_events_purged", removed=removed, cutoff=cutoff.isoformat())
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

    @staticmethod
    def _api_key_from_row(row: Dict[str, Any]) -> ApiKey:
        return ApiKey(
            id=row["id"],
            account_id=row["account_id"],
            name=row["name"],
            key_hash=row["key_hash"],
            key_prefix=row["key_prefix"],
            permissions=list(row.get("permissions") or []),
            is_active=row.get("is_active", True),
            max_requests=row.get("max_requests") or 1000,
            window_seconds=row.get("window_seconds") or 3600,
            allowed_ips=list(row.get("allowed_ips") or []),
            expires_at=row.get("expires_at"),
            last_used_at=row.get("last_used_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def create_api_key(self, key: ApiKey) -> ApiKey:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO api_key (
                        id, account_id, name, key_hash, key_prefix, permissions, is_active,
                        max_requests, window_seconds, allowed_ips, expires_at, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        key.id,
                        key.account_id,
                        key.name,
                        key.key_hash,
                        key.key_prefix,
                        list(key.permissions),
                        key.is_active,
                        key.max_requests,
                        key.window_seconds,
                        list(key.allowed_ips),
                        key.expires_at,
                        key.created_at,
                        key.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account not found", {"account_id": key.account_id}) from exc
        return self._api_key_from_row(row)

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_key WHERE id = %s", (key_id,)).fetchone()
        return self._api_key_from_row(row) if row else None

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_key WHERE key_hash = %s", (key_hash,)
            ).fetchone()
        return self._api_key_from_row(row) if row else None

    def list_api_keys(
        self, account_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[ApiKey], int]:
        sql = "SELECT * FROM api_key WHERE account_id = %s ORDER BY created_at DESC OFFSET %s"
        params: List[Any] = [account_id, offset]
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            total_row = conn.execute(
                "SELECT count(*) AS total FROM api_key WHERE account_id = %s", (account_id,)
            ).fetchone()
            rows = conn.execute(sql, params).fetchall()
        return [self._api_key_from_row(row) for row in rows], int(total_row["total"])

    def update_api_key(self, key_id: str, **fields) -> Optional[ApiKey]:
        unknown = set(fields) - self._API_KEY_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        assignments = ", ".join([*(f"{name} = %s" for name in fields), "updated_at = %s"])
        values = [list(v) if isinstance(v, (list, tuple)) else v for v in fields.values()]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE api_key SET {assignments} WHERE id = %s RETURNING *",
                    (*values, utcnow(), key_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._api_key_from_row(row) if row else None

    def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE api_key SET last_used_at = %s WHERE id = %s", (used_at, key_id)
            )

    def delete_api_key(self, key_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM api_key WHERE id = %s RETURNING id", (key_id,)
            ).fetchone()
        return row is not None
