from datetime import datetime, timezone

import psycopg
import pytest

from sportauth.storage.common import SecretCipher
from sportauth.storage.errors import ConstraintViolation, StorageUnavailable
from sportauth.storage.models import AuditAction, Severity
from sportauth.storage.postgres import PostgresStore, _constraint_violation


class DummyCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class RecordingConnection:
    def __init__(self, cursor):
        self.cursor = cursor
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.cursor

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class RecordingPool:
    def __init__(self, cursor):
        self.conn = RecordingConnection(cursor)

    def connection(self):
        return self.conn


def _store(cursor=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = RecordingPool(cursor or DummyCursor())
    store._cipher = SecretCipher("pg-unit-key")
    return store


def test_rotate_session_is_one_conditional_update():
    store = _store(DummyCursor(row={"id": 7}))
    used_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert store.rotate_session("acct-1", "old", "new", "hint...", used_at=used_at) is True
    sql, params = store.pool.conn.statements[0]
    assert sql.startswith("UPDATE account_session")
    assert "WHERE account_id = %s AND token_hash = %s" in sql
    assert params == ("new", "hint...", used_at, "acct-1", "old")


def test_rotate_session_reports_dead_token():
    store = _store(DummyCursor(row=None))
    assert store.rotate_session("acct-1", "old", "new", "hint...", used_at=datetime.now(timezone.utc)) is False


def test_clear_sessions_returns_rowcount():
    store = _store(DummyCursor(rowcount=3))
    assert store.clear_sessions("acct-1") == 3


def test_update_account_rejects_unknown_fields():
    store = _store()
    with pytest.raises(ValueError):
        store.update_account("acct-1", email="x@example.com")
    assert store.pool.conn.statements == []


def test_account_row_mapping_decrypts_secret():
    store = _store()
    row = {
        "id": "acct-1",
        "email": "a@example.com",
        "password_hash": "hash",
        "is_active": True,
        "mfa_enabled": True,
        "mfa_secret": store._cipher.encrypt("JBSWY3DPEHPK3PXP"),
        "mfa_backup_codes": ["h1"],
        "login_attempts": 2,
    }
    socials = [{"provider": "google", "provider_id": "g-1", "email": None}]
    account = store._account_from_rows(row, [], socials)
    assert account.mfa.secret == "JBSWY3DPEHPK3PXP"
    assert account.mfa.backup_codes == ["h1"]
    assert account.security.login_attempts == 2
    assert account.social_login("google").provider_id == "g-1"
    assert account.role == "user"


def test_audit_row_mapping_parses_json_details():
    row = {
        "id": "evt-1",
        "action": "account_locked",
        "resource": "auth",
        "status": "failure",
        "severity": "high",
        "ts": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "details": '{"attempts": 5}',
    }
    event = PostgresStore._audit_from_row(row)
    assert event.action == AuditAction.ACCOUNT_LOCKED
    assert event.severity == Severity.HIGH
    assert event.details == {"attempts": 5}


class _Diag:
    def __init__(self, name):
        self.constraint_name = name


class _UniqueViolation(Exception):
    def __init__(self, name):
        super().__init__(name)
        self.diag = _Diag(name)


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("account_email_unique", "email"),
        ("profile_username_unique", "username"),
        ("social_identity_provider_uid", "provider_id"),
        ("something_else", "something_else"),
    ],
)
def test_constraint_names_map_to_fields(constraint, field):
    violation = _constraint_violation(_UniqueViolation(constraint))
    assert isinstance(violation, ConstraintViolation)
    assert violation.field == field


class _DownPool:
    def connection(self):
        raise psycopg.OperationalError("connection refused")


def test_unreachable_database_raises_storage_unavailable():
    store = _store()
    store.pool = _DownPool()
    with pytest.raises(StorageUnavailable):
        store.get_account("acct-1")


class _CountCursor(DummyCursor):
    def fetchall(self):
        return []


def test_list_api_keys_counts_then_pages():
    store = _store(_CountCursor(row={"total": 0}))
    store.list_api_keys("acct-1", offset=10, limit=5)
    (count_sql, count_params), (page_sql, page_params) = store.pool.conn.statements
    assert count_sql.startswith("SELECT count(*)")
    assert count_params == ("acct-1",)
    assert page_sql.endswith("ORDER BY created_at DESC OFFSET %s LIMIT %s")
    assert page_params == ["acct-1", 10, 5]


def test_delete_api_key_reports_missing_row():
    store = _store(DummyCursor(row=None))
    assert store.delete_api_key("key-1") is False
    sql, params = store.pool.conn.statements[0]
    assert sql == "DELETE FROM api_key WHERE id = %s RETURNING id"
    assert params == ("key-1",)
