"""Tests for the per-account refresh-token session list."""

import pytest

from sportauth.service.errors import NotFoundError, ValidationError
from sportauth.storage.common import hash_token
from sportauth.storage.models import AuditAction, AuditFilters


@pytest.fixture
def account(store):
    account, _ = store.create_account("player@example.com", None, username="player_one")
    return account


class TestSessionList:
    def test_tokens_are_stored_hashed(self, store, sessions, account, context):
        sessions.add(account.id, "refresh-token-value-1234567890", context=context)
        stored = store.list_sessions(account.id)
        assert len(stored) == 1
        assert stored[0].token_hash == hash_token("refresh-token-value-1234567890")
        assert stored[0].token_hint == "...34567890"
        assert stored[0].ip_address == "203.0.113.7"
        assert stored[0].user_agent == "pytest"

    def test_hints_of_real_refresh_tokens_differ(self, sessions, tokens, account):
        for _ in range(3):
            sessions.add(account.id, tokens.issue_pair(account.id, account.email).refresh_token)
        hints = [v.token_hint for v in sessions.list(account.id)]
        assert len(set(hints)) == 3
        # The shared JWT header must not leak into the hint
        assert not any(hint.startswith("...eyJ") for hint in hints)

    def test_oldest_sessions_are_evicted(self, sessions, account):
        for i in range(7):
            sessions.add(account.id, f"token-{i}")
        views = sessions.list(account.id)
        assert len(views) == 5
        assert views[0].token_hint == "...token-2"
        assert views[-1].token_hint == "...token-6"

    def test_rotate_replaces_in_place(self, sessions, account):
        sessions.add(account.id, "token-a")
        sessions.add(account.id, "token-b")
        assert sessions.rotate(account.id, "token-a", "token-c") is True
        hints = [v.token_hint for v in sessions.list(account.id)]
        assert hints == ["...token-c", "...token-b"]

    def test_rotating_a_dead_token_fails(self, sessions, account):
        sessions.add(account.id, "token-a")
        assert sessions.rotate(account.id, "token-a", "token-b") is True
        assert sessions.rotate(account.id, "token-a", "token-c") is False

    def test_remove_and_clear(self, sessions, account):
        sessions.add(account.id, "token-a")
        sessions.add(account.id, "token-b")
        assert sessions.remove(account.id, "token-a") is True
        assert sessions.remove(account.id, "token-a") is False
        assert sessions.clear(account.id) == 1
        assert sessions.list(account.id) == []


class TestSessionService:
    def test_list_sessions_requires_account(self, sessions):
        with pytest.raises(NotFoundError):
            sessions.list_sessions("missing")

    def test_revoke_session_by_index_is_audited(self, store, sessions, account, context):
        sessions.add(account.id, "token-a")
        sessions.add(account.id, "token-b")
        revoked = sessions.revoke_session(account.id, 0, context=context)
        assert revoked.token_hint == "...token-a"
        assert [v.index for v in sessions.list_sessions(account.id)] == [0]
        events, _ = store.query_audit_events(
            AuditFilters(account_id=account.id, action=AuditAction.SESSION_REVOKED)
        )
        assert len(events) == 1
        assert events[0].details["session_index"] == 0

    def test_revoke_unknown_index(self, sessions, account):
        with pytest.raises(NotFoundError):
            sessions.revoke_session(account.id, 3)
        with pytest.raises(ValidationError):
            sessions.revoke_session(account.id, -1)

    def test_revoke_all_sessions(self, store, sessions, account):
        for i in range(3):
            sessions.add(account.id, f"token-{i}")
        assert sessions.revoke_all_sessions(account.id) == 3
        assert sessions.list_sessions(account.id) == []
        events, _ = store.query_audit_events(
            AuditFilters(action=AuditAction.ALL_SESSIONS_REVOKED)
        )
        assert events[0].details["sessions_revoked"] == 3

    def test_session_view_never_exposes_token(self, sessions, account):
        sessions.add(account.id, "secret-refresh-token-abcdefghijklmnop")
        data = sessions.list(account.id)[0].as_dict()
        assert "secret-refresh-token-abcdefghijklmnop" not in data.values()
        assert data["token"] == "...ijklmnop"
