"""Tests for the in-process store: uniqueness invariants and disk snapshots."""

from datetime import timedelta
from pathlib import Path

import pytest

from sportauth.storage.errors import ConstraintViolation, StorageUnavailable
from sportauth.storage.memory import MemoryStore
from sportauth.storage.models import (
    AuditAction,
    AuditEvent,
    AuditFilters,
    AuditResource,
    AuditStatus,
    SessionEntry,
    Severity,
    SocialIdentity,
    utcnow,
)


def _store(tmp_path, key="persist-key"):
    return MemoryStore(str(tmp_path), mfa_encryption_key=key)


class TestInvariants:
    def test_email_is_case_insensitively_unique(self, store):
        store.create_account("Runner@Example.com", None, username="runner")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_account("runner@example.COM", None, username="other")
        assert exc.value.field == "email"

    def test_username_is_unique(self, store):
        store.create_account("a@example.com", None, username="runner")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_account("b@example.com", None, username="RUNNER")
        assert exc.value.field == "username"

    def test_provider_identity_owned_once(self, store):
        identity = SocialIdentity(provider="google", provider_id="g-1")
        store.create_account("a@example.com", None, username="a_user", social_login=identity)
        with pytest.raises(ConstraintViolation):
            store.create_account("b@example.com", None, username="b_user", social_login=identity)
        account, _ = store.create_account("c@example.com", "hash", username="c_user")
        with pytest.raises(ConstraintViolation):
            store.add_social_login(account.id, identity)

    def test_returned_records_are_copies(self, store):
        account, _ = store.create_account("a@example.com", "hash", username="a_user")
        account.is_active = False
        assert store.get_account(account.id).is_active is True

    def test_update_rejects_unknown_fields(self, store):
        account, _ = store.create_account("a@example.com", "hash", username="a_user")
        with pytest.raises(ValueError):
            store.update_account(account.id, email="new@example.com")

    def test_mfa_secret_encrypted_at_rest(self, store):
        account, _ = store.create_account("a@example.com", "hash", username="a_user")
        store.enable_mfa(account.id, "JBSWY3DPEHPK3PXP", ["h1"])
        assert store.accounts[account.id].mfa.secret != "JBSWY3DPEHPK3PXP"
        assert store.get_mfa(account.id).secret == "JBSWY3DPEHPK3PXP"
        assert store.enable_mfa(account.id, "JBSWY3DPEHPK3PXP", ["h2"]) is False

    def test_backup_code_consumed_once(self, store):
        account, _ = store.create_account("a@example.com", "hash", username="a_user")
        store.enable_mfa(account.id, "JBSWY3DPEHPK3PXP", ["h1", "h2"])
        assert store.consume_backup_code(account.id, "h1") is True
        assert store.consume_backup_code(account.id, "h1") is False
        assert store.get_mfa(account.id).backup_codes == ["h2"]


class TestSnapshot:
    def test_state_survives_restart(self, tmp_path):
        store = _store(tmp_path)
        identity = SocialIdentity(provider="github", provider_id="gh-1", email="a@example.com")
        account, profile = store.create_account(
            "a@example.com", "hash", username="a_user", first_name="Ada", social_login=identity
        )
        store.add_session(
            account.id, SessionEntry(token_hash="th", token_hint="...hint"), max_sessions=5
        )
        store.enable_mfa(account.id, "JBSWY3DPEHPK3PXP", ["h1"])
        store.append_audit_event(
            AuditEvent.new(
                AuditAction.LOGIN,
                AuditResource.AUTH,
                status=AuditStatus.SUCCESS,
                severity=Severity.MEDIUM,
                account_id=account.id,
            )
        )

        reloaded = _store(tmp_path)
        restored = reloaded.get_account(account.id)
        assert restored.email == "a@example.com"
        assert restored.social_login("github").provider_id == "gh-1"
        assert restored.sessions[0].token_hash == "th"
        assert restored.mfa.secret == "JBSWY3DPEHPK3PXP"
        assert reloaded.get_profile(account.id).first_name == "Ada"
        events, total = reloaded.query_audit_events(AuditFilters(account_id=account.id))
        assert total == 1 and events[0].action == AuditAction.LOGIN

    def test_secret_under_another_key_reads_as_missing(self, tmp_path):
        store = _store(tmp_path, key="first-key")
        account, _ = store.create_account("a@example.com", "hash", username="a_user")
        store.enable_mfa(account.id, "JBSWY3DPEHPK3PXP", ["h1"])
        assert _store(tmp_path, key="second-key").get_mfa(account.id).secret is None

    def test_unwritable_snapshot_raises_storage_unavailable(self, tmp_path, monkeypatch):
        store = _store(tmp_path)

        def refuse(self, *args, **kwargs):
            raise OSError("read-only file system")

        monkeypatch.setattr(Path, "write_text", refuse)
        with pytest.raises(StorageUnavailable):
            store.create_account("a@example.com", None, username="runner")


class TestRecoveryTokens:
    def test_expired_reset_token_is_ignored(self, store):
        account, _ = store.create_account("a@example.com", "hash", username="a_user")
        store.set_password_reset(account.id, "reset-hash", utcnow() - timedelta(seconds=1))
        assert store.find_password_reset("reset-hash", utcnow()) is None
        assert store.complete_password_reset("reset-hash", "new-hash", utcnow()) is None

    def test_verification_consumed_once(self, store):
        account, _ = store.create_account("a@example.com", "hash", username="a_user")
        store.set_email_verification(account.id, "verify-hash", utcnow() + timedelta(hours=1))
        assert store.consume_email_verification("verify-hash", utcnow()).is_email_verified
        assert store.consume_email_verification("verify-hash", utcnow()) is None
