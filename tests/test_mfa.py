"""Tests for TOTP enrollment, verification and backup codes."""

import pyotp
import pytest

from sportauth.service.errors import (
    AuthenticationError,
    InvalidCodeError,
    MfaStateError,
    ValidationError,
)
from sportauth.service.events import MFA_DISABLED, MFA_ENABLED
from sportauth.storage.models import AuditAction, AuditFilters, AuditStatus

PASSWORD = "Str0ngPassw0rd"


@pytest.fixture
def account(store, passwords):
    account, _ = store.create_account(
        "mfa@example.com", passwords.hash(PASSWORD), username="mfa_user"
    )
    return account


async def _enable(mfa, account_id):
    setup = (await mfa.setup(account_id)).value
    await mfa.enable(
        account_id, setup.secret, pyotp.TOTP(setup.secret).now(), setup.backup_codes
    )
    return setup


def _actions(store, account_id):
    events, _ = store.query_audit_events(AuditFilters(account_id=account_id))
    return [e.action for e in events]


class TestSetup:
    async def test_setup_returns_secret_uri_and_qr(self, mfa, store, account):
        setup = (await mfa.setup(account.id)).value
        assert len(setup.secret) >= 16
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert "Sportification" in setup.otpauth_uri
        assert setup.qr_code.startswith("data:image/png;base64,")
        assert len(setup.backup_codes) == 4
        assert all(len(code) == 8 for code in setup.backup_codes)
        # Nothing is committed until enable
        assert store.get_mfa(account.id).enabled is False
        assert AuditAction.MFA_SETUP_STARTED in _actions(store, account.id)

    async def test_setup_rejected_when_enabled(self, mfa, account):
        await _enable(mfa, account.id)
        with pytest.raises(MfaStateError):
            await mfa.setup(account.id)


class TestEnable:
    async def test_enable_commits_encrypted_secret_and_hashed_codes(self, mfa, store, account):
        setup = (await mfa.setup(account.id)).value
        outcome = await mfa.enable(
            account.id, setup.secret, pyotp.TOTP(setup.secret).now(), setup.backup_codes
        )
        assert outcome.value.enabled is True
        assert outcome.value.backup_codes_remaining == 4
        assert [e.event_type for e in outcome.events] == [MFA_ENABLED]

        assert store.accounts[account.id].mfa.secret != setup.secret
        assert store.get_mfa(account.id).secret == setup.secret
        assert all(h.startswith("$argon2id$") for h in store.get_mfa(account.id).backup_codes)

    async def test_wrong_code_is_audited_and_nothing_stored(self, mfa, store, account):
        setup = (await mfa.setup(account.id)).value
        with pytest.raises(InvalidCodeError):
            await mfa.enable(account.id, setup.secret, "000000", setup.backup_codes)
        assert store.get_mfa(account.id).enabled is False
        assert AuditAction.MFA_ENABLE_FAILED in _actions(store, account.id)

    async def test_invalid_secret_and_missing_codes(self, mfa, account):
        with pytest.raises(ValidationError):
            await mfa.enable(account.id, "not base32 !!", "123456", ["ABCDEF12"])
        secret = pyotp.random_base32()
        with pytest.raises(ValidationError):
            await mfa.enable(account.id, secret, pyotp.TOTP(secret).now(), [])


class TestCheck:
    async def test_totp_code_verifies(self, mfa, store, account):
        setup = await _enable(mfa, account.id)
        result = await mfa.check(account.id, pyotp.TOTP(setup.secret).now())
        assert result.used_backup_code is False
        assert store.get_mfa(account.id).last_used_at is not None

    async def test_backup_code_is_single_use(self, mfa, store, account):
        setup = await _enable(mfa, account.id)
        code = setup.backup_codes[0]
        result = await mfa.check(account.id, code.lower())
        assert result.used_backup_code is True
        assert result.backup_codes_remaining == 3
        assert len(store.get_mfa(account.id).backup_codes) == 3
        with pytest.raises(InvalidCodeError):
            await mfa.check(account.id, code)

    async def test_wrong_code(self, mfa, account):
        await _enable(mfa, account.id)
        with pytest.raises(InvalidCodeError):
            await mfa.check(account.id, "999999x")

    async def test_check_requires_enabled(self, mfa, account):
        with pytest.raises(MfaStateError):
            await mfa.check(account.id, "123456")

    async def test_verify_audits_backup_code_use(self, mfa, store, account):
        setup = await _enable(mfa, account.id)
        await mfa.verify(account.id, setup.backup_codes[1])
        assert AuditAction.MFA_BACKUP_CODE_USED in _actions(store, account.id)

    async def test_verify_audits_failure(self, mfa, store, account):
        await _enable(mfa, account.id)
        with pytest.raises(InvalidCodeError):
            await mfa.verify(account.id, "bad")
        events, _ = store.query_audit_events(
            AuditFilters(account_id=account.id, action=AuditAction.MFA_LOGIN_FAILED)
        )
        assert events[0].status == AuditStatus.FAILURE


class TestDisableAndRegenerate:
    async def test_disable_requires_password(self, mfa, store, account):
        await _enable(mfa, account.id)
        with pytest.raises(AuthenticationError):
            await mfa.disable(account.id, "wrong-password")
        assert AuditAction.MFA_DISABLE_FAILED in _actions(store, account.id)

        outcome = await mfa.disable(account.id, PASSWORD)
        assert outcome.value.enabled is False
        assert [e.event_type for e in outcome.events] == [MFA_DISABLED]
        mfa_state = store.get_mfa(account.id)
        assert mfa_state.enabled is False and mfa_state.secret is None

    async def test_disable_when_not_enabled(self, mfa, account):
        with pytest.raises(MfaStateError):
            await mfa.disable(account.id, PASSWORD)

    async def test_social_only_account_cannot_confirm(self, mfa, store):
        account, _ = store.create_account("social@example.com", None, username="social_only")
        await _enable(mfa, account.id)
        with pytest.raises(AuthenticationError, match="Password verification required"):
            await mfa.regenerate_backup_codes(account.id, "anything")

    async def test_regenerate_replaces_codes(self, mfa, account):
        setup = await _enable(mfa, account.id)
        codes = (await mfa.regenerate_backup_codes(account.id, PASSWORD)).value
        assert len(codes) == 4
        assert set(codes).isdisjoint(setup.backup_codes)
        with pytest.raises(InvalidCodeError):
            await mfa.check(account.id, setup.backup_codes[0])
        assert (await mfa.check(account.id, codes[0])).used_backup_code


class TestStatus:
    async def test_status_is_invalidated_by_mutations(self, mfa, account):
        assert (await mfa.status(account.id)).enabled is False
        setup = await _enable(mfa, account.id)
        status = await mfa.status(account.id)
        assert status.enabled is True
        assert status.backup_codes_remaining == 4
        await mfa.check(account.id, setup.backup_codes[0])
        assert (await mfa.status(account.id)).backup_codes_remaining == 3


def _failures(store, account_id):
    events, _ = store.query_audit_events(AuditFilters(account_id=account_id))
    return [
        (e.action, e.details.get("reason"))
        for e in events
        if e.status == AuditStatus.FAILURE
    ]


class TestRejectedRequestsAreAudited:
    async def test_setup_when_already_enabled(self, mfa, store, account):
        await _enable(mfa, account.id)
        with pytest.raises(MfaStateError):
            await mfa.setup(account.id)
        assert (AuditAction.MFA_SETUP_STARTED, "already_enabled") in _failures(store, account.id)

    async def test_enable_with_bad_input(self, mfa, store, account):
        with pytest.raises(ValidationError):
            await mfa.enable(account.id, "not base32 !!", "123456", ["ABCDEF12"])
        secret = pyotp.random_base32()
        with pytest.raises(ValidationError):
            await mfa.enable(account.id, secret, pyotp.TOTP(secret).now(), [])
        failures = _failures(store, account.id)
        assert (AuditAction.MFA_ENABLE_FAILED, "invalid_secret") in failures
        assert (AuditAction.MFA_ENABLE_FAILED, "missing_backup_codes") in failures

    async def test_disable_and_regenerate_when_not_enabled(self, mfa, store, account):
        with pytest.raises(MfaStateError):
            await mfa.disable(account.id, PASSWORD)
        with pytest.raises(MfaStateError):
            await mfa.regenerate_backup_codes(account.id, PASSWORD)
        failures = _failures(store, account.id)
        assert (AuditAction.MFA_DISABLE_FAILED, "not_enabled") in failures
        assert (AuditAction.MFA_BACKUP_CODES_REGENERATED, "not_enabled") in failures
