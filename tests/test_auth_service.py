"""Tests for the authentication orchestrator.

Covers registration, password login with lockout, the MFA challenge flow,
refresh rotation with reuse detection, logout, password change and reset,
email verification and deactivation.
"""

import asyncio
import threading

import pyotp
import pytest

from sportauth.service.auth import INVALID_CREDENTIALS, SOCIAL_ONLY_MESSAGE, MfaChallenge, TokensIssued
from sportauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCodeError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from sportauth.service.events import (
    ACCOUNT_DEACTIVATED,
    ACCOUNT_EMAIL_VERIFIED,
    ACCOUNT_LOGGED_IN,
    ACCOUNT_LOGGED_OUT,
    ACCOUNT_PASSWORD_CHANGED,
    ACCOUNT_REGISTERED,
)
from sportauth.storage.models import AuditAction, AuditFilters, AuditStatus, Severity

PASSWORD = "Str0ngPassw0rd"
NEW_PASSWORD = "An0therStr0ngOne"


async def _register(auth, email="player@example.com", username="player_one"):
    return (await auth.register(email, PASSWORD, username=username, first_name="Ada")).value


def _audits(store, action=None, account_id=None):
    events, _ = store.query_audit_events(AuditFilters(action=action, account_id=account_id))
    return events


class TestRegister:
    async def test_register_creates_account_session_and_event(self, auth, store, email, context):
        outcome = await auth.register(
            "Player@Example.com", PASSWORD, username="Player_One", first_name="Ada",
            context=context,
        )
        issued = outcome.value
        assert isinstance(issued, TokensIssued)
        assert issued.is_new_account
        assert issued.account.email == "player@example.com"
        assert issued.profile.username == "player_one"
        assert len(store.list_sessions(issued.account.id)) == 1
        assert email.verifications[0][0] == "player@example.com"

        registered = outcome.events[0]
        assert registered.event_type == ACCOUNT_REGISTERED
        assert registered.payload["username"] == "player_one"
        assert registered.payload["profile_id"] == issued.profile.id

        audits = _audits(store, AuditAction.REGISTER)
        assert len(audits) == 1
        assert audits[0].status == AuditStatus.SUCCESS
        assert audits[0].ip_address == "203.0.113.7"

    async def test_weak_password_lists_every_error(self, auth, store):
        with pytest.raises(ValidationError) as exc:
            await auth.register("weak@example.com", "short", username="weakling")
        assert len(exc.value.detail["errors"]) >= 2
        assert _audits(store, AuditAction.REGISTER)[0].details["reason"] == "weak_password"
        assert store.get_account_by_email("weak@example.com") is None

    async def test_duplicate_email_and_username(self, auth):
        await _register(auth)
        with pytest.raises(ConflictError, match="email already exists"):
            await auth.register("PLAYER@example.com", PASSWORD, username="someone_else")
        with pytest.raises(ConflictError, match="Username is already taken"):
            await auth.register("other@example.com", PASSWORD, username="PLAYER_ONE")

    async def test_signup_disabled(self, auth):
        auth.allow_signup = False
        with pytest.raises(ForbiddenError):
            await _register(auth)


class TestLogin:
    async def test_login_issues_tokens(self, auth, store, tokens):
        account = (await _register(auth)).account
        outcome = await auth.login("player@example.com", PASSWORD)
        assert outcome.value.kind == "tokens"
        assert tokens.verify_access(outcome.value.tokens.access_token)["sub"] == account.id
        assert outcome.value.account.last_login_at is not None
        assert [e.event_type for e in outcome.events] == [ACCOUNT_LOGGED_IN]
        assert len(store.list_sessions(account.id)) == 2

    async def test_unknown_email_and_wrong_password_look_the_same(self, auth):
        await _register(auth)
        with pytest.raises(AuthenticationError) as unknown:
            await auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await auth.login("player@example.com", "Wr0ngPassword")
        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS

    async def test_lockout_after_five_failures(self, auth, store):
        account = (await _register(auth)).account
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth.login("player@example.com", "Wr0ngPassword")
        locked = _audits(store, AuditAction.ACCOUNT_LOCKED)
        assert len(locked) == 1
        assert locked[0].severity == Severity.HIGH
        assert len(_audits(store, AuditAction.LOGIN_FAILED)) == 4

        # Even the right password is refused while locked
        with pytest.raises(AccountLockedError) as exc:
            await auth.login("player@example.com", PASSWORD)
        assert exc.value.message == INVALID_CREDENTIALS
        assert store.get_account(account.id).security.lock_until is not None

    async def test_success_resets_failure_counter(self, auth, store):
        account = (await _register(auth)).account
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await auth.login("player@example.com", "Wr0ngPassword")
        await auth.login("player@example.com", PASSWORD)
        assert store.get_account(account.id).security.login_attempts == 0

    async def test_inactive_account_cannot_login(self, auth, store):
        account = (await _register(auth)).account
        store.update_account(account.id, is_active=False)
        with pytest.raises(AuthenticationError):
            await auth.login("player@example.com", PASSWORD)
        assert _audits(store, AuditAction.LOGIN_FAILED)[0].details["reason"] == "inactive_account"

    async def test_social_only_account(self, auth, store):
        store.create_account("social@example.com", None, username="social_one")
        with pytest.raises(AuthenticationError, match=SOCIAL_ONLY_MESSAGE):
            await auth.login("social@example.com", "whatever")
        auth.disclose_social_only_login = False
        with pytest.raises(AuthenticationError, match=INVALID_CREDENTIALS):
            await auth.login("social@example.com", "whatever")


class TestMfaLogin:
    async def _enable_mfa(self, auth, mfa):
        account = (await _register(auth)).account
        setup = (await mfa.setup(account.id)).value
        await mfa.enable(account.id, setup.secret, pyotp.TOTP(setup.secret).now(), setup.backup_codes)
        return account, setup

    async def test_password_login_returns_challenge(self, auth, mfa, store):
        account, _ = await self._enable_mfa(auth, mfa)
        outcome = await auth.login("player@example.com", PASSWORD)
        assert isinstance(outcome.value, MfaChallenge)
        assert outcome.events == []
        # Only the registration session exists; no tokens yet
        assert len(store.list_sessions(account.id)) == 1
        pending = _audits(store, AuditAction.LOGIN)[0]
        assert pending.status == AuditStatus.WARNING
        assert pending.details["mfa_required"] is True

    async def test_challenge_plus_totp_issues_tokens(self, auth, mfa, store):
        account, setup = await self._enable_mfa(auth, mfa)
        challenge = (await auth.login("player@example.com", PASSWORD)).value
        outcome = await auth.complete_mfa_login(
            challenge.challenge_token, pyotp.TOTP(setup.secret).now()
        )
        assert outcome.value.account.id == account.id
        assert outcome.events[0].payload["mfa"] is True
        assert len(store.list_sessions(account.id)) == 2

    async def test_backup_code_completes_login_once(self, auth, mfa):
        _, setup = await self._enable_mfa(auth, mfa)
        challenge = (await auth.login("player@example.com", PASSWORD)).value
        await auth.complete_mfa_login(challenge.challenge_token, setup.backup_codes[0])
        with pytest.raises(InvalidCodeError):
            await auth.complete_mfa_login(challenge.challenge_token, setup.backup_codes[0])

    async def test_bad_codes_count_toward_lockout(self, auth, mfa, store):
        account, _ = await self._enable_mfa(auth, mfa)
        challenge = (await auth.login("player@example.com", PASSWORD)).value
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                await auth.complete_mfa_login(challenge.challenge_token, "000000x")
        assert len(_audits(store, AuditAction.ACCOUNT_LOCKED, account.id)) == 1
        with pytest.raises(AccountLockedError):
            await auth.complete_mfa_login(challenge.challenge_token, "000000x")

    async def test_access_token_is_not_a_challenge(self, auth, mfa, store):
        issued = await _register(auth)
        with pytest.raises(TokenInvalidError):
            await auth.complete_mfa_login(issued.tokens.access_token, "123456")
        assert _audits(store, AuditAction.MFA_LOGIN_FAILED)[0].details["reason"] == "challenge_invalid"


class TestRefresh:
    async def test_refresh_rotates_token(self, auth, store):
        issued = await _register(auth)
        pair = (await auth.refresh(issued.tokens.refresh_token)).value
        assert pair.refresh_token != issued.tokens.refresh_token
        assert len(store.list_sessions(issued.account.id)) == 1
        assert len(_audits(store, AuditAction.TOKEN_REFRESHED)) == 1
        # The new token is live
        await auth.refresh(pair.refresh_token)

    async def test_reuse_of_rotated_token_wipes_every_session(self, auth, store):
        issued = await _register(auth)
        await auth.login("player@example.com", PASSWORD)
        await auth.refresh(issued.tokens.refresh_token)
        assert len(store.list_sessions(issued.account.id)) == 2

        with pytest.raises(TokenInvalidError):
            await auth.refresh(issued.tokens.refresh_token)
        assert store.list_sessions(issued.account.id) == []
        reuse = _audits(store, AuditAction.REFRESH_TOKEN_REUSE)
        assert len(reuse) == 1
        assert reuse[0].severity == Severity.CRITICAL
        assert reuse[0].details["sessions_cleared"] == 2

    def test_concurrent_refresh_with_one_token(self, auth, store):
        issued = asyncio.run(_register(auth))
        token = issued.tokens.refresh_token
        barrier = threading.Barrier(5)
        results = []

        def worker():
            barrier.wait()
            try:
                asyncio.run(auth.refresh(token))
            except TokenInvalidError:
                results.append(False)
            else:
                results.append(True)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 5
        assert results.count(True) <= 1
        # Every loser replays a spent token, which wipes the winner's session too
        assert store.list_sessions(issued.account.id) == []
        assert _audits(store, AuditAction.REFRESH_TOKEN_REUSE)

    async def test_missing_and_garbage_tokens(self, auth, store):
        with pytest.raises(TokenInvalidError):
            await auth.refresh("")
        with pytest.raises(TokenInvalidError):
            await auth.refresh("not.a.token")
        reasons = [e.details["reason"] for e in _audits(store, AuditAction.TOKEN_REFRESH_FAILED)]
        assert sorted(reasons) == ["invalid", "missing_token"]

    async def test_access_token_cannot_refresh(self, auth):
        issued = await _register(auth)
        with pytest.raises(TokenInvalidError):
            await auth.refresh(issued.tokens.access_token)

    async def test_deactivated_account_cannot_refresh(self, auth, store):
        issued = await _register(auth)
        store.update_account(issued.account.id, is_active=False)
        with pytest.raises(TokenInvalidError):
            await auth.refresh(issued.tokens.refresh_token)


class TestLogout:
    async def test_logout_single_session(self, auth, store):
        issued = await _register(auth)
        await auth.login("player@example.com", PASSWORD)
        outcome = await auth.logout(issued.account.id, issued.tokens.refresh_token)
        assert outcome.value == 1
        assert outcome.events[0].event_type == ACCOUNT_LOGGED_OUT
        assert len(store.list_sessions(issued.account.id)) == 1
        with pytest.raises(TokenInvalidError):
            await auth.refresh(issued.tokens.refresh_token)

    async def test_logout_everywhere(self, auth, store):
        issued = await _register(auth)
        await auth.login("player@example.com", PASSWORD)
        assert (await auth.logout(issued.account.id)).value == 2
        assert store.list_sessions(issued.account.id) == []
        assert _audits(store, AuditAction.LOGOUT)[0].details["all_sessions"] is True

    async def test_logout_unknown_account(self, auth):
        with pytest.raises(AuthenticationError):
            await auth.logout("missing")


class TestPasswordLifecycle:
    async def test_change_password_clears_sessions(self, auth, store):
        issued = await _register(auth)
        outcome = await auth.change_password(issued.account.id, PASSWORD, NEW_PASSWORD)
        assert outcome.events[0].event_type == ACCOUNT_PASSWORD_CHANGED
        assert store.list_sessions(issued.account.id) == []
        with pytest.raises(AuthenticationError):
            await auth.login("player@example.com", PASSWORD)
        await auth.login("player@example.com", NEW_PASSWORD)

    async def test_change_password_failures(self, auth, store):
        issued = await _register(auth)
        with pytest.raises(AuthenticationError, match="Current password is incorrect"):
            await auth.change_password(issued.account.id, "Wr0ngPassword", NEW_PASSWORD)
        with pytest.raises(ValidationError):
            await auth.change_password(issued.account.id, PASSWORD, "weak")
        assert len(_audits(store, AuditAction.PASSWORD_CHANGE_FAILED)) == 2

    async def test_reset_flow(self, auth, store, email):
        issued = await _register(auth)
        await auth.request_password_reset("player@example.com")
        _, token = email.password_resets[0]
        assert await auth.validate_reset_token(token) is True
        assert store.get_account(issued.account.id).password_reset_token_hash != token

        await auth.reset_password(token, NEW_PASSWORD)
        assert store.list_sessions(issued.account.id) == []
        assert await auth.validate_reset_token(token) is False
        await auth.login("player@example.com", NEW_PASSWORD)
        with pytest.raises(ValidationError):
            await auth.reset_password(token, NEW_PASSWORD)

    async def test_reset_request_for_unknown_email_is_silent(self, auth, store, email):
        outcome = await auth.request_password_reset("ghost@example.com")
        assert outcome.value is None and outcome.events == []
        assert email.password_resets == []
        assert _audits(store, AuditAction.PASSWORD_RESET_REQUESTED)[0].status == AuditStatus.FAILURE

    async def test_reset_rejects_weak_password(self, auth, email):
        await _register(auth)
        await auth.request_password_reset("player@example.com")
        _, token = email.password_resets[0]
        with pytest.raises(ValidationError, match="requirements"):
            await auth.reset_password(token, "weak")
        # The token survives a rejected attempt
        assert await auth.validate_reset_token(token) is True


class TestEmailVerification:
    async def test_verify_with_registration_token(self, auth, store, email):
        issued = await _register(auth)
        _, token = email.verifications[0]
        outcome = await auth.verify_email(token)
        assert outcome.value.is_email_verified is True
        assert outcome.events[0].event_type == ACCOUNT_EMAIL_VERIFIED
        assert store.get_account(issued.account.id).is_email_verified
        with pytest.raises(ValidationError):
            await auth.verify_email(token)

    async def test_request_when_already_verified(self, auth, email):
        issued = await _register(auth)
        await auth.verify_email(email.verifications[0][1])
        with pytest.raises(ValidationError, match="already verified"):
            await auth.request_email_verification(issued.account.id)

    async def test_rejected_requests_are_audited(self, auth, store, email):
        issued = await _register(auth)
        await auth.verify_email(email.verifications[0][1])
        with pytest.raises(ValidationError):
            await auth.request_email_verification(issued.account.id)
        with pytest.raises(NotFoundError):
            await auth.request_email_verification("missing-account")
        failures = [
            (e.account_id, e.details["reason"])
            for e in _audits(store, AuditAction.EMAIL_VERIFICATION_REQUESTED)
            if e.status == AuditStatus.FAILURE
        ]
        assert (issued.account.id, "already_verified") in failures
        assert ("missing-account", "account_not_found") in failures

    async def test_resend_replaces_token(self, auth, email):
        await _register(auth)
        await auth.resend_verification("player@example.com")
        first, second = email.verifications[0][1], email.verifications[1][1]
        with pytest.raises(ValidationError):
            await auth.verify_email(first)
        await auth.verify_email(second)

    async def test_resend_for_unknown_email_is_silent(self, auth, email):
        await auth.resend_verification("ghost@example.com")
        assert email.verifications == []


class TestDeactivateAndProfile:
    async def test_deactivate(self, auth, store):
        issued = await _register(auth)
        with pytest.raises(AuthenticationError):
            await auth.deactivate_account(issued.account.id, "Wr0ngPassword")
        outcome = await auth.deactivate_account(issued.account.id, PASSWORD)
        assert outcome.events[0].event_type == ACCOUNT_DEACTIVATED
        assert store.get_account(issued.account.id).is_active is False
        assert store.list_sessions(issued.account.id) == []
        with pytest.raises(TokenInvalidError):
            auth.resolve_access_token(issued.tokens.access_token)

    async def test_profile(self, auth):
        issued = await _register(auth)
        view = (await auth.get_profile(issued.account.id)).value
        assert view.profile.first_name == "Ada"
        assert view.mfa_enabled is False
        assert view.linked_providers == []
        with pytest.raises(AuthenticationError):
            await auth.get_profile("missing")
