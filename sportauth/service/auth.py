from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from sportauth.logging import get_logger
from sportauth.service.audit import AuditPipeline, RequestContext
from sportauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCodeError,
    MfaStateError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from sportauth.service.events import (
    ACCOUNT_DEACTIVATED,
    ACCOUNT_EMAIL_VERIFIED,
    ACCOUNT_LOGGED_IN,
    ACCOUNT_LOGGED_OUT,
    ACCOUNT_PASSWORD_CHANGED,
    ACCOUNT_PASSWORD_RESET_REQUESTED,
    ACCOUNT_REGISTERED,
    DomainEvent,
    Outcome,
    event,
)
from sportauth.service.lockout import LockoutGuard
from sportauth.service.mfa import MfaEngine
from sportauth.service.passwords import PasswordPolicy
from sportauth.service.sessions import SessionStore
from sportauth.service.tokens import TokenIssuer, TokenPair
from sportauth.storage.common import AccountStore, hash_token
from sportauth.storage.errors import ConstraintViolation
from sportauth.storage.models import (
    Account,
    AuditAction,
    AuditResource,
    AuditStatus,
    Profile,
    Severity,
    utcnow,
)

INVALID_CREDENTIALS = "Invalid credentials"
SOCIAL_ONLY_MESSAGE = "Please use social login for this account"


@dataclass(frozen=True)
class TokensIssued:
    account: Account
    tokens: TokenPair
    profile: Optional[Profile] = None
    is_new_account: bool = False

    @property
    def kind(self) -> str:
        return "tokens"


@dataclass(frozen=True)
class MfaChallenge:
    """Password accepted but a second factor is still owed."""

    account_id: str
    email: str
    challenge_token: str

    @property
    def kind(self) -> str:
        return "mfa_challenge"


AuthResult = Union[TokensIssued, MfaChallenge]


@dataclass(frozen=True)
class AccountProfile:
    account: Account
    profile: Optional[Profile]
    mfa_enabled: bool = False
    linked_providers: List[str] = field(default_factory=list)


class AuthOrchestrator:
    """Register, login, refresh, logout, password and account lifecycle.

    Every public method returns ``Outcome(value, events)`` and writes exactly
    one audit record on each path, success or failure. Client-facing
    authentication errors are deliberately generic; the precise cause is in
    the audit record's ``details["reason"]``.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        passwords: PasswordPolicy,
        tokens: TokenIssuer,
        mfa: MfaEngine,
        sessions: SessionStore,
        lockout: LockoutGuard,
        audit: AuditPipeline,
        email=None,
        email_token_ttl_hours: int = 24,
        allow_signup: bool = True,
        disclose_social_only_login: bool = True,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.tokens = tokens
        self.mfa = mfa
        self.sessions = sessions
        self.lockout = lockout
        self.audit = audit
        self.email = email
        self.email_token_ttl = timedelta(hours=email_token_ttl_hours)
        self.allow_signup = allow_signup
        self.disclose_social_only_login = disclose_social_only_login
        self.logger = get_logger(__name__)

    # -- helpers -----------------------------------------------------------

    def _audit(
        self,
        action: AuditAction,
        *,
        status: AuditStatus = AuditStatus.SUCCESS,
        account_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
        severity: Optional[Severity] = None,
        resource: AuditResource = AuditResource.AUTH,
    ) -> None:
        self.audit.log(
            action,
            resource,
            status=status,
            account_id=account_id,
            details=details,
            context=context,
            severity=severity,
        )

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.passwords.hash, password)

    async def _verify_password(self, password: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        return await asyncio.to_thread(self.passwords.verify, password or "", stored_hash)

    def _strength_errors(self, password: str) -> List[str]:
        return self.passwords.validate_strength(password or "").errors

    def start_session(
        self,
        account: Account,
        *,
        context: Optional[RequestContext] = None,
        is_new_account: bool = False,
    ) -> TokensIssued:
        """Issue a token pair, store its refresh token and stamp last-login."""
        pair = self.tokens.issue_pair(account.id, account.email)
        self.sessions.add(account.id, pair.refresh_token, context=context)
        updated = self.store.update_account(account.id, last_login_at=utcnow()) or account
        return TokensIssued(
            account=updated,
            tokens=pair,
            profile=self.store.get_profile(account.id),
            is_new_account=is_new_account,
        )

    def _new_email_token(self, account: Account) -> str:
        token = secrets.token_urlsafe(32)
        self.store.set_email_verification(
            account.id, hash_token(token), utcnow() + self.email_token_ttl
        )
        if self.email:
            self.email.send_email_verification(account.email, token)
        return token

    def resolve_access_token(self, access_token: str) -> Account:
        """Account behind a bearer token; raises for expired, invalid or inactive."""
        claims = self.tokens.verify_access(access_token)
        account = self.store.get_account(claims["sub"])
        if not account or not account.is_active:
            raise TokenInvalidError("Invalid token")
        return account

    # -- registration & login ----------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        username: str,
        first_name: str = "",
        last_name: str = "",
        context: Optional[RequestContext] = None,
    ) -> Outcome[TokensIssued]:
        def fail(reason: str) -> None:
            self._audit(
                AuditAction.REGISTER,
                status=AuditStatus.FAILURE,
                details={"reason": reason},
                context=context,
            )

        if not self.allow_signup:
            fail("signup_disabled")
            raise ForbiddenError("Signup is disabled")
        if not email or "@" not in email or not (username or "").strip():
            fail("invalid_input")
            raise ValidationError("Email and username are required")
        errors = self._strength_errors(password)
        if errors:
            fail("weak_password")
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": errors}
            )
        if self.store.get_account_by_email(email):
            fail("email_exists")
            raise ConflictError(
                "User with this email already exists", detail={"field": "email"}
            )
        if self.store.username_exists(username):
            fail("username_exists")
            raise ConflictError("Username is already taken", detail={"field": "username"})

        password_hash = await self._hash_password(password)
        try:
            account, profile = self.store.create_account(
                email,
                password_hash,
                username=username,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            fail(f"{exc.field or 'constraint'}_exists")
            message = (
                "Username is already taken"
                if exc.field == "username"
                else "User with this email already exists"
            )
            raise ConflictError(message, detail={"field": exc.field}) from exc

        pair = self.tokens.issue_pair(account.id, account.email)
        self.sessions.add(account.id, pair.refresh_token, context=context)
        self._new_email_token(account)
        self._audit(
            AuditAction.REGISTER,
            account_id=account.id,
            details={"username": profile.username, "verification_sent": bool(self.email)},
            context=context,
        )
        self.logger.info("account_registered", account_id=account.id)
        return Outcome(
            TokensIssued(account=account, tokens=pair, profile=profile, is_new_account=True),
            [
                event(
                    ACCOUNT_REGISTERED,
                    account.id,
                    {
                        "email": account.email,
                        "username": profile.username,
                        "first_name": profile.first_name,
                        "last_name": profile.last_name,
                        "profile_id": profile.id,
                    },
                )
            ],
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[AuthResult]:
        account = self.store.get_account_by_email(email or "")
        if not account or not account.is_active:
            self._audit(
                AuditAction.LOGIN_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account.id if account else None,
                details={"reason": "inactive_account" if account else "unknown_account"},
                context=context,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        # Lock state decides before any password work is done
        lock_until = self.lockout.lock_expiry(account.security.lock_until)
        if lock_until:
            self._audit(
                AuditAction.LOGIN_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account.id,
                details={"reason": "account_locked", "lock_until": lock_until.isoformat()},
                context=context,
                severity=Severity.HIGH,
            )
            raise AccountLockedError(INVALID_CREDENTIALS)

        if not account.password_hash:
            self._audit(
                AuditAction.LOGIN_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account.id,
                details={"reason": "social_only_account"},
                context=context,
            )
            raise AuthenticationError(
                SOCIAL_ONLY_MESSAGE if self.disclose_social_only_login else INVALID_CREDENTIALS
            )

        if not await self._verify_password(password, account.password_hash):
            state = self.lockout.record_failure(account.id)
            if state.just_locked:
                self._audit(
                    AuditAction.ACCOUNT_LOCKED,
                    status=AuditStatus.FAILURE,
                    account_id=account.id,
                    details={
                        "reason": "invalid_password",
                        "attempts": state.attempts,
                        "lock_until": state.lock_until.isoformat() if state.lock_until else None,
                    },
                    context=context,
                )
            else:
                self._audit(
                    AuditAction.LOGIN_FAILED,
                    status=AuditStatus.FAILURE,
                    account_id=account.id,
                    details={"reason": "invalid_password", "attempts": state.attempts},
                    context=context,
                )
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.lockout.record_success(account.id)
        if self.passwords.needs_rehash(account.password_hash):
            self.store.update_account(
                account.id, password_hash=await self._hash_password(password)
            )

        if account.mfa.enabled:
            challenge = MfaChallenge(
                account_id=account.id,
                email=account.email,
                challenge_token=self.tokens.issue_mfa_challenge(account.id, account.email),
            )
            self._audit(
                AuditAction.LOGIN,
                status=AuditStatus.WARNING,
                account_id=account.id,
                details={"mfa_required": True},
                context=context,
            )
            return Outcome(challenge)

        issued = self.start_session(account, context=context)
        self._audit(AuditAction.LOGIN, account_id=account.id, context=context)
        return Outcome(
            issued,
            [event(ACCOUNT_LOGGED_IN, account.id, {"email": account.email})],
        )

    async def complete_mfa_login(
        self,
        challenge_token: str,
        code: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[TokensIssued]:
        def fail(reason: str, account_id: Optional[str] = None, **extra) -> None:
            self._audit(
                AuditAction.MFA_LOGIN_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": reason, **extra},
                context=context,
                resource=AuditResource.MFA,
            )

        try:
            claims = self.tokens.verify_mfa_challenge(challenge_token)
        except (TokenExpiredError, TokenInvalidError) as exc:
            fail("challenge_expired" if isinstance(exc, TokenExpiredError) else "challenge_invalid")
            raise
        account = self.store.get_account(claims["sub"])
        if not account or not account.is_active:
            fail("inactive_account", claims["sub"])
            raise AuthenticationError(INVALID_CREDENTIALS)
        if self.lockout.lock_expiry(account.security.lock_until):
            fail("account_locked", account.id)
            raise AccountLockedError(INVALID_CREDENTIALS)

        try:
            result = await self.mfa.check(account.id, code)
        except InvalidCodeError:
            state = self.lockout.record_failure(account.id)
            if state.just_locked:
                self._audit(
                    AuditAction.ACCOUNT_LOCKED,
                    status=AuditStatus.FAILURE,
                    account_id=account.id,
                    details={"reason": "invalid_mfa_code", "attempts": state.attempts},
                    context=context,
                )
            else:
                fail("invalid_code", account.id, attempts=state.attempts)
            raise
        except MfaStateError:
            fail("mfa_not_enabled", account.id)
            raise

        self.lockout.record_success(account.id)
        issued = self.start_session(account, context=context)
        self._audit(
            AuditAction.LOGIN,
            account_id=account.id,
            details={"mfa": True, "used_backup_code": result.used_backup_code},
            context=context,
        )
        return Outcome(
            issued,
            [event(ACCOUNT_LOGGED_IN, account.id, {"email": account.email, "mfa": True})],
        )

    # -- token lifecycle ---------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[TokenPair]:
        def fail(reason: str, account_id: Optional[str] = None) -> None:
            self._audit(
                AuditAction.TOKEN_REFRESH_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": reason},
                context=context,
            )

        if not refresh_token:
            fail("missing_token")
            raise TokenInvalidError("Refresh token is required")
        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except TokenExpiredError:
            fail("expired")
            raise
        except TokenInvalidError:
            fail("invalid")
            raise

        account = self.store.get_account(claims["sub"])
        if not account or not account.is_active:
            fail("inactive_account", claims["sub"])
            raise TokenInvalidError("Invalid refresh token")

        pair = self.tokens.issue_pair(account.id, account.email)
        if not self.sessions.rotate(account.id, refresh_token, pair.refresh_token):
            # A validly signed token that is no longer live has been replayed
            cleared = self.sessions.clear(account.id)
            self._audit(
                AuditAction.REFRESH_TOKEN_REUSE,
                status=AuditStatus.FAILURE,
                account_id=account.id,
                details={"sessions_cleared": cleared, "jti": claims.get("jti")},
                context=context,
            )
            self.logger.warning(
                "refresh_token_reuse_detected", account_id=account.id, sessions_cleared=cleared
            )
            raise TokenInvalidError("Invalid refresh token")

        self._audit(AuditAction.TOKEN_REFRESHED, account_id=account.id, context=context)
        return Outcome(pair)

    async def logout(
        self,
        account_id: str,
        refresh_token: Optional[str] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[int]:
        account = self.store.get_account(account_id)
        if not account:
            self._audit(
                AuditAction.LOGOUT,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": "unknown_account"},
                context=context,
            )
            raise AuthenticationError("User not found")
        if refresh_token:
            removed = 1 if self.sessions.remove(account_id, refresh_token) else 0
        else:
            removed = self.sessions.clear(account_id)
        self._audit(
            AuditAction.LOGOUT,
            account_id=account_id,
            details={"all_sessions": not refresh_token, "sessions_removed": removed},
            context=context,
        )
        return Outcome(
            removed,
            [event(ACCOUNT_LOGGED_OUT, account_id, {"email": account.email})],
        )

    # -- password & account lifecycle --------------------------------------

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[None]:
        def fail(reason: str) -> None:
            self._audit(
                AuditAction.PASSWORD_CHANGE_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": reason},
                context=context,
            )

        account = self.store.get_account(account_id)
        if not account:
            fail("unknown_account")
            raise AuthenticationError("User not found")
        errors = self._strength_errors(new_password)
        if errors:
            fail("weak_password")
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": errors}
            )
        if not await self._verify_password(current_password, account.password_hash):
            fail("invalid_current_password")
            raise AuthenticationError("Current password is incorrect")

        self.store.update_account(
            account_id, password_hash=await self._hash_password(new_password)
        )
        cleared = self.sessions.clear(account_id)
        self._audit(
            AuditAction.PASSWORD_CHANGED,
            account_id=account_id,
            details={"sessions_cleared": cleared},
            context=context,
        )
        return Outcome(
            None,
            [event(ACCOUNT_PASSWORD_CHANGED, account_id, {"email": account.email})],
        )

    async def deactivate_account(
        self,
        account_id: str,
        password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[None]:
        def fail(reason: str) -> None:
            self._audit(
                AuditAction.ACCOUNT_DEACTIVATION_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": reason},
                context=context,
                resource=AuditResource.USER,
            )

        account = self.store.get_account(account_id)
        if not account:
            fail("unknown_account")
            raise AuthenticationError("User not found")
        if not await self._verify_password(password, account.password_hash):
            fail("invalid_password")
            raise AuthenticationError("Password is incorrect")

        self.store.update_account(account_id, is_active=False)
        cleared = self.sessions.clear(account_id)
        self._audit(
            AuditAction.ACCOUNT_DEACTIVATED,
            account_id=account_id,
            details={"sessions_cleared": cleared},
            context=context,
            resource=AuditResource.USER,
        )
        return Outcome(
            None,
            [event(ACCOUNT_DEACTIVATED, account_id, {"email": account.email})],
        )

    async def get_profile(self, account_id: str) -> Outcome[AccountProfile]:
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("User not found")
        return Outcome(
            AccountProfile(
                account=account,
                profile=self.store.get_profile(account_id),
                mfa_enabled=account.mfa.enabled,
                linked_providers=[s.provider for s in account.social_logins],
            )
        )

    # -- recovery ----------------------------------------------------------

    async def request_password_reset(
        self, email: str, *, context: Optional[RequestContext] = None
    ) -> Outcome[None]:
        """Send a reset link. Unknown addresses succeed silently."""
        account = self.store.get_account_by_email(email or "")
        if not account or not account.is_active:
            self._audit(
                AuditAction.PASSWORD_RESET_REQUESTED,
                status=AuditStatus.FAILURE,
                account_id=account.id if account else None,
                details={"reason": "inactive_account" if account else "unknown_account"},
                context=context,
            )
            return Outcome(None)

        token = secrets.token_urlsafe(32)
        self.store.set_password_reset(
            account.id, hash_token(token), utcnow() + self.email_token_ttl
        )
        if self.email:
            self.email.send_password_reset(account.email, token)
        self._audit(
            AuditAction.PASSWORD_RESET_REQUESTED, account_id=account.id, context=context
        )
        return Outcome(
            None,
            [event(ACCOUNT_PASSWORD_RESET_REQUESTED, account.id, {"email": account.email})],
        )

    async def validate_reset_token(self, token: str) -> bool:
        if not token:
            return False
        return self.store.find_password_reset(hash_token(token), utcnow()) is not None

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[None]:
        def fail(reason: str) -> None:
            self._audit(
                AuditAction.PASSWORD_RESET_FAILED,
                status=AuditStatus.FAILURE,
                details={"reason": reason},
                context=context,
            )

        errors = self._strength_errors(new_password)
        if errors:
            fail("weak_password")
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": errors}
            )
        if not token:
            fail("invalid_token")
            raise ValidationError("Invalid or expired reset token")
        password_hash = await self._hash_password(new_password)
        account = self.store.complete_password_reset(hash_token(token), password_hash, utcnow())
        if not account:
            fail("invalid_token")
            raise ValidationError("Invalid or expired reset token")
        self._audit(
            AuditAction.PASSWORD_RESET_COMPLETED, account_id=account.id, context=context
        )
        return Outcome(
            None,
            [
                event(
                    ACCOUNT_PASSWORD_CHANGED,
                    account.id,
                    {"email": account.email, "via": "reset"},
                )
            ],
        )

    async def request_email_verification(
        self, account_id: str, *, context: Optional[RequestContext] = None
    ) -> Outcome[None]:
        account = self.store.get_account(account_id)
        if not account or account.is_email_verified:
            reason = "already_verified" if account else "account_not_found"
            self._audit(
                AuditAction.EMAIL_VERIFICATION_REQUESTED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": reason},
                context=context,
                resource=AuditResource.USER,
            )
            if not account:
                raise NotFoundError("User not found")
            raise ValidationError("Email is already verified")
        self._new_email_token(account)
        self._audit(
            AuditAction.EMAIL_VERIFICATION_REQUESTED,
            account_id=account.id,
            context=context,
            resource=AuditResource.USER,
        )
        return Outcome(None)

    async def resend_verification(
        self, email: str, *, context: Optional[RequestContext] = None
    ) -> Outcome[None]:
        """Resend a verification link; silent for unknown or verified addresses."""
        account = self.store.get_account_by_email(email or "")
        if not account or account.is_email_verified or not account.is_active:
            self._audit(
                AuditAction.EMAIL_VERIFICATION_REQUESTED,
                status=AuditStatus.FAILURE,
                account_id=account.id if account else None,
                details={"reason": "not_applicable"},
                context=context,
                resource=AuditResource.USER,
            )
            return Outcome(None)
        return await self.request_email_verification(account.id, context=context)

    async def verify_email(
        self, token: str, *, context: Optional[RequestContext] = None
    ) -> Outcome[Account]:
        account = (
            self.store.consume_email_verification(hash_token(token), utcnow())
            if token
            else None
        )
        if not account:
            self._audit(
                AuditAction.EMAIL_VERIFIED,
                status=AuditStatus.FAILURE,
                details={"reason": "invalid_token"},
                context=context,
                resource=AuditResource.USER,
            )
            raise ValidationError("Invalid or expired verification token")
        self._audit(
            AuditAction.EMAIL_VERIFIED,
            account_id=account.id,
            context=context,
            resource=AuditResource.USER,
        )
        return Outcome(
            account,
            [event(ACCOUNT_EMAIL_VERIFIED, account.id, {"email": account.email})],
        )


__all__ = [
    "AccountProfile",
    "AuthOrchestrator",
    "AuthResult",
    "DomainEvent",
    "MfaChallenge",
    "TokensIssued",
]
