from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sportauth.logging import get_logger
from sportauth.service.audit import AuditPipeline, RequestContext
from sportauth.service.auth import AuthOrchestrator, TokensIssued
from sportauth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from sportauth.service.events import (
    ACCOUNT_LOGGED_IN,
    ACCOUNT_REGISTERED,
    OAUTH_LINKED,
    OAUTH_UNLINKED,
    Outcome,
    event,
)
from sportauth.storage.common import AccountStore
from sportauth.storage.errors import ConstraintViolation
from sportauth.storage.models import (
    Account,
    AuditAction,
    AuditResource,
    AuditStatus,
    SocialIdentity,
)

SUPPORTED_PROVIDERS = ("google", "facebook", "github")
MAX_USERNAME_LENGTH = 30
USERNAME_ATTEMPTS = 50

_HANDLE_CHARS = re.compile(r"[^a-z0-9_.]")


@dataclass(frozen=True)
class OAuthProfile:
    """Identity asserted by an external provider after its own code exchange."""

    provider: str
    provider_id: str
    email: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar: Optional[str] = None

    def names(self) -> tuple[str, str]:
        parts = (self.display_name or "").split()
        first = self.first_name or (parts[0] if parts else "User")
        last = self.last_name or " ".join(parts[1:])
        return first, last


class OAuthLinkManager:
    """Maps provider identities onto accounts.

    An account always keeps at least one way to sign in: the store refuses
    to unlink the last provider of an account without a password.
    """

    def __init__(
        self,
        store: AccountStore,
        auth: AuthOrchestrator,
        audit: AuditPipeline,
    ) -> None:
        self.store = store
        self.auth = auth
        self.audit = audit
        self.logger = get_logger(__name__)

    def _audit(
        self,
        action: AuditAction,
        *,
        status: AuditStatus = AuditStatus.SUCCESS,
        account_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        self.audit.log(
            action,
            AuditResource.OAUTH,
            status=status,
            account_id=account_id,
            details=details,
            context=context,
        )

    @staticmethod
    def _check_provider(provider: str) -> str:
        normalized = (provider or "").strip().lower()
        if normalized not in SUPPORTED_PROVIDERS:
            raise ValidationError(
                f"Unsupported provider: {provider}",
                detail={"field": "provider", "supported": list(SUPPORTED_PROVIDERS)},
            )
        return normalized

    def derive_username(self, email: str) -> str:
        """Lowercased handle from the email local part, suffixed until unused."""
        base = _HANDLE_CHARS.sub("", email.split("@", 1)[0].lower())[:MAX_USERNAME_LENGTH]
        base = base or "user"
        candidate = base
        counter = 1
        while self.store.username_exists(candidate):
            suffix = str(counter)
            candidate = base[: MAX_USERNAME_LENGTH - len(suffix)] + suffix
            counter += 1
        return candidate

    def _create_account(self, profile: OAuthProfile, provider: str) -> Account:
        first_name, last_name = profile.names()
        identity = SocialIdentity(
            provider=provider, provider_id=profile.provider_id, email=profile.email
        )
        for _ in range(USERNAME_ATTEMPTS):
            try:
                account, _ = self.store.create_account(
                    profile.email,
                    None,
                    username=self.derive_username(profile.email),
                    first_name=first_name,
                    last_name=last_name,
                    is_email_verified=True,
                    social_login=identity,
                )
                return account
            except ConstraintViolation as exc:
                # Another request took the derived handle first
                if exc.field != "username":
                    raise ConflictError(
                        "Account already exists", detail={"field": exc.field}
                    ) from exc
        raise ConflictError("Could not allocate a username", detail={"field": "username"})

    async def authenticate(
        self,
        profile: OAuthProfile,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[TokensIssued]:
        """Sign in with a provider identity, linking or creating the account as needed."""
        provider = self._check_provider(profile.provider)
        if not profile.provider_id:
            raise ValidationError("Provider id is required", detail={"field": "provider_id"})

        account = self.store.get_account_by_provider(provider, profile.provider_id)
        linked_by_email = is_new = False
        if not account:
            if not profile.email or "@" not in profile.email:
                self._audit(
                    AuditAction.OAUTH_LOGIN_FAILED,
                    status=AuditStatus.FAILURE,
                    details={"provider": provider, "reason": "missing_email"},
                    context=context,
                )
                raise ValidationError(
                    "Provider did not return an email address", detail={"field": "email"}
                )
            account = self.store.get_account_by_email(profile.email)
            if account:
                try:
                    self.store.add_social_login(
                        account.id,
                        SocialIdentity(
                            provider=provider,
                            provider_id=profile.provider_id,
                            email=profile.email,
                        ),
                    )
                except ConstraintViolation as exc:
                    self._audit(
                        AuditAction.OAUTH_LOGIN_FAILED,
                        status=AuditStatus.FAILURE,
                        account_id=account.id,
                        details={"provider": provider, "reason": "link_conflict"},
                        context=context,
                    )
                    raise ConflictError(
                        "This social account cannot be linked", detail={"field": exc.field}
                    ) from exc
                linked_by_email = True
            else:
                account = self._create_account(profile, provider)
                is_new = True

        if not account.is_active:
            self._audit(
                AuditAction.OAUTH_LOGIN_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account.id,
                details={"provider": provider, "reason": "inactive_account"},
                context=context,
            )
            raise AuthenticationError("Invalid credentials")

        issued = self.auth.start_session(account, context=context, is_new_account=is_new)
        self._audit(
            AuditAction.OAUTH_LOGIN,
            account_id=account.id,
            details={
                "provider": provider,
                "is_new_account": is_new,
                "linked_by_email": linked_by_email,
            },
            context=context,
        )
        self.logger.info(
            "oauth_login",
            provider=provider,
            account_id=account.id,
            is_new_account=is_new,
        )

        events = []
        if is_new:
            user_profile = issued.profile
            events.append(
                event(
                    ACCOUNT_REGISTERED,
                    account.id,
                    {
                        "email": account.email,
                        "username": user_profile.username if user_profile else None,
                        "first_name": user_profile.first_name if user_profile else None,
                        "last_name": user_profile.last_name if user_profile else None,
                        "profile_id": user_profile.id if user_profile else None,
                        "provider": provider,
                    },
                )
            )
        else:
            if linked_by_email:
                events.append(event(OAUTH_LINKED, account.id, {"provider": provider}))
            events.append(
                event(ACCOUNT_LOGGED_IN, account.id, {"email": account.email, "provider": provider})
            )
        return Outcome(issued, events)

    async def link(
        self,
        account_id: str,
        profile: OAuthProfile,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[SocialIdentity]:
        provider = self._check_provider(profile.provider)

        def fail(reason: str, message: str) -> ConflictError:
            self._audit(
                AuditAction.OAUTH_LINK_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"provider": provider, "reason": reason},
                context=context,
            )
            return ConflictError(message, detail={"provider": provider})

        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("User not found")
        existing = account.social_login(provider)
        if existing and existing.provider_id == profile.provider_id:
            raise fail("already_linked", "This social account is already linked")
        if existing:
            raise fail("provider_in_use", f"A {provider} account is already linked")
        owner = self.store.get_account_by_provider(provider, profile.provider_id)
        if owner and owner.id != account_id:
            raise fail("linked_elsewhere", "This social account is linked to another user")

        identity = SocialIdentity(
            provider=provider, provider_id=profile.provider_id, email=profile.email or None
        )
        try:
            self.store.add_social_login(account_id, identity)
        except ConstraintViolation as exc:
            raise fail("constraint", "This social account is linked to another user") from exc

        self._audit(
            AuditAction.OAUTH_ACCOUNT_LINKED,
            account_id=account_id,
            details={"provider": provider},
            context=context,
        )
        self.logger.info("social_account_linked", account_id=account_id, provider=provider)
        return Outcome(identity, [event(OAUTH_LINKED, account_id, {"provider": provider})])

    async def unlink(
        self,
        account_id: str,
        provider: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[None]:
        provider = self._check_provider(provider)
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("User not found")
        try:
            removed = self.store.remove_social_login(account_id, provider)
        except ConstraintViolation as exc:
            self._audit(
                AuditAction.OAUTH_UNLINK_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"provider": provider, "reason": "last_auth_method"},
                context=context,
            )
            raise ConflictError(
                "Cannot unlink last authentication method. Set a password first.",
                detail={"provider": provider},
            ) from exc
        if not removed:
            self._audit(
                AuditAction.OAUTH_UNLINK_FAILED,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"provider": provider, "reason": "not_linked"},
                context=context,
            )
            raise NotFoundError("Provider not linked", detail={"provider": provider})

        self._audit(
            AuditAction.OAUTH_ACCOUNT_UNLINKED,
            account_id=account_id,
            details={"provider": provider},
            context=context,
        )
        self.logger.info("social_account_unlinked", account_id=account_id, provider=provider)
        return Outcome(None, [event(OAUTH_UNLINKED, account_id, {"provider": provider})])

    async def linked_accounts(self, account_id: str) -> List[Dict[str, Any]]:
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("User not found")
        return [
            {
                "provider": identity.provider,
                "email": identity.email,
                "linked_at": identity.linked_at.isoformat(),
            }
            for identity in account.social_logins
        ]
