import pytest

from sportauth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from sportauth.service.events import ACCOUNT_LOGGED_IN, ACCOUNT_REGISTERED, OAUTH_LINKED, OAUTH_UNLINKED
from sportauth.service.oauth import OAuthProfile
from sportauth.storage.models import AuditAction, AuditFilters

PASSWORD = "Str0ngPassw0rd"


def _google(provider_id="g-123", email="runner@example.com", **kwargs):
    return OAuthProfile(provider="google", provider_id=provider_id, email=email, **kwargs)


def _audits(store, action):
    events, _ = store.query_audit_events(AuditFilters(action=action))
    return events


class TestProfile:
    def test_names_fall_back_to_display_name(self):
        profile = OAuthProfile(provider="github", provider_id="1", display_name="Grace Brewster Hopper")
        assert profile.names() == ("Grace", "Brewster Hopper")
        assert OAuthProfile(provider="github", provider_id="1").names() == ("User", "")

    def test_derive_username_suffixes_until_free(self, oauth, store):
        store.create_account("a@example.com", None, username="runner")
        store.create_account("b@example.com", None, username="runner1")
        assert oauth.derive_username("Run.ner+tag@example.com") == "run.nertag"
        assert oauth.derive_username("runner@example.com") == "runner2"


class TestAuthenticate:
    async def test_new_identity_creates_verified_account(self, oauth, store):
        outcome = await oauth.authenticate(_google(first_name="Sam"))
        issued = outcome.value
        assert issued.is_new_account
        account = store.get_account(issued.account.id)
        assert account.is_email_verified
        assert account.password_hash is None
        assert account.social_login("google").provider_id == "g-123"
        assert issued.profile.username == "runner"
        assert [e.event_type for e in outcome.events] == [ACCOUNT_REGISTERED]
        assert len(store.list_sessions(account.id)) == 1

    async def test_returning_identity_logs_in(self, oauth):
        first = (await oauth.authenticate(_google())).value
        outcome = await oauth.authenticate(_google(email="changed@example.com"))
        assert outcome.value.account.id == first.account.id
        assert not outcome.value.is_new_account
        assert [e.event_type for e in outcome.events] == [ACCOUNT_LOGGED_IN]

    async def test_matching_email_links_existing_account(self, oauth, auth, store):
        registered = (await auth.register("runner@example.com", PASSWORD, username="runner")).value
        outcome = await oauth.authenticate(_google())
        assert outcome.value.account.id == registered.account.id
        assert [e.event_type for e in outcome.events] == [OAUTH_LINKED, ACCOUNT_LOGGED_IN]
        assert _audits(store, AuditAction.OAUTH_LOGIN)[0].details["linked_by_email"] is True

    async def test_email_match_with_other_identity_of_same_provider(self, oauth, store):
        await oauth.authenticate(_google(provider_id="g-1"))
        with pytest.raises(ConflictError):
            await oauth.authenticate(_google(provider_id="g-2"))
        assert _audits(store, AuditAction.OAUTH_LOGIN_FAILED)[0].details["reason"] == "link_conflict"

    async def test_missing_email(self, oauth, store):
        with pytest.raises(ValidationError):
            await oauth.authenticate(_google(email=""))
        assert _audits(store, AuditAction.OAUTH_LOGIN_FAILED)[0].details["reason"] == "missing_email"

    async def test_unsupported_provider(self, oauth):
        with pytest.raises(ValidationError):
            await oauth.authenticate(OAuthProfile(provider="myspace", provider_id="1", email="x@example.com"))

    async def test_inactive_account(self, oauth, store):
        issued = (await oauth.authenticate(_google())).value
        store.update_account(issued.account.id, is_active=False)
        with pytest.raises(AuthenticationError):
            await oauth.authenticate(_google())


class TestLinkUnlink:
    async def test_link_and_unlink(self, oauth, auth, store):
        account_id = (await auth.register("runner@example.com", PASSWORD, username="runner")).value.account.id
        outcome = await oauth.link(account_id, OAuthProfile(provider="github", provider_id="gh-9"))
        assert outcome.value.provider == "github"
        assert outcome.events[0].event_type == OAUTH_LINKED
        assert [p["provider"] for p in await oauth.linked_accounts(account_id)] == ["github"]

        outcome = await oauth.unlink(account_id, "GitHub")
        assert outcome.events[0].event_type == OAUTH_UNLINKED
        assert await oauth.linked_accounts(account_id) == []
        assert len(_audits(store, AuditAction.OAUTH_ACCOUNT_UNLINKED)) == 1

    async def test_link_conflicts(self, oauth, auth):
        first = (await auth.register("one@example.com", PASSWORD, username="player1")).value.account.id
        second = (await auth.register("two@example.com", PASSWORD, username="player2")).value.account.id
        await oauth.link(first, OAuthProfile(provider="github", provider_id="gh-1"))

        with pytest.raises(ConflictError, match="already linked"):
            await oauth.link(first, OAuthProfile(provider="github", provider_id="gh-1"))
        with pytest.raises(ConflictError, match="A github account is already linked"):
            await oauth.link(first, OAuthProfile(provider="github", provider_id="gh-2"))
        with pytest.raises(ConflictError, match="linked to another user"):
            await oauth.link(second, OAuthProfile(provider="github", provider_id="gh-1"))

    async def test_cannot_unlink_last_method(self, oauth, store):
        account_id = (await oauth.authenticate(_google())).value.account.id
        with pytest.raises(ConflictError, match="Set a password first"):
            await oauth.unlink(account_id, "google")
        assert store.get_account(account_id).social_login("google") is not None
        assert _audits(store, AuditAction.OAUTH_UNLINK_FAILED)[0].details["reason"] == "last_auth_method"

    async def test_social_only_account_with_two_providers_can_unlink_one(self, oauth):
        account_id = (await oauth.authenticate(_google())).value.account.id
        await oauth.link(account_id, OAuthProfile(provider="facebook", provider_id="fb-1"))
        await oauth.unlink(account_id, "google")
        assert [p["provider"] for p in await oauth.linked_accounts(account_id)] == ["facebook"]

    async def test_unlink_not_linked(self, oauth, auth):
        account_id = (await auth.register("runner@example.com", PASSWORD, username="runner")).value.account.id
        with pytest.raises(NotFoundError):
            await oauth.unlink(account_id, "facebook")
