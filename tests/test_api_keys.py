"""Tests for service API keys: issuance, restrictions, budgets and audit trail."""

from datetime import timedelta

import pytest

from sportauth.service.api_keys import ApiKeyManager
from sportauth.service.audit import AuditPipeline, RequestContext
from sportauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from sportauth.storage.common import hash_token
from sportauth.storage.memory import MemoryStore
from sportauth.storage.models import AuditAction, AuditFilters, AuditStatus, utcnow


@pytest.fixture
def account(store):
    account, _ = store.create_account("club@example.com", None, username="club_admin")
    return account


def _audits(store, action):
    events, _ = store.query_audit_events(AuditFilters(action=action))
    return events


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCreate:
    def test_secret_is_returned_once_and_only_hash_stored(self, api_keys, store, account):
        issued = api_keys.create(account.id, "scoreboard", permissions=["read:matches"])
        assert issued.secret.startswith("sk_")
        assert len(issued.secret) == 3 + 64
        stored = store.get_api_key(issued.key.id)
        assert stored.key_hash == hash_token(issued.secret)
        assert stored.key_prefix == issued.secret[:11]
        assert issued.secret not in repr(stored)

        created = _audits(store, AuditAction.API_KEY_CREATED)[0]
        assert created.api_key_id == issued.key.id
        assert created.account_id == account.id

    def test_rejects_bad_input(self, api_keys, account):
        with pytest.raises(ValidationError) as exc:
            api_keys.create(account.id, "bot", permissions=["read:matches", "delete:world"])
        assert exc.value.detail["invalid"] == ["delete:world"]
        with pytest.raises(ValidationError):
            api_keys.create(account.id, "bot", allowed_ips=["10.0.0.1", "not-an-ip"])
        with pytest.raises(ValidationError):
            api_keys.create(account.id, "   ")
        with pytest.raises(NotFoundError):
            api_keys.create("missing", "bot")

    def test_budget_is_clamped(self, api_keys, account):
        issued = api_keys.create(account.id, "bot", max_requests=50_000, window_seconds=5)
        assert issued.key.max_requests == 10_000
        assert issued.key.window_seconds == 60

    def test_expiry_in_days(self, api_keys, account):
        issued = api_keys.create(account.id, "bot", expires_in_days=30)
        assert issued.key.expires_at - utcnow() > timedelta(days=29)


class TestAuthenticate:
    async def test_valid_key_resolves_owner(self, api_keys, store, account, context):
        issued = api_keys.create(account.id, "bot", permissions=["read:users"])
        principal = await api_keys.authenticate(
            issued.secret, permission="read:users", context=context
        )
        assert principal.account.id == account.id
        assert store.get_api_key(issued.key.id).last_used_at is not None
        used = _audits(store, AuditAction.API_KEY_USED)[0]
        assert used.api_key_id == issued.key.id
        assert used.ip_address == "203.0.113.7"

    async def test_unknown_and_malformed_keys(self, api_keys, store):
        with pytest.raises(AuthenticationError):
            await api_keys.authenticate(None)
        with pytest.raises(AuthenticationError):
            await api_keys.authenticate("pk_not_ours")
        with pytest.raises(AuthenticationError):
            await api_keys.authenticate("sk_" + "0" * 64)
        rejected = _audits(store, AuditAction.API_KEY_REJECTED)
        assert [e.details["reason"] for e in rejected] == ["unknown_key"]

    async def test_inactive_key(self, api_keys, account):
        issued = api_keys.create(account.id, "bot")
        api_keys.update(account.id, issued.key.id, is_active=False)
        with pytest.raises(AuthenticationError):
            await api_keys.authenticate(issued.secret)

    async def test_expired_key(self, api_keys, store, account):
        issued = api_keys.create(account.id, "bot")
        store.update_api_key(issued.key.id, expires_at=utcnow() - timedelta(minutes=1))
        with pytest.raises(AuthenticationError, match="expired"):
            await api_keys.authenticate(issued.secret)
        expired = _audits(store, AuditAction.API_KEY_EXPIRED)[0]
        assert expired.status == AuditStatus.FAILURE
        assert expired.api_key_id == issued.key.id

    async def test_ip_allow_list(self, api_keys, store, account):
        issued = api_keys.create(account.id, "bot", allowed_ips=["198.51.100.10"])
        with pytest.raises(ForbiddenError):
            await api_keys.authenticate(
                issued.secret, context=RequestContext(ip_address="203.0.113.7")
            )
        principal = await api_keys.authenticate(
            issued.secret, context=RequestContext(ip_address="198.51.100.10")
        )
        assert principal.key.id == issued.key.id
        rejected = _audits(store, AuditAction.API_KEY_REJECTED)
        assert rejected[0].details["reason"] == "ip_not_allowed"

    async def test_permissions(self, api_keys, account):
        reader = api_keys.create(account.id, "reader", permissions=["read:matches"])
        admin = api_keys.create(account.id, "admin", permissions=["admin:all"])
        with pytest.raises(ForbiddenError):
            await api_keys.authenticate(reader.secret, permission="write:matches")
        await api_keys.authenticate(reader.secret, permission="read:matches")
        principal = await api_keys.authenticate(admin.secret, permission="write:venues")
        assert principal.allows("write:users")

    async def test_deactivated_owner(self, api_keys, store, account):
        issued = api_keys.create(account.id, "bot")
        store.update_account(account.id, is_active=False)
        with pytest.raises(AuthenticationError):
            await api_keys.authenticate(issued.secret)


class TestRateLimit:
    async def test_budget_is_enforced_per_key(self, store, audit, account):
        clock = FakeClock()
        manager = ApiKeyManager(store, store, audit, clock=clock)
        limited = manager.create(account.id, "limited", max_requests=1, window_seconds=3600)
        other = manager.create(account.id, "other", max_requests=1, window_seconds=3600)

        await manager.authenticate(limited.secret)
        with pytest.raises(RateLimitedError) as exc:
            await manager.authenticate(limited.secret)
        assert exc.value.detail["limit"] == 1
        assert exc.value.detail["retry_after"] > 0
        await manager.authenticate(other.secret)

        events = _audits(store, AuditAction.API_KEY_RATE_LIMITED)
        assert [e.api_key_id for e in events] == [limited.key.id]
        assert events[0].status == AuditStatus.WARNING

        clock.now += 3600
        await manager.authenticate(limited.secret)


class TestManagement:
    async def test_regenerate_invalidates_old_secret(self, api_keys, store, account):
        issued = api_keys.create(account.id, "bot")
        fresh = api_keys.regenerate(account.id, issued.key.id)
        assert fresh.secret != issued.secret
        with pytest.raises(AuthenticationError):
            await api_keys.authenticate(issued.secret)
        assert (await api_keys.authenticate(fresh.secret)).key.id == issued.key.id
        assert _audits(store, AuditAction.API_KEY_REGENERATED)

    async def test_revoke(self, api_keys, store, account):
        issued = api_keys.create(account.id, "bot")
        api_keys.revoke(account.id, issued.key.id)
        assert store.get_api_key(issued.key.id) is None
        with pytest.raises(AuthenticationError):
            await api_keys.authenticate(issued.secret)
        with pytest.raises(NotFoundError):
            api_keys.revoke(account.id, issued.key.id)
        assert _audits(store, AuditAction.API_KEY_DELETED)[0].details["name"] == "bot"

    def test_keys_are_scoped_to_owner(self, api_keys, store, account):
        other, _ = store.create_account("rival@example.com", None, username="rival_club")
        issued = api_keys.create(account.id, "bot")
        with pytest.raises(NotFoundError):
            api_keys.get(other.id, issued.key.id)
        with pytest.raises(NotFoundError):
            api_keys.update(other.id, issued.key.id, name="stolen")
        with pytest.raises(NotFoundError):
            api_keys.revoke(other.id, issued.key.id)

    def test_update_validates_and_audits(self, api_keys, store, account):
        issued = api_keys.create(account.id, "bot")
        updated = api_keys.update(
            account.id, issued.key.id, name="renamed", permissions=["read:venues"]
        )
        assert updated.name == "renamed"
        assert updated.permissions == ["read:venues"]
        with pytest.raises(ValidationError):
            api_keys.update(account.id, issued.key.id, permissions=["root"])
        event = _audits(store, AuditAction.API_KEY_UPDATED)[0]
        assert event.details["fields"] == ["name", "permissions"]

    def test_list_pages_and_stats(self, api_keys, store, account):
        for name in ("a", "b", "c"):
            api_keys.create(account.id, name)
        expired = api_keys.create(account.id, "old")
        store.update_api_key(expired.key.id, expires_at=utcnow() - timedelta(days=1))
        store.touch_api_key(expired.key.id, utcnow())

        page = api_keys.list(account.id, page=2, limit=3)
        assert page.total == 4
        assert page.pages == 2
        assert len(page.keys) == 1
        with pytest.raises(ValidationError):
            api_keys.list(account.id, page=0)

        assert api_keys.stats(account.id) == {
            "total": 4,
            "active": 3,
            "expired": 1,
            "recently_used": 1,
        }


def test_keys_survive_a_restart(tmp_path):
    first = MemoryStore(str(tmp_path), mfa_encryption_key="persist-key")
    account, _ = first.create_account("club@example.com", None, username="club_admin")
    issued = ApiKeyManager(first, first, AuditPipeline(first)).create(
        account.id, "bot", permissions=["read:matches"], allowed_ips=["198.51.100.10"]
    )

    reloaded = MemoryStore(str(tmp_path), mfa_encryption_key="persist-key")
    key = reloaded.get_api_key_by_hash(hash_token(issued.secret))
    assert key.id == issued.key.id
    assert key.permissions == ["read:matches"]
    assert key.allowed_ips == ["198.51.100.10"]
    assert key.created_at == issued.key.created_at
