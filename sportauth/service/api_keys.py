from __future__ import annotations

import ipaddress
import math
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sportauth.logging import get_logger
from sportauth.service.audit import AuditPipeline, RequestContext
from sportauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from sportauth.storage.common import AccountStore, ApiKeyStore, hash_token
from sportauth.storage.models import (
    Account,
    ApiKey,
    AuditAction,
    AuditResource,
    AuditStatus,
    utcnow,
)

KEY_PREFIX = "sk_"
KEY_BYTES = 32
DISPLAY_PREFIX_LENGTH = 11
MAX_NAME_LENGTH = 100

ADMIN_PERMISSION = "admin:all"
PERMISSIONS = (
    "read:users",
    "write:users",
    "read:matches",
    "write:matches",
    "read:tournaments",
    "write:tournaments",
    "read:venues",
    "write:venues",
    ADMIN_PERMISSION,
)

DEFAULT_MAX_REQUESTS = 1000
MAX_REQUESTS_RANGE = (1, 10000)
DEFAULT_WINDOW_SECONDS = 3600
WINDOW_SECONDS_RANGE = (60, 86400)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
RECENT_USE_WINDOW = timedelta(days=7)


def _clamp(value: int, bounds: Tuple[int, int]) -> int:
    low, high = bounds
    return min(max(int(value), low), high)


def generate_key() -> str:
    return KEY_PREFIX + secrets.token_hex(KEY_BYTES)


@dataclass(frozen=True)
class IssuedApiKey:
    """A freshly minted key. ``secret`` is never stored and never shown again."""

    key: ApiKey
    secret: str


@dataclass
class ApiKeyPage:
    keys: List[ApiKey]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(frozen=True)
class ApiKeyPrincipal:
    """The caller behind a verified ``X-API-Key`` header."""

    key: ApiKey
    account: Account

    def allows(self, permission: str) -> bool:
        return ADMIN_PERMISSION in self.key.permissions or permission in self.key.permissions


class ApiKeyManager:
    """Service credentials owned by accounts.

    Keys are ``sk_`` plus 64 hex characters and only their SHA-256 digest is
    persisted. Each key carries its own request budget, enforced as a token
    bucket in Redis when a cache is configured and in process otherwise.
    """

    def __init__(
        self,
        store: ApiKeyStore,
        accounts: AccountStore,
        audit: AuditPipeline,
        *,
        cache=None,
        clock=time.monotonic,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.audit = audit
        self.cache = cache
        self.logger = get_logger(__name__)
        self._clock = clock
        self._local_buckets: Dict[str, Tuple[float, float]] = {}
        self._bucket_lock = threading.Lock()

    def _audit(
        self,
        action: AuditAction,
        key: Optional[ApiKey],
        *,
        status: AuditStatus = AuditStatus.SUCCESS,
        account_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        self.audit.log(
            action,
            AuditResource.API_KEY,
            status=status,
            account_id=account_id or (key.account_id if key else None),
            resource_id=key.id if key else None,
            details=details,
            context=context,
            api_key_id=key.id if key else None,
        )

    # -- validation --------------------------------------------------------

    @staticmethod
    def _check_name(name: Optional[str]) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("API key name is required", detail={"field": "name"})
        if len(cleaned) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"API key name must be at most {MAX_NAME_LENGTH} characters",
                detail={"field": "name"},
            )
        return cleaned

    @staticmethod
    def _check_permissions(permissions: Optional[List[str]]) -> List[str]:
        requested = list(dict.fromkeys(permissions or []))
        invalid = [p for p in requested if p not in PERMISSIONS]
        if invalid:
            raise ValidationError(
                f"Invalid permissions: {', '.join(invalid)}",
                detail={"field": "permissions", "invalid": invalid},
            )
        return requested

    @staticmethod
    def _check_ips(allowed_ips: Optional[List[str]]) -> List[str]:
        invalid = []
        for ip in allowed_ips or []:
            try:
                ipaddress.IPv4Address(ip)
            except ValueError:
                invalid.append(ip)
        if invalid:
            raise ValidationError(
                f"Invalid IP addresses: {', '.join(invalid)}",
                detail={"field": "allowed_ips", "invalid": invalid},
            )
        return list(allowed_ips or [])

    def _owned(self, account_id: str, key_id: str) -> ApiKey:
        key = self.store.get_api_key(key_id)
        if not key or key.account_id != account_id:
            raise NotFoundError("API key not found", detail={"key_id": key_id})
        return key

    # -- management --------------------------------------------------------

    def create(
        self,
        account_id: str,
        name: str,
        *,
        permissions: Optional[List[str]] = None,
        allowed_ips: Optional[List[str]] = None,
        expires_in_days: Optional[int] = None,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        context: Optional[RequestContext] = None,
    ) -> IssuedApiKey:
        if not self.accounts.get_account(account_id):
            raise NotFoundError("User not found")
        secret = generate_key()
        now = utcnow()
        expires_at = None
        if expires_in_days and expires_in_days > 0:
            expires_at = now + timedelta(days=expires_in_days)
        key = ApiKey(
            id=str(uuid.uuid4()),
            account_id=account_id,
            name=self._check_name(name),
            key_hash=hash_token(secret),
            key_prefix=secret[:DISPLAY_PREFIX_LENGTH],
            permissions=self._check_permissions(permissions),
            allowed_ips=self._check_ips(allowed_ips),
            max_requests=_clamp(max_requests, MAX_REQUESTS_RANGE),
            window_seconds=_clamp(window_seconds, WINDOW_SECONDS_RANGE),
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stored = self.store.create_api_key(key)
        self._audit(
            AuditAction.API_KEY_CREATED,
            stored,
            details={"name": stored.name, "permissions": stored.permissions},
            context=context,
        )
        self.logger.info("api_key_created", account_id=account_id, key_id=stored.id)
        return IssuedApiKey(key=stored, secret=secret)

    def list(
        self, account_id: str, *, page: int = 1, limit: int = DEFAULT_PAGE_SIZE
    ) -> ApiKeyPage:
        if page < 1:
            raise ValidationError("page must be >= 1", detail={"field": "page"})
        if limit < 1:
            raise ValidationError("limit must be >= 1", detail={"field": "limit"})
        limit = min(limit, MAX_PAGE_SIZE)
        keys, total = self.store.list_api_keys(
            account_id, offset=(page - 1) * limit, limit=limit
        )
        return ApiKeyPage(keys=keys, total=total, page=page, limit=limit)

    def get(self, account_id: str, key_id: str) -> ApiKey:
        return self._owned(account_id, key_id)

    def update(
        self,
        account_id: str,
        key_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        allowed_ips: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> ApiKey:
        self._owned(account_id, key_id)
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = self._check_name(name)
        if permissions is not None:
            fields["permissions"] = self._check_permissions(permissions)
        if allowed_ips is not None:
            fields["allowed_ips"] = self._check_ips(allowed_ips)
        if is_active is not None:
            fields["is_active"] = bool(is_active)
        if max_requests is not None:
            fields["max_requests"] = _clamp(max_requests, MAX_REQUESTS_RANGE)
        if window_seconds is not None:
            fields["window_seconds"] = _clamp(window_seconds, WINDOW_SECONDS_RANGE)
        updated = self.store.update_api_key(key_id, **fields)
        if not updated:
            raise NotFoundError("API key not found", detail={"key_id": key_id})
        self._audit(
            AuditAction.API_KEY_UPDATED,
            updated,
            details={"fields": sorted(fields)},
            context=context,
        )
        return updated

    def regenerate(
        self, account_id: str, key_id: str, *, context: Optional[RequestContext] = None
    ) -> IssuedApiKey:
        """Swap in a new secret; the old one stops working immediately."""
        self._owned(account_id, key_id)
        secret = generate_key()
        updated = self.store.update_api_key(
            key_id, key_hash=hash_token(secret), key_prefix=secret[:DISPLAY_PREFIX_LENGTH]
        )
        if not updated:
            raise NotFoundError("API key not found", detail={"key_id": key_id})
        self._audit(AuditAction.API_KEY_REGENERATED, updated, context=context)
        self.logger.info("api_key_regenerated", account_id=account_id, key_id=key_id)
        return IssuedApiKey(key=updated, secret=secret)

    def revoke(
        self, account_id: str, key_id: str, *, context: Optional[RequestContext] = None
    ) -> None:
        key = self._owned(account_id, key_id)
        if not self.store.delete_api_key(key_id):
            raise NotFoundError("API key not found", detail={"key_id": key_id})
        self._audit(
            AuditAction.API_KEY_DELETED, key, details={"name": key.name}, context=context
        )
        self.logger.info("api_key_deleted", account_id=account_id, key_id=key_id)

    def stats(self, account_id: str) -> Dict[str, int]:
        keys, total = self.store.list_api_keys(account_id)
        now = utcnow()
        return {
            "total": total,
            "active": sum(1 for k in keys if k.is_active and not k.is_expired(now)),
            "expired": sum(1 for k in keys if k.is_expired(now)),
            "recently_used": sum(
                1 for k in keys if k.last_used_at and k.last_used_at >= now - RECENT_USE_WINDOW
            ),
        }

    # -- request authentication --------------------------------------------

    async def _consume(self, key: ApiKey) -> Tuple[bool, int, int]:
        bucket = f"api_key:{key.id}"
        if self.cache is not None and hasattr(self.cache, "check_rate_limit"):
            return await self.cache.check_rate_limit(bucket, key.max_requests, key.window_seconds)
        limit = float(key.max_requests)
        refill_rate = limit / float(key.window_seconds)
        now = self._clock()
        with self._bucket_lock:
            tokens, last_ts = self._local_buckets.get(bucket, (limit, now))
            tokens = min(limit, tokens + max(0.0, now - last_ts) * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._local_buckets[bucket] = (tokens, now)
            reset_seconds = 0 if allowed else int(math.ceil((1 - tokens) / refill_rate))
        return allowed, int(tokens), reset_seconds

    async def authenticate(
        self,
        raw_key: Optional[str],
        *,
        permission: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> ApiKeyPrincipal:
        """Resolve an ``X-API-Key`` value to its owner, enforcing every key restriction.

        Raises AuthenticationError for unknown, inactive or expired keys,
        ForbiddenError for a disallowed IP or missing permission, and
        RateLimitedError once the key's request budget is spent.
        """
        ctx = context or RequestContext()
        if not raw_key or not raw_key.startswith(KEY_PREFIX):
            raise AuthenticationError("Invalid API key")
        key = self.store.get_api_key_by_hash(hash_token(raw_key))
        if not key or not key.is_active:
            self._audit(
                AuditAction.API_KEY_REJECTED,
                key,
                status=AuditStatus.FAILURE,
                details={"reason": "inactive" if key else "unknown_key"},
                context=ctx,
            )
            raise AuthenticationError("Invalid API key")

        if key.is_expired(utcnow()):
            self._audit(
                AuditAction.API_KEY_EXPIRED,
                key,
                status=AuditStatus.FAILURE,
                details={"expires_at": key.expires_at.isoformat()},
                context=ctx,
            )
            raise AuthenticationError("API key has expired")

        if key.allowed_ips and ctx.ip_address not in key.allowed_ips:
            self._audit(
                AuditAction.API_KEY_REJECTED,
                key,
                status=AuditStatus.FAILURE,
                details={"reason": "ip_not_allowed"},
                context=ctx,
            )
            raise ForbiddenError("IP address not allowed for this API key")

        allowed, remaining, reset_seconds = await self._consume(key)
        if not allowed:
            self._audit(
                AuditAction.API_KEY_RATE_LIMITED,
                key,
                status=AuditStatus.WARNING,
                details={
                    "max_requests": key.max_requests,
                    "window_seconds": key.window_seconds,
                },
                context=ctx,
            )
            raise RateLimitedError(
                "API key rate limit exceeded",
                detail={"retry_after": reset_seconds, "limit": key.max_requests},
            )

        account = self.accounts.get_account(key.account_id)
        if not account or not account.is_active:
            self._audit(
                AuditAction.API_KEY_REJECTED,
                key,
                status=AuditStatus.FAILURE,
                details={"reason": "owner_inactive"},
                context=ctx,
            )
            raise AuthenticationError("Invalid API key")

        principal = ApiKeyPrincipal(key=key, account=account)
        if permission and not principal.allows(permission):
            self._audit(
                AuditAction.API_KEY_REJECTED,
                key,
                status=AuditStatus.FAILURE,
                details={"reason": "missing_permission", "permission": permission},
                context=ctx,
            )
            raise ForbiddenError(
                "Insufficient API key permissions", detail={"required": permission}
            )

        used_at = utcnow()
        self.store.touch_api_key(key.id, used_at)
        key.last_used_at = used_at
        self._audit(
            AuditAction.API_KEY_USED,
            key,
            details={"remaining": remaining, "permission": permission},
            context=ctx,
        )
        return principal


__all__ = [
    "ADMIN_PERMISSION",
    "PERMISSIONS",
    "ApiKeyManager",
    "ApiKeyPage",
    "ApiKeyPrincipal",
    "IssuedApiKey",
    "generate_key",
]
