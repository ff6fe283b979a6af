from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from sportauth.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for hot, short-lived auth state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill and consume for per-API-key request budgets
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((1 - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _mfa_status_key(account_id: str) -> str:
        return f"auth:mfa_status:{account_id}"

    @staticmethod
    def _rate_key(key: str) -> str:
        return f"auth:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("redis_cache_decode_failed")
            return None
        return value if isinstance(value, dict) else None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_mfa_status(self, account_id: str) -> Optional[Dict[str, Any]]:
        return self._decode(await self.client.get(self._mfa_status_key(account_id)))

    async def set_mfa_status(
        self, account_id: str, status: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._mfa_status_key(account_id), json.dumps(status), ex=max(1, ttl_seconds)
        )

    async def invalidate_mfa_status(self, account_id: str) -> None:
        await self.client.delete(self._mfa_status_key(account_id))

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Consume one request from the bucket; returns (allowed, remaining, reset_seconds)."""
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._rate_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest while exposing the same awaitable surface as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get_mfa_status(self, account_id: str) -> Optional[Dict[str, Any]]:
        return RedisCache._decode(
            self._sync_client.get(RedisCache._mfa_status_key(account_id))
        )

    async def set_mfa_status(
        self, account_id: str, status: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            RedisCache._mfa_status_key(account_id),
            json.dumps(status),
            ex=max(1, ttl_seconds),
        )

    async def invalidate_mfa_status(self, account_id: str) -> None:
        self._sync_client.delete(RedisCache._mfa_status_key(account_id))

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        allowed, tokens, reset_after = self._token_bucket(
            keys=[RedisCache._rate_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def close(self) -> None:
        self._sync_client.close()
