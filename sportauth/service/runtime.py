from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sportauth.config import Settings, get_settings, reset_settings_cache
from sportauth.logging import get_logger
from sportauth.service.api_keys import ApiKeyManager
from sportauth.service.audit import AuditPipeline
from sportauth.service.auth import AuthOrchestrator
from sportauth.service.email import EmailService
from sportauth.service.events import EventBus
from sportauth.service.lockout import LockoutGuard
from sportauth.service.mfa import MfaEngine
from sportauth.service.oauth import OAuthLinkManager
from sportauth.service.passwords import PasswordPolicy
from sportauth.service.sessions import SessionStore
from sportauth.service.tokens import TokenIssuer
from sportauth.storage.memory import MemoryStore
from sportauth.storage.postgres import PostgresStore
from sportauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root: builds every component once from ``Settings``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_key_material,
                    audit_retention_days=self.settings.audit_retention_days,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_key_material,
                    audit_retention_days=self.settings.audit_retention_days,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the MFA status cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.events = EventBus()
        self.audit = AuditPipeline(self.store)
        self.passwords = PasswordPolicy(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_kib,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.tokens = TokenIssuer(
            self.settings.jwt_access_secret,
            self.settings.jwt_refresh_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            challenge_ttl_seconds=self.settings.mfa_challenge_ttl_seconds,
        )
        self.sessions = SessionStore(
            self.store, self.audit, max_sessions=self.settings.max_sessions_per_account
        )
        self.lockout = LockoutGuard(
            self.store,
            threshold=self.settings.lockout_threshold,
            lock_minutes=self.settings.lockout_minutes,
            failure_window_minutes=self.settings.lockout_failure_window_minutes,
        )
        self.mfa = MfaEngine(
            self.store,
            self.passwords,
            self.audit,
            cache=self.cache,
            issuer_name=self.settings.mfa_issuer_name,
            backup_code_count=self.settings.mfa_backup_code_count,
            valid_window=self.settings.mfa_valid_window,
            status_cache_seconds=self.settings.mfa_status_cache_seconds,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            token_ttl_hours=self.settings.email_token_ttl_hours,
        )
        self.auth = AuthOrchestrator(
            self.store,
            passwords=self.passwords,
            tokens=self.tokens,
            mfa=self.mfa,
            sessions=self.sessions,
            lockout=self.lockout,
            audit=self.audit,
            email=self.email,
            email_token_ttl_hours=self.settings.email_token_ttl_hours,
            allow_signup=self.settings.allow_signup,
            disclose_social_only_login=self.settings.disclose_social_only_login,
        )
        self.oauth = OAuthLinkManager(self.store, self.auth, self.audit)
        self.api_keys = ApiKeyManager(self.store, self.store, self.audit, cache=self.cache)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            lockout_threshold=self.settings.lockout_threshold,
            max_sessions=self.settings.max_sessions_per_account,
        )

    async def close(self) -> None:
        self.email.shutdown(wait=False)
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh read of the environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.email.shutdown(wait=False)
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
