from __future__ import annotations

import asyncio
import base64
import binascii
import io
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import pyotp
import qrcode

from sportauth.logging import get_logger
from sportauth.service.audit import AuditPipeline, RequestContext
from sportauth.service.errors import (
    AuthenticationError,
    InvalidCodeError,
    MfaStateError,
    NotFoundError,
    ValidationError,
)
from sportauth.service.events import MFA_DISABLED, MFA_ENABLED, Outcome, event
from sportauth.service.passwords import PasswordPolicy
from sportauth.storage.common import AccountStore
from sportauth.storage.models import AuditAction, AuditResource, AuditStatus, utcnow

BACKUP_CODE_LENGTH = 8


@dataclass(frozen=True)
class MfaSetup:
    """A generated-but-uncommitted secret; nothing is stored until ``enable``."""

    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str]


@dataclass(frozen=True)
class MfaStatus:
    enabled: bool
    backup_codes_remaining: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "backup_codes_remaining": self.backup_codes_remaining,
        }


@dataclass(frozen=True)
class MfaVerifyResult:
    used_backup_code: bool
    backup_codes_remaining: Optional[int] = None


def _normalize_code(code: str) -> str:
    return (code or "").strip().replace(" ", "").replace("-", "").upper()


def _valid_base32(secret: str) -> bool:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return False
    return bool(secret)


class MfaEngine:
    """TOTP second factor with single-use backup codes.

    State per account is Disabled -> Enabled; the pending-setup secret lives
    only on the client until ``enable`` verifies a code against it. Status
    reads are cached (Redis when configured, otherwise an in-process TTL map)
    and every mutation invalidates the cached entry.
    """

    def __init__(
        self,
        store: AccountStore,
        passwords: PasswordPolicy,
        audit: AuditPipeline,
        *,
        cache=None,
        issuer_name: str = "Sportification",
        backup_code_count: int = 10,
        valid_window: int = 2,
        status_cache_seconds: int = 300,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.audit = audit
        self.cache = cache
        self.issuer_name = issuer_name
        self.backup_code_count = backup_code_count
        self.valid_window = valid_window
        self.status_cache_seconds = status_cache_seconds
        self.logger = get_logger(__name__)
        self._state_lock = threading.Lock()
        self._status_cache: Dict[str, Tuple[MfaStatus, float]] = {}

    # -- helpers -----------------------------------------------------------

    def generate_backup_codes(self) -> List[str]:
        return [
            secrets.token_hex(BACKUP_CODE_LENGTH)[:BACKUP_CODE_LENGTH].upper()
            for _ in range(self.backup_code_count)
        ]

    def _qr_data_uri(self, uri: str) -> str:
        qr = qrcode.QRCode(version=1, box_size=10, border=4)
        qr.add_data(uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buf = io.BytesIO()
        img.save(buf)
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()

    def _totp_matches(self, secret: str, code: str) -> bool:
        if not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(code, valid_window=self.valid_window)
        except (binascii.Error, ValueError):
            self.logger.warning("totp_secret_invalid")
            return False

    async def _hash_codes(self, codes: List[str]) -> List[str]:
        return await asyncio.to_thread(
            lambda: [self.passwords.hash(_normalize_code(c)) for c in codes]
        )

    async def _require_password(self, account_id: str, password: str) -> None:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("User not found")
        if not account.password_hash:
            raise AuthenticationError("Password verification required")
        ok = await asyncio.to_thread(
            self.passwords.verify, password or "", account.password_hash
        )
        if not ok:
            raise AuthenticationError("Invalid password")

    async def invalidate_status(self, account_id: str) -> None:
        if self.cache:
            await self.cache.invalidate_mfa_status(account_id)
        else:
            with self._state_lock:
                self._status_cache.pop(account_id, None)

    def _rejected(
        self,
        action: AuditAction,
        account_id: str,
        reason: str,
        exc: Exception,
        context: Optional[RequestContext],
    ) -> Exception:
        self.audit.log(
            action,
            AuditResource.MFA,
            status=AuditStatus.FAILURE,
            account_id=account_id,
            details={"reason": reason},
            context=context,
        )
        return exc

    # -- operations --------------------------------------------------------

    async def setup(
        self, account_id: str, *, context: Optional[RequestContext] = None
    ) -> Outcome[MfaSetup]:
        account = self.store.get_account(account_id)
        if not account:
            raise self._rejected(
                AuditAction.MFA_SETUP_STARTED, account_id, "account_not_found",
                NotFoundError("User not found"), context,
            )
        if account.mfa.enabled:
            raise self._rejected(
                AuditAction.MFA_SETUP_STARTED, account_id, "already_enabled",
                MfaStateError("MFA is already enabled"), context,
            )
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=account.email, issuer_name=self.issuer_name
        )
        setup = MfaSetup(
            secret=secret,
            otpauth_uri=uri,
            qr_code=self._qr_data_uri(uri),
            backup_codes=self.generate_backup_codes(),
        )
        self.audit.log(
            AuditAction.MFA_SETUP_STARTED,
            AuditResource.MFA,
            account_id=account_id,
            context=context,
        )
        self.logger.info("mfa_setup_initiated", account_id=account_id)
        return Outcome(setup)

    async def enable(
        self,
        account_id: str,
        secret: str,
        code: str,
        backup_codes: List[str],
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[MfaStatus]:
        account = self.store.get_account(account_id)
        if not account:
            raise self._rejected(
                AuditAction.MFA_ENABLE_FAILED, account_id, "account_not_found",
                NotFoundError("User not found"), context,
            )
        if account.mfa.enabled:
            raise self._rejected(
                AuditAction.MFA_ENABLE_FAILED, account_id, "already_enabled",
                MfaStateError("MFA is already enabled"), context,
            )
        if not secret or not _valid_base32(secret):
            raise self._rejected(
                AuditAction.MFA_ENABLE_FAILED, account_id, "invalid_secret",
                ValidationError("Invalid MFA secret", detail={"field": "secret"}), context,
            )
        codes = [_normalize_code(c) for c in backup_codes or [] if _normalize_code(c)]
        if not codes:
            raise self._rejected(
                AuditAction.MFA_ENABLE_FAILED, account_id, "missing_backup_codes",
                ValidationError("Backup codes are required", detail={"field": "backup_codes"}),
                context,
            )
        if not self._totp_matches(secret, _normalize_code(code)):
            self.audit.log(
                AuditAction.MFA_ENABLE_FAILED,
                AuditResource.MFA,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": "invalid_code"},
                context=context,
            )
            raise InvalidCodeError("Invalid verification code")

        hashes = await self._hash_codes(codes)
        if not self.store.enable_mfa(account_id, secret, hashes):
            raise self._rejected(
                AuditAction.MFA_ENABLE_FAILED, account_id, "already_enabled",
                MfaStateError("MFA is already enabled"), context,
            )
        await self.invalidate_status(account_id)
        self.audit.log(
            AuditAction.MFA_ENABLED,
            AuditResource.MFA,
            account_id=account_id,
            details={"backup_codes": len(hashes)},
            context=context,
        )
        self.logger.info("mfa_enabled", account_id=account_id)
        return Outcome(
            MfaStatus(enabled=True, backup_codes_remaining=len(hashes)),
            [event(MFA_ENABLED, account_id)],
        )

    async def check(self, account_id: str, code: str) -> MfaVerifyResult:
        """Verify a TOTP or backup code without auditing.

        TOTP is tried first. A matching backup code is consumed with a
        conditional store write, so a code used concurrently succeeds once.
        """
        mfa = self.store.get_mfa(account_id)
        if mfa is None:
            raise NotFoundError("User not found")
        if not mfa.enabled:
            raise MfaStateError("MFA is not enabled")
        if not mfa.secret:
            raise MfaStateError("MFA secret not found")

        candidate = _normalize_code(code)
        if not candidate:
            raise InvalidCodeError("Invalid verification code")
        if self._totp_matches(mfa.secret, candidate):
            self.store.touch_mfa(account_id, utcnow())
            return MfaVerifyResult(used_backup_code=False)

        matched = await asyncio.to_thread(
            lambda: next(
                (h for h in mfa.backup_codes if self.passwords.verify(candidate, h)),
                None,
            )
        )
        if matched and self.store.consume_backup_code(account_id, matched):
            await self.invalidate_status(account_id)
            remaining = len(mfa.backup_codes) - 1
            self.logger.warning(
                "mfa_backup_code_used", account_id=account_id, remaining=remaining
            )
            return MfaVerifyResult(used_backup_code=True, backup_codes_remaining=remaining)

        self.logger.warning("mfa_invalid_code", account_id=account_id)
        raise InvalidCodeError("Invalid verification code")

    async def verify(
        self,
        account_id: str,
        code: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[MfaVerifyResult]:
        try:
            result = await self.check(account_id, code)
        except InvalidCodeError:
            self.audit.log(
                AuditAction.MFA_LOGIN_FAILED,
                AuditResource.MFA,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": "invalid_code"},
                context=context,
            )
            raise
        action = (
            AuditAction.MFA_BACKUP_CODE_USED
            if result.used_backup_code
            else AuditAction.MFA_LOGIN_SUCCESS
        )
        self.audit.log(
            action,
            AuditResource.MFA,
            account_id=account_id,
            details={"used_backup_code": result.used_backup_code},
            context=context,
        )
        return Outcome(result)

    async def disable(
        self,
        account_id: str,
        password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[MfaStatus]:
        mfa = self.store.get_mfa(account_id)
        if mfa is None:
            raise self._rejected(
                AuditAction.MFA_DISABLE_FAILED, account_id, "account_not_found",
                NotFoundError("User not found"), context,
            )
        if not mfa.enabled:
            raise self._rejected(
                AuditAction.MFA_DISABLE_FAILED, account_id, "not_enabled",
                MfaStateError("MFA is not enabled"), context,
            )
        try:
            await self._require_password(account_id, password)
        except AuthenticationError as exc:
            self.audit.log(
                AuditAction.MFA_DISABLE_FAILED,
                AuditResource.MFA,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": exc.message},
                context=context,
            )
            raise
        self.store.clear_mfa(account_id)
        await self.invalidate_status(account_id)
        self.audit.log(
            AuditAction.MFA_DISABLED,
            AuditResource.MFA,
            account_id=account_id,
            context=context,
        )
        self.logger.info("mfa_disabled", account_id=account_id)
        return Outcome(
            MfaStatus(enabled=False, backup_codes_remaining=0),
            [event(MFA_DISABLED, account_id)],
        )

    async def regenerate_backup_codes(
        self,
        account_id: str,
        password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> Outcome[List[str]]:
        mfa = self.store.get_mfa(account_id)
        if mfa is None:
            raise self._rejected(
                AuditAction.MFA_BACKUP_CODES_REGENERATED, account_id, "account_not_found",
                NotFoundError("User not found"), context,
            )
        if not mfa.enabled:
            raise self._rejected(
                AuditAction.MFA_BACKUP_CODES_REGENERATED, account_id, "not_enabled",
                MfaStateError("MFA is not enabled"), context,
            )
        try:
            await self._require_password(account_id, password)
        except AuthenticationError as exc:
            self.audit.log(
                AuditAction.MFA_BACKUP_CODES_REGENERATED,
                AuditResource.MFA,
                status=AuditStatus.FAILURE,
                account_id=account_id,
                details={"reason": exc.message},
                context=context,
            )
            raise
        codes = self.generate_backup_codes()
        self.store.replace_backup_codes(account_id, await self._hash_codes(codes))
        await self.invalidate_status(account_id)
        self.audit.log(
            AuditAction.MFA_BACKUP_CODES_REGENERATED,
            AuditResource.MFA,
            account_id=account_id,
            details={"backup_codes": len(codes)},
            context=context,
        )
        self.logger.info("mfa_backup_codes_regenerated", account_id=account_id)
        return Outcome(codes)

    async def status(self, account_id: str) -> MfaStatus:
        if self.cache:
            cached = await self.cache.get_mfa_status(account_id)
            if cached:
                return MfaStatus(
                    enabled=bool(cached.get("enabled")),
                    backup_codes_remaining=int(cached.get("backup_codes_remaining", 0)),
                )
        else:
            with self._state_lock:
                entry = self._status_cache.get(account_id)
                if entry and entry[1] > time.monotonic():
                    return entry[0]

        mfa = self.store.get_mfa(account_id)
        if mfa is None:
            raise NotFoundError("User not found")
        status = MfaStatus(enabled=mfa.enabled, backup_codes_remaining=len(mfa.backup_codes))
        if self.cache:
            await self.cache.set_mfa_status(
                account_id, status.as_dict(), self.status_cache_seconds
            )
        else:
            with self._state_lock:
                self._status_cache[account_id] = (
                    status,
                    time.monotonic() + self.status_cache_seconds,
                )
        return status
