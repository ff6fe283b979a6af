from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sportauth.logging import get_logger
from sportauth.service.audit import AuditPipeline, RequestContext
from sportauth.service.errors import NotFoundError, ValidationError
from sportauth.storage.common import AccountStore, hash_token, token_hint
from sportauth.storage.models import AuditAction, AuditResource, SessionEntry, utcnow


@dataclass(frozen=True)
class SessionView:
    """What a client may see of a session; never the refresh token itself."""

    index: int
    token_hint: str
    issued_at: datetime
    last_used_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "token": self.token_hint,
            "issued_at": self.issued_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }


class SessionStore:
    """Per-account list of live refresh tokens.

    Tokens are stored as SHA-256 digests. ``rotate`` and ``remove`` are
    conditional writes in the store: of two concurrent calls presenting the
    same token only one can observe it.
    """

    def __init__(
        self,
        store: AccountStore,
        audit: AuditPipeline,
        *,
        max_sessions: int = 5,
    ) -> None:
        self.store = store
        self.audit = audit
        self.max_sessions = max_sessions
        self.logger = get_logger(__name__)

    def add(
        self,
        account_id: str,
        refresh_token: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> SessionEntry:
        now = utcnow()
        ctx = context or RequestContext()
        entry = SessionEntry(
            token_hash=hash_token(refresh_token),
            token_hint=token_hint(refresh_token),
            issued_at=now,
            last_used_at=now,
            user_agent=ctx.user_agent,
            ip_address=ctx.ip_address,
        )
        evicted = self.store.add_session(account_id, entry, max_sessions=self.max_sessions)
        if evicted:
            self.logger.info("sessions_evicted", account_id=account_id, count=len(evicted))
        return entry

    def remove(self, account_id: str, refresh_token: str) -> bool:
        return self.store.remove_session(account_id, hash_token(refresh_token))

    def remove_by_index(self, account_id: str, index: int) -> Optional[SessionEntry]:
        return self.store.remove_session_at(account_id, index)

    def clear(self, account_id: str) -> int:
        return self.store.clear_sessions(account_id)

    def rotate(self, account_id: str, old_token: str, new_token: str) -> bool:
        """Swap ``old_token`` for ``new_token`` in place; False if ``old_token`` is not live."""
        return self.store.rotate_session(
            account_id,
            hash_token(old_token),
            hash_token(new_token),
            token_hint(new_token),
            used_at=utcnow(),
        )

    def list(self, account_id: str) -> List[SessionView]:
        return [
            SessionView(
                index=idx,
                token_hint=entry.token_hint,
                issued_at=entry.issued_at,
                last_used_at=entry.last_used_at,
                user_agent=entry.user_agent,
                ip_address=entry.ip_address,
            )
            for idx, entry in enumerate(self.store.list_sessions(account_id))
        ]

    # -- session service ---------------------------------------------------

    def _require_account(self, account_id: str) -> None:
        if not self.store.get_account(account_id):
            raise NotFoundError("User not found")

    def list_sessions(self, account_id: str) -> List[SessionView]:
        self._require_account(account_id)
        return self.list(account_id)

    def revoke_session(
        self,
        account_id: str,
        index: int,
        *,
        context: Optional[RequestContext] = None,
    ) -> SessionView:
        self._require_account(account_id)
        if index < 0:
            raise ValidationError("Invalid session index", detail={"field": "index"})
        removed = self.remove_by_index(account_id, index)
        if not removed:
            raise NotFoundError("Session not found", detail={"index": index})
        self.audit.log(
            AuditAction.SESSION_REVOKED,
            AuditResource.AUTH,
            account_id=account_id,
            details={"session_index": index, "token_hint": removed.token_hint},
            context=context,
        )
        return SessionView(
            index=index,
            token_hint=removed.token_hint,
            issued_at=removed.issued_at,
            last_used_at=removed.last_used_at,
            user_agent=removed.user_agent,
            ip_address=removed.ip_address,
        )

    def revoke_all_sessions(
        self, account_id: str, *, context: Optional[RequestContext] = None
    ) -> int:
        self._require_account(account_id)
        count = self.clear(account_id)
        self.audit.log(
            AuditAction.ALL_SESSIONS_REVOKED,
            AuditResource.AUTH,
            account_id=account_id,
            details={"sessions_revoked": count},
            context=context,
        )
        return count
