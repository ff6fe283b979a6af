from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from sportauth.logging import get_logger
from sportauth.storage.models import utcnow

logger = get_logger(__name__)

T = TypeVar("T")

ACCOUNT_REGISTERED = "account.registered"
ACCOUNT_LOGGED_IN = "account.loggedIn"
ACCOUNT_LOGGED_OUT = "account.loggedOut"
ACCOUNT_PASSWORD_CHANGED = "account.passwordChanged"
ACCOUNT_DEACTIVATED = "account.deactivated"
ACCOUNT_EMAIL_VERIFIED = "account.emailVerified"
ACCOUNT_PASSWORD_RESET_REQUESTED = "account.passwordResetRequested"
MFA_ENABLED = "mfa.enabled"
MFA_DISABLED = "mfa.disabled"
OAUTH_LINKED = "oauth.linked"
OAUTH_UNLINKED = "oauth.unlinked"


@dataclass(frozen=True)
class DomainEvent:
    event_type: str
    aggregate_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "aggregate_id": self.aggregate_id,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Outcome(Generic[T]):
    """A service result plus the domain events the caller should dispatch."""

    value: T
    events: List[DomainEvent] = field(default_factory=list)


Handler = Callable[[DomainEvent], None]


class EventBus:
    """In-process publisher. Handlers registered for ``"*"`` see every event.

    A failing handler is logged and skipped; it never fails the request that
    produced the event.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, events: List[DomainEvent]) -> int:
        delivered = 0
        for event in events:
            with self._lock:
                handlers = list(self._handlers.get(event.event_type, [])) + list(
                    self._handlers.get("*", [])
                )
            for handler in handlers:
                try:
                    handler(event)
                    delivered += 1
                except Exception as exc:
                    logger.error(
                        "event_handler_failed",
                        event_type=event.event_type,
                        aggregate_id=event.aggregate_id,
                        error=str(exc),
                    )
        return delivered


def event(
    event_type: str, aggregate_id: str, payload: Optional[Dict[str, Any]] = None
) -> DomainEvent:
    return DomainEvent(event_type=event_type, aggregate_id=aggregate_id, payload=dict(payload or {}))
