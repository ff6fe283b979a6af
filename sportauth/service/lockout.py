from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sportauth.logging import get_logger
from sportauth.storage.common import AccountStore
from sportauth.storage.models import utcnow


@dataclass(frozen=True)
class LockoutState:
    attempts: int
    locked: bool
    lock_until: Optional[datetime] = None
    just_locked: bool = False


class LockoutGuard:
    """Counts failed logins per account and enforces a temporary lock.

    Reaching ``threshold`` failures inside ``failure_window`` sets
    ``lock_until = now + lock_duration`` and resets the counter. Failures
    older than the window no longer count.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        threshold: int = 5,
        lock_minutes: int = 15,
        failure_window_minutes: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be >= 1")
        self.store = store
        self.threshold = threshold
        self.lock_duration = timedelta(minutes=lock_minutes)
        self.failure_window = timedelta(minutes=failure_window_minutes)
        self._clock = clock
        self.logger = get_logger(__name__)

    def record_failure(self, account_id: str) -> LockoutState:
        now = self._clock()
        result = self.store.register_login_failure(
            account_id,
            now=now,
            window_start=now - self.failure_window,
            threshold=self.threshold,
            lock_until=now + self.lock_duration,
        )
        if result is None:
            return LockoutState(attempts=0, locked=False)
        attempts, lock_until = result
        just_locked = attempts >= self.threshold
        locked = bool(lock_until and lock_until > now)
        if just_locked:
            self.logger.warning(
                "account_locked",
                account_id=account_id,
                attempts=attempts,
                lock_until=lock_until.isoformat() if lock_until else None,
            )
        return LockoutState(
            attempts=attempts,
            locked=locked,
            lock_until=lock_until if locked else None,
            just_locked=just_locked,
        )

    def record_success(self, account_id: str) -> None:
        self.store.reset_login_failures(account_id)

    def is_locked(self, account_id: str) -> bool:
        account = self.store.get_account(account_id)
        if not account:
            return False
        return self.lock_expiry(account.security.lock_until) is not None

    def lock_expiry(self, lock_until: Optional[datetime]) -> Optional[datetime]:
        """``lock_until`` if it is still in the future, else None."""
        if lock_until and lock_until > self._clock():
            return lock_until
        return None
