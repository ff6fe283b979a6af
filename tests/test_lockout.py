from datetime import datetime, timedelta, timezone

import pytest

from sportauth.service.lockout import LockoutGuard


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def guard(store, clock):
    return LockoutGuard(store, threshold=3, lock_minutes=15, failure_window_minutes=60, clock=clock)


@pytest.fixture
def account_id(store):
    account, _ = store.create_account("locked@example.com", "hash", username="locker")
    return account.id


def test_locks_on_threshold_and_resets_counter(guard, store, account_id, clock):
    assert guard.record_failure(account_id).attempts == 1
    assert guard.record_failure(account_id).locked is False
    state = guard.record_failure(account_id)
    assert state.just_locked and state.locked
    assert state.lock_until == clock.now + timedelta(minutes=15)
    assert store.get_account(account_id).security.login_attempts == 0
    assert guard.is_locked(account_id)


def test_lock_expires(guard, account_id, clock):
    for _ in range(3):
        guard.record_failure(account_id)
    clock.now += timedelta(minutes=16)
    assert not guard.is_locked(account_id)


def test_failures_outside_window_do_not_count(guard, account_id, clock):
    guard.record_failure(account_id)
    guard.record_failure(account_id)
    clock.now += timedelta(minutes=61)
    state = guard.record_failure(account_id)
    assert state.attempts == 1
    assert not state.locked


def test_success_resets_attempts(guard, store, account_id):
    guard.record_failure(account_id)
    guard.record_failure(account_id)
    guard.record_success(account_id)
    assert store.get_account(account_id).security.login_attempts == 0
    assert guard.record_failure(account_id).attempts == 1


def test_unknown_account_is_a_noop(guard):
    state = guard.record_failure("missing")
    assert state.attempts == 0 and not state.locked
    assert guard.is_locked("missing") is False


def test_threshold_must_be_positive(store):
    with pytest.raises(ValueError):
        LockoutGuard(store, threshold=0)
