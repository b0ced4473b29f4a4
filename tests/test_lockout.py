"""Unit tests for auth/lockout.py -- AccountLockoutGuard.

Covers:
- failures below the threshold do not lock
- the threshold-th failure locks for the configured duration
- further failures during a lock do not extend it
- is_locked lazily clears an elapsed lock and resets the counter
- record_success resets the counter and stamps last_login
"""

from datetime import timedelta

import pytest

from auth.lockout import AccountLockoutGuard
from auth.models import User
from auth.store import SecurityStore
from conftest import FakeClock

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_id(store, clock):
    return store.create_user(User(email="locked@example.com", name="Locked", password_hash="x"), clock())


@pytest.fixture
def guard(store, clock):
    return AccountLockoutGuard(store, threshold=5, duration_seconds=1800, clock=clock)


# ---------------------------------------------------------------------------
# record_failure
# ---------------------------------------------------------------------------


class TestRecordFailure:
    def test_failures_below_threshold_do_not_lock(self, guard: AccountLockoutGuard, user_id: int) -> None:
        for expected in range(1, 5):
            state = guard.record_failure(user_id)
            assert state.failed_attempts == expected
            assert state.locked is False
        assert guard.is_locked(user_id) is False

    def test_fifth_failure_locks_for_thirty_minutes(
        self, guard: AccountLockoutGuard, user_id: int, clock: FakeClock
    ) -> None:
        for _ in range(4):
            guard.record_failure(user_id)
        state = guard.record_failure(user_id)
        assert state.locked is True
        assert state.locked_until == clock.now + timedelta(minutes=30)
        assert guard.is_locked(user_id) is True
        assert guard.lock_status(user_id) == state.locked_until

    def test_failures_during_lock_do_not_extend_it(
        self, guard: AccountLockoutGuard, user_id: int, clock: FakeClock
    ) -> None:
        for _ in range(5):
            guard.record_failure(user_id)
        first_lock = guard.lock_status(user_id)
        clock.advance(minutes=10)
        state = guard.record_failure(user_id)
        assert state.failed_attempts == 6
        assert state.locked_until == first_lock

    def test_missing_user_returns_none(self, guard: AccountLockoutGuard) -> None:
        assert guard.record_failure(9999) is None


# ---------------------------------------------------------------------------
# is_locked / lock_status
# ---------------------------------------------------------------------------


class TestIsLocked:
    def test_elapsed_lock_is_cleared_lazily(
        self, guard: AccountLockoutGuard, user_id: int, store: SecurityStore, clock: FakeClock
    ) -> None:
        for _ in range(5):
            guard.record_failure(user_id)
        clock.advance(minutes=30)
        assert guard.is_locked(user_id) is False
        user = store.get_user_by_id(user_id)
        assert user.failed_attempts == 0
        assert user.locked_until is None

    def test_unknown_user_is_not_locked(self, guard: AccountLockoutGuard) -> None:
        assert guard.is_locked(9999) is False


# ---------------------------------------------------------------------------
# record_success
# ---------------------------------------------------------------------------


class TestRecordSuccess:
    def test_resets_counter_and_stamps_last_login(
        self, guard: AccountLockoutGuard, user_id: int, store: SecurityStore, clock: FakeClock
    ) -> None:
        guard.record_failure(user_id)
        guard.record_failure(user_id)
        guard.record_success(user_id)
        user = store.get_user_by_id(user_id)
        assert user.failed_attempts == 0
        assert user.locked_until is None
        assert user.last_login == clock.now
