"""
auth/lockout.py -- AccountLockoutGuard: failed-attempt counting and temporary locks.

Independent of rate limiting: the rate limiter throttles a client, the guard
protects an account no matter how many clients are guessing at it.

Expired locks are cleared lazily by is_locked(); there is no background sweep.
record_failure() is a single atomic UPDATE in the store, so concurrent wrong
passwords cannot race past the threshold or open overlapping lock windows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.models import LockoutState
from auth.store import SecurityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("pnit.auth")


class AccountLockoutGuard:
    def __init__(
        self,
        store: SecurityStore,
        threshold: int = 5,
        duration_seconds: int = 30 * 60,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self.threshold = threshold
        self.duration = timedelta(seconds=duration_seconds)
        self._clock = clock

    def lock_status(self, user_id: int) -> datetime | None:
        """Return the unlock time if the account is locked now, else None.

        A lock whose window has elapsed is cleared (counter reset to 0) as a
        side effect.
        """
        user = self._store.get_user_by_id(user_id)
        if user is None or user.locked_until is None:
            return None
        now = self._clock()
        if user.locked_until > now:
            return user.locked_until
        if self._store.clear_expired_lock(user_id, now):
            logger.info("Lockout expired for user %s; counter reset", user_id)
        return None

    def is_locked(self, user_id: int) -> bool:
        return self.lock_status(user_id) is not None

    def record_failure(self, user_id: int) -> LockoutState | None:
        """Count one failed login; lock the account when the threshold is reached."""
        now = self._clock()
        state = self._store.increment_failed_attempts(
            user_id, threshold=self.threshold, lock_until=now + self.duration, now=now
        )
        if state is not None and state.locked and state.failed_attempts == self.threshold:
            logger.warning("User %s locked until %s after %d failed attempts",
                           user_id, state.locked_until.isoformat(), state.failed_attempts)
        return state

    def record_success(self, user_id: int) -> None:
        """Reset the counter, clear any lock, and stamp last_login."""
        self._store.record_login_success(user_id, self._clock())
