"""
auth/rate_limit.py -- RateLimiter: fixed-window throttling per (identifier, endpoint).

Window lifecycle for one pair:
  no row / window expired / block elapsed  -> open a new window, count = 1, allow
  open window, count <= max                -> increment, allow
  open window, count  > max                -> increment, set blocked_until =
                                              now + window, deny (the request
                                              that crosses the threshold is
                                              denied too)
  blocked_until in the future              -> deny without counting

The in-window increment and the block decision are one UPDATE ... RETURNING
in SecurityStore, so concurrent requests cannot both slip under the threshold.

Fail-open: any SQLAlchemyError while counting allows the request. Rate
limiting protects against abuse; a database hiccup should not lock every
legitimate user out. The failure is logged at WARNING.

Thresholds come from Settings.rate_limits, parsed by the `limits` library.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from auth.store import SecurityStore
from core.clock import Clock, utcnow
from core.config import RateLimitRule

logger = logging.getLogger("pnit.auth")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0  # seconds until the block lifts; 0 when allowed


class RateLimiter:
    """Per-endpoint request throttling backed by the rate_limits table.

    Endpoints without a configured rule are never limited.
    """

    def __init__(self, store: SecurityStore, rules: dict[str, RateLimitRule], clock: Clock = utcnow) -> None:
        self._store = store
        self._rules = dict(rules)
        self._clock = clock

    def allow(self, identifier: str, endpoint: str) -> bool:
        return self.check(identifier, endpoint).allowed

    def check(self, identifier: str, endpoint: str) -> RateLimitDecision:
        """Count one request and return whether it may proceed."""
        rule = self._rules.get(endpoint)
        if rule is None:
            return RateLimitDecision(allowed=True)
        try:
            return self._count(identifier, endpoint, rule)
        except SQLAlchemyError:
            logger.warning("Rate limit storage failed for endpoint %s; allowing request", endpoint, exc_info=True)
            return RateLimitDecision(allowed=True)

    def _count(self, identifier: str, endpoint: str, rule: RateLimitRule) -> RateLimitDecision:
        now = self._clock()
        window = timedelta(seconds=rule.window_seconds)

        record = self._store.increment_rate_limit(
            identifier,
            endpoint,
            max_requests=rule.max_requests,
            window_opened_after=now - window,
            block_until=now + window,
        )
        if record is not None:
            if record.blocked_until is not None:
                logger.info("Rate limit exceeded on %s", endpoint)
                return RateLimitDecision(allowed=False, retry_after=_seconds_until(record.blocked_until, now))
            return RateLimitDecision(allowed=True)

        # No open window to count in: either the pair is blocked, or the
        # window (or the block) has elapsed and a fresh one starts now.
        current = self._store.get_rate_limit(identifier, endpoint)
        if current is not None and current.blocked_until is not None and current.blocked_until > now:
            return RateLimitDecision(allowed=False, retry_after=_seconds_until(current.blocked_until, now))

        self._store.open_rate_window(identifier, endpoint, now)
        return RateLimitDecision(allowed=True)


def _seconds_until(moment, now) -> int:
    return max(math.ceil((moment - now).total_seconds()), 1)
