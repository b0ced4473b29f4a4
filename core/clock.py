"""
core/clock.py -- UTC time source shared by every security component.

Components take a `clock` callable instead of calling datetime.now() inline so
expiry, lockout, and rate-limit windows can be driven deterministically in
tests. Production code always uses utcnow().

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime; convert an aware one. None passes through."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
