"""
core/errors.py -- Error taxonomy for the identity and session security engine.

Every expected failure is a SecurityError subclass carrying three things the
boundary needs: a Status (the transport-independent outcome signal), a
machine-readable code, and a client-safe message. The HTTP status is derived
from the Status so api/ never hard-codes numbers per error.

Message policy:
  ValidationError messages are safe to return verbatim.
  AuthenticationError never says which of email/password was wrong.
  InternalError (and subclasses) always present a generic message; the
  underlying detail goes to the log only.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum


class Status(str, Enum):
    """Outcome signal of an operation, independent of transport."""

    ok = "ok"
    bad_input = "bad_input"
    bad_credential = "bad_credential"
    account_locked = "account_locked"
    rate_limited = "rate_limited"
    conflict = "conflict"
    not_found = "not_found"
    internal_error = "internal_error"


HTTP_STATUS: dict[Status, int] = {
    Status.ok: 200,
    Status.bad_input: 400,
    Status.bad_credential: 401,
    Status.account_locked: 423,
    Status.rate_limited: 429,
    Status.conflict: 409,
    Status.not_found: 404,
    Status.internal_error: 500,
}


class SecurityError(Exception):
    """Base class for typed, expected failures of the security engine."""

    status: Status = Status.internal_error
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.status]

    def detail(self) -> dict:
        """Extra structured fields safe to expose to the caller."""
        return {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r})"


class ValidationError(SecurityError):
    status = Status.bad_input
    code = "validation_error"
    message = "Request validation failed."


class AuthenticationError(SecurityError):
    status = Status.bad_credential
    code = "bad_credentials"
    message = "Invalid email or password."


class LockedError(SecurityError):
    """The account is temporarily locked after repeated failed logins."""

    status = Status.account_locked
    code = "account_locked"
    message = "Account temporarily locked due to too many failed login attempts."

    def __init__(self, unlock_at: datetime | None, message: str | None = None) -> None:
        self.unlock_at = unlock_at
        super().__init__(message)

    def detail(self) -> dict:
        return {"unlock_at": self.unlock_at.isoformat() if self.unlock_at else None}


class RateLimitedError(SecurityError):
    status = Status.rate_limited
    code = "rate_limited"
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = max(int(retry_after), 0)
        super().__init__(message)

    def detail(self) -> dict:
        return {"retry_after": self.retry_after}


class ConflictError(SecurityError):
    status = Status.conflict
    code = "conflict"
    message = "Email already registered."


class NotFoundError(SecurityError):
    status = Status.not_found
    code = "not_found"
    message = "Resource not found."


class InternalError(SecurityError):
    status = Status.internal_error
    code = "internal_error"
    message = "An unexpected error occurred."


class KeyMismatchError(SecurityError):
    """Stored ciphertext was produced under a different master key.

    The record cannot be decrypted with the current key. This is reported to
    the caller rather than retried; recovery requires the previous key.
    """

    status = Status.internal_error
    code = "key_mismatch"
    message = "Encrypted data was written with a different master key."

    def __init__(self, expected: str = "", actual: str = "") -> None:
        self.expected = expected
        self.actual = actual
        super().__init__()


class DecryptionError(InternalError):
    """AEAD authentication tag did not verify: tampered data or wrong key."""

    code = "decryption_failed"
