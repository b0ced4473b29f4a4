"""
auth/models.py -- Domain dataclasses for identity and session security entities.

Pattern: Data class (pure data container, zero logic). Stores and components
do the work; these classes own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """A credential record: one local email/password identity.

    failed_attempts and locked_until are owned by AccountLockoutGuard.
    password_reset_token_hash holds the SHA-256 of an outstanding reset token;
    the raw token is never stored.
    """

    email: str
    name: str
    password_hash: str
    id: int | None = None
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    password_reset_token_hash: str | None = None
    password_reset_expires: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    """Server-side record of an issued access/refresh token pair.

    Token columns hold SHA-256 digests. refresh() rotates both digests and
    both expiries in place on the same record.
    """

    user_id: int
    session_token_hash: str
    refresh_token_hash: str
    expires_at: datetime
    refresh_expires_at: datetime
    id: int | None = None
    device_info: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None
    last_used: datetime | None = None
    is_active: bool = True


@dataclass
class RateLimitRecord:
    """Request counter for one (identifier, endpoint) pair."""

    identifier: str
    endpoint: str
    request_count: int
    window_start: datetime
    blocked_until: datetime | None = None


@dataclass
class LockoutState:
    """Failed-attempt counter and lock window after a recorded failure."""

    failed_attempts: int
    locked_until: datetime | None = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


@dataclass
class AuditEvent:
    """One immutable security audit record. user_id is None before identity resolution."""

    event_type: str
    success: bool
    user_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict = field(default_factory=dict)
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class EncryptedSecret:
    """A long-lived secret (API key) stored as AES-GCM ciphertext.

    preview is the only plaintext fragment kept (first 8 chars + "..."), for
    display. Revoked secrets stay in the table with is_active=False.
    """

    user_id: int
    name: str
    ciphertext: bytes
    salt: bytes
    iv: bytes
    auth_tag: bytes
    key_fingerprint: str
    preview: str
    secret_type: str = "api_key"
    scopes: list[str] = field(default_factory=lambda: ["read"])
    id: int | None = None
    created_at: datetime | None = None
    last_used: datetime | None = None
    revoked_at: datetime | None = None
    is_active: bool = True


@dataclass(frozen=True)
class ClientInfo:
    """Origin of a request, as recorded in sessions and audit events."""

    ip_address: str = "127.0.0.1"
    user_agent: str = "Unknown"

    @property
    def device_info(self) -> dict:
        return {"type": "web", "user_agent": self.user_agent}
