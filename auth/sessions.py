"""
auth/sessions.py -- SessionManager: opaque session/refresh token lifecycle.

States (per record):
  Active  -- issued, is_active=1, not past expires_at
  Expired -- expires_at (access) or refresh_expires_at passed; detected lazily
             at validate/refresh time, nothing is written
  Revoked -- is_active=0; terminal

Tokens are 32 random bytes as hex (256 bits). Only their SHA-256 digests are
stored, so a database read does not yield usable credentials. SHA-256 rather
than bcrypt: the tokens are already high-entropy, and lookup must be an
indexed equality match.

refresh() rotates both tokens and both expiries in place on the same record.
The old access and refresh tokens stop working immediately, and the new
expiries are measured from the refresh time, not from original issuance.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from auth.models import Session
from auth.store import SecurityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("pnit.auth")

TOKEN_BYTES = 32


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest under which a token is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SessionTokens:
    """Raw tokens handed to the client. Never persisted in this form."""

    session_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime

    def __repr__(self) -> str:
        return f"SessionTokens(expires_at={self.expires_at.isoformat()})"


@dataclass(frozen=True)
class SessionContext:
    """Owner context returned by a successful validate()."""

    user_id: int
    session_id: int
    expires_at: datetime
    refresh_expires_at: datetime
    device_info: dict = field(default_factory=dict)


class SessionManager:
    """Issue, validate, rotate and revoke sessions.

    Usage:
        manager = SessionManager(store, access_ttl_seconds=86400, refresh_ttl_seconds=604800)
        tokens = manager.issue(user_id, {"type": "web", "user_agent": ua})
        ctx = manager.validate(tokens.session_token)
        new_tokens = manager.refresh(tokens.refresh_token)
    """

    def __init__(
        self,
        store: SecurityStore,
        access_ttl_seconds: int = 24 * 3600,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Clock = utcnow,
    ) -> None:
        if refresh_ttl_seconds <= access_ttl_seconds:
            raise ValueError("Refresh token lifetime must exceed access token lifetime.")
        self._store = store
        self.access_ttl = timedelta(seconds=access_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self._clock = clock

    def issue(
        self,
        user_id: int,
        device_info: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SessionTokens:
        """Create a new Active session with independent access and refresh lifetimes."""
        now = self._clock()
        tokens = SessionTokens(
            session_token=generate_token(),
            refresh_token=generate_token(),
            expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
        )
        self._store.create_session(
            Session(
                user_id=user_id,
                session_token_hash=hash_token(tokens.session_token),
                refresh_token_hash=hash_token(tokens.refresh_token),
                expires_at=tokens.expires_at,
                refresh_expires_at=tokens.refresh_expires_at,
                device_info=dict(device_info or {}),
                ip_address=ip_address,
                user_agent=user_agent,
            ),
            now,
        )
        return tokens

    def validate(self, session_token: str) -> SessionContext | None:
        """Return owner context for an active, unexpired access token, else None."""
        if not session_token:
            return None
        now = self._clock()
        session = self._store.get_active_session(hash_token(session_token), now)
        if session is None:
            return None
        self._store.touch_session(session.id, now)
        return SessionContext(
            user_id=session.user_id,
            session_id=session.id,
            expires_at=session.expires_at,
            refresh_expires_at=session.refresh_expires_at,
            device_info=session.device_info,
        )

    def refresh(self, refresh_token: str) -> tuple[int, SessionTokens] | None:
        """Rotate both tokens of the session owning refresh_token.

        Returns (user_id, new tokens), or None if the refresh token is unknown,
        revoked, expired, or was already spent by a concurrent refresh.
        """
        if not refresh_token:
            return None
        now = self._clock()
        tokens = SessionTokens(
            session_token=generate_token(),
            refresh_token=generate_token(),
            expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
        )
        session = self._store.rotate_session(
            hash_token(refresh_token),
            now,
            new_session_token_hash=hash_token(tokens.session_token),
            new_refresh_token_hash=hash_token(tokens.refresh_token),
            expires_at=tokens.expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        )
        if session is None:
            return None
        return session.user_id, tokens

    def revoke(self, session_token: str) -> bool:
        """Mark the session inactive. Returns False if it was not active."""
        if not session_token:
            return False
        return self._store.revoke_session(hash_token(session_token))

    def revoke_all(self, user_id: int) -> int:
        """Deactivate every session of user_id in one bulk update."""
        count = self._store.revoke_all_sessions(user_id)
        logger.info("Revoked %d sessions for user %s", count, user_id)
        return count

    def list_active(self, user_id: int) -> list[Session]:
        return self._store.list_active_sessions(user_id, self._clock())
