"""
auth/audit.py -- SecurityAuditLog: append-only record of security events.

record() never raises. A failed write is logged at ERROR on the "pnit.audit"
logger and counted in dropped_events, so an outage of the audit table shows up
in logs and on /api/v1/health even though the audited action itself proceeds.

Events are only ever inserted; SecurityStore has no update or delete path for
the audit table.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any

from auth.models import AuditEvent
from auth.store import SecurityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("pnit.audit")


class AuditEventType(str, Enum):
    """Security events written to security_audit_log.event_type."""

    # Authentication
    LOGIN = "login"
    FAILED_LOGIN = "failed_login"
    LOGIN_INVALID_EMAIL = "login_invalid_email"
    LOGIN_ACCOUNT_LOCKED = "login_account_locked"
    LOGIN_ERROR = "login_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    # Registration
    REGISTRATION = "registration"
    REGISTRATION_DUPLICATE_EMAIL = "registration_duplicate_email"
    REGISTRATION_ERROR = "registration_error"

    # Sessions
    SESSION_REFRESH = "session_refresh"
    SESSION_REFRESH_INVALID = "session_refresh_invalid"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    LOGOUT_ERROR = "logout_error"
    LOGOUT_ALL_ERROR = "logout_all_error"

    # Passwords
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    PASSWORD_RESET_INVALID_TOKEN = "password_reset_invalid_token"
    PASSWORD_CHANGE_SUCCESS = "password_change_success"
    PASSWORD_CHANGE_INVALID = "password_change_invalid"

    # Account
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_UNLOCKED = "account_unlocked"

    # API keys
    API_KEY_CREATED = "api_key_created"
    API_KEY_REVOKED = "api_key_revoked"
    API_KEY_REVOKE_NOT_FOUND = "api_key_revoke_not_found"


class SecurityAuditLog:
    def __init__(self, store: SecurityStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._dropped = 0

    @property
    def dropped_events(self) -> int:
        """Number of events lost to write failures since process start."""
        return self._dropped

    def record(
        self,
        user_id: int | None,
        event_type: AuditEventType | str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        success: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one event. Failures are logged and counted, never raised."""
        event_name = event_type.value if isinstance(event_type, AuditEventType) else event_type
        audit_event = AuditEvent(
            event_type=event_name,
            success=success,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=dict(details or {}),
        )
        try:
            self._store.insert_audit_event(audit_event, self._clock())
        except Exception:
            with self._lock:
                self._dropped += 1
            logger.exception("Audit write failed; event %s for user %s dropped", event_name, user_id)
