"""
auth/service.py -- AuthService: the authentication request/response contract.

Every public operation returns core.results.Success or Failure and never
raises for expected outcomes. Failure.error is a SecurityError whose .status
is one of ok / bad_input / bad_credential / account_locked / rate_limited /
conflict / internal_error.

Login control flow:
  RateLimiter gate -> AccountLockoutGuard check -> PasswordHasher verify
  -> success: lockout reset + SessionManager.issue
Each login attempt writes exactly one audit event, whichever branch it ends
on (including unexpected errors, recorded as login_error).

Error propagation:
  ValidationError / AuthenticationError / LockedError / RateLimitedError /
  ConflictError are raised internally and returned as Failure.
  Anything else (storage, crypto) is logged with full detail on "pnit.auth"
  and returned as a generic InternalError; no internal detail leaves here.

Enumeration resistance:
  - unknown email and wrong password return the same AuthenticationError,
    and an unknown email still costs one bcrypt verification (dummy_verify)
  - request_password_reset reports the same message whether or not the
    address is registered

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.api_keys import SecretStore
from auth.audit import AuditEventType, SecurityAuditLog
from auth.encryption import EncryptionManager
from auth.lockout import AccountLockoutGuard
from auth.models import AuditEvent, ClientInfo, Session, User
from auth.passwords import PasswordHasher
from auth.rate_limit import RateLimiter
from auth.sessions import SessionContext, SessionManager, SessionTokens, generate_token, hash_token
from auth.store import SecurityStore
from auth.validation import normalize_email, sanitize, validate_name, validate_password
from core.clock import Clock, utcnow
from core.config import Settings
from core.errors import (
    AuthenticationError,
    ConflictError,
    InternalError,
    LockedError,
    RateLimitedError,
    SecurityError,
    ValidationError,
)
from core.results import Failure, Result, Success

logger = logging.getLogger("pnit.auth")

DELETE_CONFIRMATION = "DELETE MY ACCOUNT"
RESET_REQUESTED_MESSAGE = "If the email exists, a password reset link has been sent."

# Called with (user, raw reset token, expiry) when a reset is issued.
PasswordResetNotifier = Callable[[User, str, datetime], None]


def log_reset_notifier(user: User, token: str, expires_at: datetime) -> None:
    """Default notifier: records that a reset was issued. Never logs the token."""
    logger.info("Password reset issued for user %s, valid until %s", user.id, expires_at.isoformat())


@dataclass(frozen=True)
class UserProfile:
    """Public view of a credential record (no hash, no reset or lockout state)."""

    id: int
    email: str
    name: str
    created_at: datetime | None = None
    last_login: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(id=user.id, email=user.email, name=user.name, created_at=user.created_at, last_login=user.last_login)


@dataclass(frozen=True)
class AuthenticatedSession:
    user: UserProfile
    tokens: SessionTokens


class AuthService:
    """Composes the security components into register/login/refresh/... operations.

    Usage:
        service = build_auth_service(get_settings(), SecurityStore(url))
        match service.login(email, password, ClientInfo(ip, ua)):
            case Success(value=auth):
                ...
            case Failure(error=err):
                ...
    """

    def __init__(
        self,
        store: SecurityStore,
        hasher: PasswordHasher,
        sessions: SessionManager,
        limiter: RateLimiter,
        lockout: AccountLockoutGuard,
        audit: SecurityAuditLog,
        secrets: SecretStore,
        reset_ttl_seconds: int = 3600,
        notifier: PasswordResetNotifier = log_reset_notifier,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.sessions = sessions
        self.limiter = limiter
        self.lockout = lockout
        self.audit = audit
        self.secrets = secrets
        self.reset_ttl = timedelta(seconds=reset_ttl_seconds)
        self._notifier = notifier
        self._clock = clock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _execute(
        self,
        error_event: AuditEventType,
        client: ClientInfo,
        operation: Callable[..., Any],
        *args: Any,
    ) -> Result:
        try:
            return Success(operation(*args))
        except InternalError as exc:
            logger.exception("%s: internal failure", error_event.value)
            self._record(None, error_event, client, False)
            return Failure(exc)
        except SecurityError as exc:
            return Failure(exc)
        except Exception:
            logger.exception("%s: unexpected failure", error_event.value)
            self._record(None, error_event, client, False)
            return Failure(InternalError())

    def _record(
        self,
        user_id: int | None,
        event_type: AuditEventType,
        client: ClientInfo,
        success: bool,
        details: dict | None = None,
    ) -> None:
        self.audit.record(user_id, event_type, client.ip_address, client.user_agent, success, details)

    def _gate(self, endpoint: str, client: ClientInfo, message: str) -> None:
        decision = self.limiter.check(client.ip_address, endpoint)
        if not decision.allowed:
            self._record(None, AuditEventType.RATE_LIMIT_EXCEEDED, client, False, {"endpoint": endpoint})
            raise RateLimitedError(decision.retry_after, message)

    def _require_session(self, session_token: str) -> SessionContext:
        context = self.sessions.validate(session_token)
        if context is None:
            raise AuthenticationError("Invalid or expired session.", code="invalid_session")
        return context

    def _issue(self, user_id: int, client: ClientInfo) -> SessionTokens:
        return self.sessions.issue(user_id, client.device_info, client.ip_address, client.user_agent)

    # ------------------------------------------------------------------
    # register / login
    # ------------------------------------------------------------------

    def register(
        self, email: str, password: str, name: str, client: ClientInfo | None = None
    ) -> Result[AuthenticatedSession]:
        client = client or ClientInfo()
        return self._execute(AuditEventType.REGISTRATION_ERROR, client, self._register, email, password, name, client)

    def _register(self, email: str, password: str, name: str, client: ClientInfo) -> AuthenticatedSession:
        self._gate("register", client, "Too many registration attempts. Please try again later.")
        normalized = normalize_email(email)
        validate_password(password)
        clean_name = validate_name(name)

        if self.store.get_user_by_email(normalized) is not None:
            self._record(None, AuditEventType.REGISTRATION_DUPLICATE_EMAIL, client, False, {"email": normalized})
            raise ConflictError()

        password_hash = self.hasher.hash(password)
        try:
            user_id = self.store.create_user(
                User(email=normalized, name=clean_name, password_hash=password_hash), self._clock()
            )
        except IntegrityError:
            # Lost a race with a concurrent registration of the same address.
            self._record(None, AuditEventType.REGISTRATION_DUPLICATE_EMAIL, client, False, {"email": normalized})
            raise ConflictError()

        tokens = self._issue(user_id, client)
        self._record(user_id, AuditEventType.REGISTRATION, client, True, {"email": normalized})
        return AuthenticatedSession(user=UserProfile.from_user(self.store.get_user_by_id(user_id)), tokens=tokens)

    def login(self, email: str, password: str, client: ClientInfo | None = None) -> Result[AuthenticatedSession]:
        client = client or ClientInfo()
        return self._execute(AuditEventType.LOGIN_ERROR, client, self._login, email, password, client)

    def _login(self, email: str, password: str, client: ClientInfo) -> AuthenticatedSession:
        self._gate("login", client, "Too many login attempts. Please try again later.")
        if not email or not password:
            self._record(None, AuditEventType.FAILED_LOGIN, client, False, {"reason": "missing_credentials"})
            raise ValidationError("Email and password are required.")

        try:
            normalized = normalize_email(email)
        except ValidationError:
            normalized = None
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            self.hasher.dummy_verify(password)
            self._record(None, AuditEventType.LOGIN_INVALID_EMAIL, client, False, {"email": normalized or sanitize(email)})
            raise AuthenticationError()

        unlock_at = self.lockout.lock_status(user.id)
        if unlock_at is not None:
            self._record(user.id, AuditEventType.LOGIN_ACCOUNT_LOCKED, client, False, {"unlock_at": unlock_at.isoformat()})
            raise LockedError(unlock_at)

        if not self.hasher.verify(password, user.password_hash):
            state = self.lockout.record_failure(user.id)
            details: dict[str, Any] = {}
            if state is not None:
                details["failed_attempts"] = state.failed_attempts
                if state.locked:
                    details["locked_until"] = state.locked_until.isoformat()
            self._record(user.id, AuditEventType.FAILED_LOGIN, client, False, details)
            raise AuthenticationError()

        self.lockout.record_success(user.id)
        tokens = self._issue(user.id, client)
        self._record(user.id, AuditEventType.LOGIN, client, True)
        refreshed = self.store.get_user_by_id(user.id) or user
        return AuthenticatedSession(user=UserProfile.from_user(refreshed), tokens=tokens)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, client: ClientInfo | None = None) -> Result[SessionTokens]:
        client = client or ClientInfo()
        return self._execute(AuditEventType.SESSION_REFRESH_INVALID, client, self._refresh, refresh_token, client)

    def _refresh(self, refresh_token: str, client: ClientInfo) -> SessionTokens:
        if not refresh_token:
            raise ValidationError("Refresh token required.")
        rotated = self.sessions.refresh(refresh_token)
        if rotated is None:
            self._record(None, AuditEventType.SESSION_REFRESH_INVALID, client, False)
            raise AuthenticationError("Invalid or expired refresh token.", code="invalid_refresh_token")
        user_id, tokens = rotated
        self._record(user_id, AuditEventType.SESSION_REFRESH, client, True)
        return tokens

    def logout(self, session_token: str, client: ClientInfo | None = None) -> Result[bool]:
        """Revoke the presented session. Succeeds even if it was already gone."""
        client = client or ClientInfo()
        return self._execute(AuditEventType.LOGOUT_ERROR, client, self._logout, session_token, client)

    def _logout(self, session_token: str, client: ClientInfo) -> bool:
        if not session_token:
            raise ValidationError("Session token required.")
        context = self.sessions.validate(session_token)
        revoked = self.sessions.revoke(session_token)
        if context is not None:
            self._record(context.user_id, AuditEventType.LOGOUT, client, True)
        return revoked

    def logout_all(self, session_token: str, client: ClientInfo | None = None) -> Result[int]:
        client = client or ClientInfo()
        return self._execute(AuditEventType.LOGOUT_ALL_ERROR, client, self._logout_all, session_token, client)

    def _logout_all(self, session_token: str, client: ClientInfo) -> int:
        context = self._require_session(session_token)
        count = self.sessions.revoke_all(context.user_id)
        self._record(context.user_id, AuditEventType.LOGOUT_ALL, client, True, {"sessions_revoked": count})
        return count

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, client: ClientInfo | None = None) -> Result[str]:
        client = client or ClientInfo()
        return self._execute(AuditEventType.PASSWORD_RESET_REQUEST, client, self._request_password_reset, email, client)

    def _request_password_reset(self, email: str, client: ClientInfo) -> str:
        self._gate("password_reset", client, "Too many password reset attempts. Please try again later.")
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self._record(None, AuditEventType.PASSWORD_RESET_REQUEST, client, False, {"email": normalized})
            return RESET_REQUESTED_MESSAGE

        token = generate_token()
        expires_at = self._clock() + self.reset_ttl
        self.store.set_password_reset(user.id, hash_token(token), expires_at)
        self._record(user.id, AuditEventType.PASSWORD_RESET_REQUEST, client, True)
        self._notifier(user, token, expires_at)
        return RESET_REQUESTED_MESSAGE

    def complete_password_reset(
        self, token: str, new_password: str, client: ClientInfo | None = None
    ) -> Result[None]:
        client = client or ClientInfo()
        return self._execute(
            AuditEventType.PASSWORD_RESET_INVALID_TOKEN, client, self._complete_password_reset, token, new_password, client
        )

    def _complete_password_reset(self, token: str, new_password: str, client: ClientInfo) -> None:
        if not token or not new_password:
            raise ValidationError("Token and new password are required.")
        validate_password(new_password)
        user = self.store.get_user_by_reset_token(hash_token(token), self._clock())
        if user is None:
            self._record(None, AuditEventType.PASSWORD_RESET_INVALID_TOKEN, client, False)
            raise ValidationError("Invalid or expired reset token.", code="invalid_reset_token")
        self.store.update_password(user.id, self.hasher.hash(new_password))
        self.sessions.revoke_all(user.id)
        self._record(user.id, AuditEventType.PASSWORD_RESET_SUCCESS, client, True)

    def change_password(
        self,
        session_token: str,
        current_password: str,
        new_password: str,
        client: ClientInfo | None = None,
    ) -> Result[int]:
        """Replace the password of the session's owner and revoke all their sessions."""
        client = client or ClientInfo()
        return self._execute(
            AuditEventType.PASSWORD_CHANGE_INVALID,
            client,
            self._change_password,
            session_token,
            current_password,
            new_password,
            client,
        )

    def _change_password(self, session_token: str, current_password: str, new_password: str, client: ClientInfo) -> int:
        context = self._require_session(session_token)
        if not current_password or not new_password:
            raise ValidationError("Current password and new password are required.")
        validate_password(new_password)
        user = self.store.get_user_by_id(context.user_id)
        if user is None:
            raise AuthenticationError("Invalid or expired session.", code="invalid_session")
        if not self.hasher.verify(current_password, user.password_hash):
            self._record(user.id, AuditEventType.PASSWORD_CHANGE_INVALID, client, False)
            raise AuthenticationError("Current password is incorrect.", code="invalid_current_password")
        self.store.update_password(user.id, self.hasher.hash(new_password))
        revoked = self.sessions.revoke_all(user.id)
        self._record(user.id, AuditEventType.PASSWORD_CHANGE_SUCCESS, client, True, {"sessions_revoked": revoked})
        return revoked

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def delete_account(self, session_token: str, confirmation: str, client: ClientInfo | None = None) -> Result[None]:
        client = client or ClientInfo()
        return self._execute(AuditEventType.ACCOUNT_DELETED, client, self._delete_account, session_token, confirmation, client)

    def _delete_account(self, session_token: str, confirmation: str, client: ClientInfo) -> None:
        context = self._require_session(session_token)
        if confirmation != DELETE_CONFIRMATION:
            raise ValidationError(f'Confirmation text must be exactly "{DELETE_CONFIRMATION}".')
        self.store.delete_user(context.user_id)
        self._record(context.user_id, AuditEventType.ACCOUNT_DELETED, client, True)

    # ------------------------------------------------------------------
    # Read-only views for the API layer
    # ------------------------------------------------------------------

    def profile(self, user_id: int) -> UserProfile | None:
        user = self.store.get_user_by_id(user_id)
        return UserProfile.from_user(user) if user is not None else None

    def active_sessions(self, user_id: int) -> list[Session]:
        return self.sessions.list_active(user_id)

    def recent_events(self, user_id: int, limit: int = 50) -> list[AuditEvent]:
        return self.store.list_audit_events(user_id=user_id, limit=limit)


def build_auth_service(
    settings: Settings,
    store: SecurityStore,
    clock: Clock = utcnow,
    notifier: PasswordResetNotifier = log_reset_notifier,
) -> AuthService:
    """Wire every component from Settings around one shared store and clock."""
    audit = SecurityAuditLog(store, clock=clock)
    encryption = EncryptionManager(settings.master_key, iterations=settings.kdf_iterations)
    return AuthService(
        store=store,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        sessions=SessionManager(
            store,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=clock,
        ),
        limiter=RateLimiter(store, settings.rate_limit_rules(), clock=clock),
        lockout=AccountLockoutGuard(
            store,
            threshold=settings.lockout_threshold,
            duration_seconds=settings.lockout_duration_seconds,
            clock=clock,
        ),
        audit=audit,
        secrets=SecretStore(
            store,
            encryption,
            audit,
            max_active_per_user=settings.max_api_keys_per_user,
            clock=clock,
        ),
        reset_ttl_seconds=settings.password_reset_ttl_seconds,
        notifier=notifier,
        clock=clock,
    )
