"""
auth/store.py -- SQLAlchemy Core persistence layer for the security engine.

Pattern: Repository + Data Mapper. SecurityStore is the repository; the
_row_to_* functions at the bottom are the mappers. Components never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Session and password-reset tokens arrive here already hashed (SHA-256);
  raw token values are never persisted.

Atomicity:
  The counters that guard thresholds are updated with one UPDATE ... RETURNING
  statement each, so the increment and the threshold decision cannot be split
  by a concurrent request:
    - increment_failed_attempts(): failure count + lock window
    - increment_rate_limit():      request count + block decision
    - rotate_session():            refresh token can be spent at most once
  revoke_all_sessions() is one bulk UPDATE. delete_user() runs in a single
  transaction so a failure never leaves sessions or secrets orphaned.

Timestamps:
  UTCDateTime stores naive UTC (portable across SQLite and Postgres) and hands
  back timezone-aware UTC datetimes, so callers never compare naive and aware
  values.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    event,
    func,
    literal,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeDecorator

from auth.models import AuditEvent, EncryptedSecret, LockoutState, RateLimitRecord, Session, User
from core.clock import as_utc
from core.config import DEFAULT_DB_URL


class UTCDateTime(TypeDecorator):
    """DateTime column that accepts and returns timezone-aware UTC values."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return as_utc(value)


def _ts(value: datetime):
    """Bind a datetime literal with UTC normalization (for CASE branches)."""
    return literal(value, UTCDateTime())


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", UTCDateTime),
    Column("last_login", UTCDateTime),
    Column("password_reset_token_hash", String(64), index=True),
    Column("password_reset_expires", UTCDateTime),
    Column("created_at", UTCDateTime, nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("session_token_hash", String(64), nullable=False, unique=True),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),
    Column("device_info", JSON),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False),
    Column("refresh_expires_at", UTCDateTime, nullable=False),
    Column("last_used", UTCDateTime),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Index("idx_sessions_user_active", "user_id", "is_active"),
)

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False),
    Column("endpoint", String(100), nullable=False),
    Column("request_count", Integer, nullable=False, server_default="1"),
    Column("window_start", UTCDateTime, nullable=False),
    Column("blocked_until", UTCDateTime),
    UniqueConstraint("identifier", "endpoint", name="uq_rate_limits_identifier_endpoint"),
)

_audit_log = Table(
    "security_audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),  # NULL for events before identity resolution
    Column("event_type", String(50), nullable=False, index=True),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("success", Integer, nullable=False),
    Column("details", JSON),
    Column("created_at", UTCDateTime, nullable=False, index=True),
)

_secrets = Table(
    "encrypted_secrets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("secret_type", String(50), nullable=False),
    Column("ciphertext", LargeBinary, nullable=False),
    Column("salt", LargeBinary, nullable=False),
    Column("iv", LargeBinary, nullable=False),
    Column("auth_tag", LargeBinary, nullable=False),
    Column("key_fingerprint", String(64), nullable=False),
    Column("preview", String(16), nullable=False, index=True),
    Column("scopes", JSON),
    Column("created_at", UTCDateTime, nullable=False),
    Column("last_used", UTCDateTime),
    Column("revoked_at", UTCDateTime),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SecurityStore:
    """Repository for users, sessions, rate limits, audit events, and secrets.

    Usage:
        store = SecurityStore()
        uid = store.create_user(User(email="a@example.com", name="A", password_hash=h))
        user = store.get_user_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, now: datetime) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a conflict: a concurrent registration may have
        won the race after the caller's own existence check.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    name=user.name,
                    password_hash=user.password_hash,
                    failed_attempts=0,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by normalized (lowercase) email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: int, password_hash: str) -> bool:
        """Replace the password hash and clear reset token and lockout state."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    password_hash=password_hash,
                    password_reset_token_hash=None,
                    password_reset_expires=None,
                    failed_attempts=0,
                    locked_until=None,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def set_password_reset(self, user_id: int, token_hash: str, expires_at: datetime) -> None:
        """Store the hash of a newly issued reset token, replacing any earlier one."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_reset_token_hash=token_hash, password_reset_expires=expires_at)
            )
            conn.commit()

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> User | None:
        """Return the user holding an unexpired reset token with this hash."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.password_reset_token_hash == token_hash) & (_users.c.password_reset_expires > now)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def delete_user(self, user_id: int) -> bool:
        """Delete a user with all sessions and secrets in one transaction.

        Audit rows are kept: they are the forensic record and the engine never
        rewrites them.
        """
        with self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.execute(_secrets.delete().where(_secrets.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def increment_failed_attempts(
        self, user_id: int, threshold: int, lock_until: datetime, now: datetime
    ) -> LockoutState | None:
        """Atomically count one failed login and open a lock window at the threshold.

        A new window is only opened when no unexpired one exists, so a burst
        of failures cannot stack or extend the lock. Returns None if the user
        does not exist.
        """
        new_count = _users.c.failed_attempts + 1
        no_open_window = or_(_users.c.locked_until.is_(None), _users.c.locked_until <= now)
        stmt = (
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                failed_attempts=new_count,
                locked_until=case(
                    ((new_count >= threshold) & no_open_window, _ts(lock_until)),
                    else_=_users.c.locked_until,
                ),
            )
            .returning(_users.c.failed_attempts, _users.c.locked_until)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
            conn.commit()
        if row is None:
            return None
        return LockoutState(failed_attempts=row.failed_attempts, locked_until=row.locked_until)

    def clear_expired_lock(self, user_id: int, now: datetime) -> bool:
        """Reset counter and lock if the lock window has elapsed. Returns True if cleared."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id) & (_users.c.locked_until.is_not(None)) & (_users.c.locked_until <= now)
                )
                .values(failed_attempts=0, locked_until=None)
            )
            conn.commit()
        return result.rowcount > 0

    def record_login_success(self, user_id: int, now: datetime) -> None:
        """Reset the failure counter, clear any lock, and stamp last_login."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_attempts=0, locked_until=None, last_login=now)
            )
            conn.commit()

    def unlock_user(self, user_id: int) -> bool:
        """Operator override: clear failures and lock regardless of expiry."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(failed_attempts=0, locked_until=None)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    session_token_hash=session.session_token_hash,
                    refresh_token_hash=session.refresh_token_hash,
                    device_info=session.device_info,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=now,
                    expires_at=session.expires_at,
                    refresh_expires_at=session.refresh_expires_at,
                    last_used=now,
                    is_active=1,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_active_session(self, token_hash: str, now: datetime) -> Session | None:
        """Return the session for an access token that is active and unexpired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.session_token_hash == token_hash)
                    & (_sessions.c.is_active == 1)
                    & (_sessions.c.expires_at > now)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: int, now: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_used=now))
            conn.commit()

    def rotate_session(
        self,
        refresh_token_hash: str,
        now: datetime,
        new_session_token_hash: str,
        new_refresh_token_hash: str,
        expires_at: datetime,
        refresh_expires_at: datetime,
    ) -> Session | None:
        """Swap both token hashes and both expiries on the matching record.

        The WHERE clause re-checks activity and refresh expiry inside the same
        statement, so two concurrent refreshes with one token cannot both win.
        Returns the updated Session, or None if the refresh token is unusable.
        """
        stmt = (
            _sessions.update()
            .where(
                (_sessions.c.refresh_token_hash == refresh_token_hash)
                & (_sessions.c.is_active == 1)
                & (_sessions.c.refresh_expires_at > now)
            )
            .values(
                session_token_hash=new_session_token_hash,
                refresh_token_hash=new_refresh_token_hash,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
                last_used=now,
            )
            .returning(*_sessions.c)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
            conn.commit()
        return _row_to_session(row) if row is not None else None

    def revoke_session(self, token_hash: str) -> bool:
        """Mark the session holding this access token inactive. Returns True if one was active."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.session_token_hash == token_hash) & (_sessions.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_sessions(self, user_id: int) -> int:
        """Bulk-deactivate every active session of a user. Returns the number revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    def list_active_sessions(self, user_id: int, now: datetime) -> list[Session]:
        """Return a user's usable sessions (active, refresh not expired), most recent first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.is_active == 1)
                    & (_sessions.c.refresh_expires_at > now)
                )
                .order_by(_sessions.c.last_used.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    def get_rate_limit(self, identifier: str, endpoint: str) -> RateLimitRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _rate_limits.select().where(
                    (_rate_limits.c.identifier == identifier) & (_rate_limits.c.endpoint == endpoint)
                )
            ).fetchone()
        return _row_to_rate_limit(row) if row is not None else None

    def increment_rate_limit(
        self,
        identifier: str,
        endpoint: str,
        max_requests: int,
        window_opened_after: datetime,
        block_until: datetime,
    ) -> RateLimitRecord | None:
        """Count one request inside an open, unblocked window.

        The increment and the "exceeded -> block" decision happen in a single
        UPDATE. Returns None when there is no such window (no row, blocked, or
        window expired); the caller then decides whether to open a new one.
        """
        new_count = _rate_limits.c.request_count + 1
        stmt = (
            _rate_limits.update()
            .where(
                (_rate_limits.c.identifier == identifier)
                & (_rate_limits.c.endpoint == endpoint)
                & (_rate_limits.c.blocked_until.is_(None))
                & (_rate_limits.c.window_start > window_opened_after)
            )
            .values(
                request_count=new_count,
                blocked_until=case((new_count > max_requests, _ts(block_until)), else_=None),
            )
            .returning(*_rate_limits.c)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
            conn.commit()
        return _row_to_rate_limit(row) if row is not None else None

    def open_rate_window(self, identifier: str, endpoint: str, now: datetime) -> RateLimitRecord:
        """Start a fresh window (count=1) for the pair, creating the row if needed.

        Raises IntegrityError if a concurrent request inserted the row first.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _rate_limits.update()
                .where((_rate_limits.c.identifier == identifier) & (_rate_limits.c.endpoint == endpoint))
                .values(request_count=1, window_start=now, blocked_until=None)
            )
            if result.rowcount == 0:
                conn.execute(
                    _rate_limits.insert().values(
                        identifier=identifier,
                        endpoint=endpoint,
                        request_count=1,
                        window_start=now,
                        blocked_until=None,
                    )
                )
        return RateLimitRecord(identifier=identifier, endpoint=endpoint, request_count=1, window_start=now)

    # ------------------------------------------------------------------
    # Audit log (append-only: no update or delete methods exist)
    # ------------------------------------------------------------------

    def insert_audit_event(self, audit_event: AuditEvent, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    user_id=audit_event.user_id,
                    event_type=audit_event.event_type,
                    ip_address=audit_event.ip_address,
                    user_agent=audit_event.user_agent,
                    success=1 if audit_event.success else 0,
                    details=audit_event.details,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit_events(
        self,
        user_id: int | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return audit events newest first, optionally filtered by user and type."""
        query = _audit_log.select()
        if user_id is not None:
            query = query.where(_audit_log.c.user_id == user_id)
        if event_type is not None:
            query = query.where(_audit_log.c.event_type == event_type)
        query = query.order_by(_audit_log.c.created_at.desc(), _audit_log.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    # ------------------------------------------------------------------
    # Encrypted secrets
    # ------------------------------------------------------------------

    def create_secret(self, secret: EncryptedSecret, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _secrets.insert().values(
                    user_id=secret.user_id,
                    name=secret.name,
                    secret_type=secret.secret_type,
                    ciphertext=secret.ciphertext,
                    salt=secret.salt,
                    iv=secret.iv,
                    auth_tag=secret.auth_tag,
                    key_fingerprint=secret.key_fingerprint,
                    preview=secret.preview,
                    scopes=list(secret.scopes),
                    created_at=now,
                    is_active=1,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def count_active_secrets(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_secrets)
                .where((_secrets.c.user_id == user_id) & (_secrets.c.is_active == 1))
            ).scalar()
        return result or 0

    def list_secrets(self, user_id: int, include_revoked: bool = False) -> list[EncryptedSecret]:
        """Return a user's secrets newest first (active only unless include_revoked)."""
        query = _secrets.select().where(_secrets.c.user_id == user_id)
        if not include_revoked:
            query = query.where(_secrets.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_secrets.c.created_at.desc(), _secrets.c.id.desc())).fetchall()
        return [_row_to_secret(r) for r in rows]

    def get_secret(self, secret_id: int, user_id: int) -> EncryptedSecret | None:
        """Owner-scoped lookup; returns revoked records too."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _secrets.select().where((_secrets.c.id == secret_id) & (_secrets.c.user_id == user_id))
            ).fetchone()
        return _row_to_secret(row) if row is not None else None

    def find_active_secrets_by_preview(self, preview: str) -> list[EncryptedSecret]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _secrets.select().where((_secrets.c.preview == preview) & (_secrets.c.is_active == 1))
            ).fetchall()
        return [_row_to_secret(r) for r in rows]

    def touch_secret(self, secret_id: int, now: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_secrets.update().where(_secrets.c.id == secret_id).values(last_used=now))
            conn.commit()

    def revoke_secret(self, secret_id: int, user_id: int, now: datetime) -> bool:
        """Soft-delete a secret. user_id is checked to prevent IDOR attacks.

        The ciphertext row stays in place for forensic history. Returns True if
        an active secret was revoked, False if not found, wrong owner, or
        already revoked.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _secrets.update()
                .where((_secrets.c.id == secret_id) & (_secrets.c.user_id == user_id) & (_secrets.c.is_active == 1))
                .values(is_active=0, revoked_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        failed_attempts=row.failed_attempts or 0,
        locked_until=row.locked_until,
        last_login=row.last_login,
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires=row.password_reset_expires,
        created_at=row.created_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        session_token_hash=row.session_token_hash,
        refresh_token_hash=row.refresh_token_hash,
        device_info=row.device_info or {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        expires_at=row.expires_at,
        refresh_expires_at=row.refresh_expires_at,
        last_used=row.last_used,
        is_active=bool(row.is_active),
    )


def _row_to_rate_limit(row) -> RateLimitRecord:
    return RateLimitRecord(
        identifier=row.identifier,
        endpoint=row.endpoint,
        request_count=row.request_count,
        window_start=row.window_start,
        blocked_until=row.blocked_until,
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        user_id=row.user_id,
        event_type=row.event_type,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=bool(row.success),
        details=row.details or {},
        created_at=row.created_at,
    )


def _row_to_secret(row) -> EncryptedSecret:
    return EncryptedSecret(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        secret_type=row.secret_type,
        ciphertext=row.ciphertext,
        salt=row.salt,
        iv=row.iv,
        auth_tag=row.auth_tag,
        key_fingerprint=row.key_fingerprint,
        preview=row.preview,
        scopes=list(row.scopes or []),
        created_at=row.created_at,
        last_used=row.last_used,
        revoked_at=row.revoked_at,
        is_active=bool(row.is_active),
    )
