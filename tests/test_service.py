"""Behavioural tests for auth/service.py -- AuthService.

Covers the request/response contract end to end on an in-memory store:
- register: success, duplicate email, invalid input
- login: success, wrong password and unknown email indistinguishable,
  the five-strikes lockout and its expiry, rate limiting, one audit event
  per attempt
- refresh / logout / logout_all, with failures audited under their own
  error events
- password reset and change (both revoke every session)
- account deletion (confirmation phrase, audit trail retained)
- unexpected errors are masked as internal_error and audited
"""

from datetime import timedelta

import pytest

from auth.models import ClientInfo
from auth.service import (
    DELETE_CONFIRMATION,
    RESET_REQUESTED_MESSAGE,
    AuthenticatedSession,
    AuthService,
    build_auth_service,
)
from auth.store import SecurityStore
from conftest import OTHER_PASSWORD, STRONG_PASSWORD, FakeClock, make_settings
from core.errors import LockedError, Status
from core.results import Failure, Success

CLIENT = ClientInfo(ip_address="203.0.113.7", user_agent="pytest")

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registered(service):
    result = service.register("Alice@Example.com", STRONG_PASSWORD, "Alice", CLIENT)
    assert isinstance(result, Success)
    return result.value


def _audit_count(store) -> int:
    return len(store.list_audit_events(limit=10_000))


def _event_types(store) -> list[str]:
    return [e.event_type for e in store.list_audit_events(limit=10_000)]


# ---------------------------------------------------------------------------
# register
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_user_and_session(self, service: AuthService, registered: AuthenticatedSession) -> None:
        assert registered.user.email == "alice@example.com"
        assert registered.user.name == "Alice"
        assert service.sessions.validate(registered.tokens.session_token).user_id == registered.user.id

    def test_stores_bcrypt_hash(self, service: AuthService, registered: AuthenticatedSession) -> None:
        user = service.store.get_user_by_id(registered.user.id)
        assert user.password_hash != STRONG_PASSWORD
        assert user.password_hash.startswith("$2")

    def test_duplicate_email_is_conflict(self, service: AuthService, registered: AuthenticatedSession) -> None:
        result = service.register("alice@example.com", OTHER_PASSWORD, "Other", CLIENT)
        assert isinstance(result, Failure)
        assert result.status is Status.conflict
        events = service.store.list_audit_events(event_type="registration_duplicate_email")
        assert len(events) == 1

    @pytest.mark.parametrize(
        "email,password,name",
        [
            ("not-an-email", STRONG_PASSWORD, "Bob"),
            ("bob@example.com", "weak", "Bob"),
            ("bob@example.com", "NoSpecial123", "Bob"),
            ("bob@example.com", STRONG_PASSWORD, "   "),
            ("bob@example.com", STRONG_PASSWORD, "x" * 101),
            ("bob@example.com", "Aa1!" + "a" * 80, "Bob"),
        ],
    )
    def test_rejects_invalid_input(self, service: AuthService, email: str, password: str, name: str) -> None:
        result = service.register(email, password, name, CLIENT)
        assert isinstance(result, Failure)
        assert result.status is Status.bad_input
        assert service.store.get_user_by_email("bob@example.com") is None

    def test_sanitizes_name(self, service: AuthService) -> None:
        result = service.register("carol@example.com", STRONG_PASSWORD, "  <Carol>  ", CLIENT)
        assert result.value.user.name == "Carol"


# ---------------------------------------------------------------------------
# login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_issues_session_and_stamps_last_login(
        self, service: AuthService, registered: AuthenticatedSession, clock: FakeClock
    ) -> None:
        clock.advance(minutes=1)
        result = service.login("ALICE@example.com", STRONG_PASSWORD, CLIENT)
        assert isinstance(result, Success)
        assert result.value.user.last_login == clock.now
        assert service.sessions.validate(result.value.tokens.session_token) is not None

    def test_wrong_password_and_unknown_email_look_identical(
        self, service: AuthService, registered: AuthenticatedSession
    ) -> None:
        wrong = service.login("alice@example.com", OTHER_PASSWORD, CLIENT)
        unknown = service.login("nobody@example.com", STRONG_PASSWORD, CLIENT)
        assert wrong.status is unknown.status is Status.bad_credential
        assert wrong.error.code == unknown.error.code
        assert wrong.error.message == unknown.error.message
        assert wrong.error.detail() == unknown.error.detail() == {}

    def test_unknown_email_still_runs_a_hash_check(self, service: AuthService, monkeypatch) -> None:
        calls = []
        monkeypatch.setattr(service.hasher, "dummy_verify", lambda password: calls.append(password) or False)
        service.login("nobody@example.com", STRONG_PASSWORD, CLIENT)
        assert calls == [STRONG_PASSWORD]

    def test_requires_both_fields(self, service: AuthService) -> None:
        assert service.login("", STRONG_PASSWORD, CLIENT).status is Status.bad_input
        assert service.login("alice@example.com", "", CLIENT).status is Status.bad_input

    def test_failure_does_not_reveal_remaining_attempts(
        self, service: AuthService, registered: AuthenticatedSession
    ) -> None:
        result = service.login("alice@example.com", OTHER_PASSWORD, CLIENT)
        assert "attempt" not in result.error.message.lower()
        assert result.error.detail() == {}

    @pytest.mark.parametrize(
        "email,password",
        [
            ("alice@example.com", STRONG_PASSWORD),
            ("alice@example.com", OTHER_PASSWORD),
            ("nobody@example.com", STRONG_PASSWORD),
            ("", ""),
        ],
    )
    def test_each_attempt_writes_one_audit_event(
        self, service: AuthService, registered: AuthenticatedSession, email: str, password: str
    ) -> None:
        before = _audit_count(service.store)
        service.login(email, password, CLIENT)
        assert _audit_count(service.store) == before + 1


class TestLoginLockout:
    def test_five_failures_lock_even_the_correct_password(
        self, service: AuthService, registered: AuthenticatedSession, clock: FakeClock
    ) -> None:
        for _ in range(5):
            assert service.login("alice@example.com", OTHER_PASSWORD, CLIENT).status is Status.bad_credential

        locked = service.login("alice@example.com", STRONG_PASSWORD, CLIENT)
        assert locked.status is Status.account_locked
        assert isinstance(locked.error, LockedError)
        assert locked.error.unlock_at == clock.now + timedelta(minutes=30)

        clock.advance(minutes=29)
        assert service.login("alice@example.com", STRONG_PASSWORD, CLIENT).status is Status.account_locked

        clock.advance(minutes=1)
        assert isinstance(service.login("alice@example.com", STRONG_PASSWORD, CLIENT), Success)
        user = service.store.get_user_by_email("alice@example.com")
        assert user.failed_attempts == 0
        assert user.locked_until is None

    def test_success_resets_failure_counter(self, service: AuthService, registered: AuthenticatedSession) -> None:
        for _ in range(4):
            service.login("alice@example.com", OTHER_PASSWORD, CLIENT)
        assert isinstance(service.login("alice@example.com", STRONG_PASSWORD, CLIENT), Success)
        for _ in range(4):
            service.login("alice@example.com", OTHER_PASSWORD, CLIENT)
        assert isinstance(service.login("alice@example.com", STRONG_PASSWORD, CLIENT), Success)

    def test_locked_login_writes_one_audit_event(
        self, service: AuthService, registered: AuthenticatedSession
    ) -> None:
        for _ in range(5):
            service.login("alice@example.com", OTHER_PASSWORD, CLIENT)
        before = _audit_count(service.store)
        service.login("alice@example.com", STRONG_PASSWORD, CLIENT)
        assert _audit_count(service.store) == before + 1
        assert service.store.list_audit_events(limit=1)[0].event_type == "login_account_locked"


class TestLoginRateLimit:
    def test_limit_per_origin_and_window(self, store: SecurityStore, clock: FakeClock) -> None:
        service = build_auth_service(make_settings(rate_limits={"login": "2/minute"}), store, clock=clock)
        service.register("dave@example.com", STRONG_PASSWORD, "Dave", CLIENT)

        assert isinstance(service.login("dave@example.com", STRONG_PASSWORD, CLIENT), Success)
        assert isinstance(service.login("dave@example.com", STRONG_PASSWORD, CLIENT), Success)
        limited = service.login("dave@example.com", STRONG_PASSWORD, CLIENT)
        assert limited.status is Status.rate_limited
        assert limited.error.retry_after == 60
        assert store.list_audit_events(limit=1)[0].event_type == "rate_limit_exceeded"

        # A different origin is counted separately.
        other = ClientInfo(ip_address="198.51.100.1", user_agent="pytest")
        assert isinstance(service.login("dave@example.com", STRONG_PASSWORD, other), Success)

        clock.advance(minutes=1)
        assert isinstance(service.login("dave@example.com", STRONG_PASSWORD, CLIENT), Success)

    def test_checked_before_credentials(self, store: SecurityStore, clock: FakeClock) -> None:
        service = build_auth_service(make_settings(rate_limits={"login": "1/minute"}), store, clock=clock)
        service.register("erin@example.com", STRONG_PASSWORD, "Erin", CLIENT)
        service.login("erin@example.com", OTHER_PASSWORD, CLIENT)
        service.login("erin@example.com", OTHER_PASSWORD, CLIENT)
        assert store.get_user_by_email("erin@example.com").failed_attempts == 1


# ---------------------------------------------------------------------------
# refresh / logout
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotates_tokens(self, service: AuthService, registered: AuthenticatedSession, clock: FakeClock) -> None:
        clock.advance(hours=1)
        result = service.refresh(registered.tokens.refresh_token, CLIENT)
        assert isinstance(result, Success)
        assert result.value.expires_at == clock.now + timedelta(hours=24)
        assert service.sessions.validate(registered.tokens.session_token) is None
        assert service.store.list_audit_events(limit=1)[0].event_type == "session_refresh"

    def test_spent_token_fails(self, service: AuthService, registered: AuthenticatedSession) -> None:
        service.refresh(registered.tokens.refresh_token, CLIENT)
        result = service.refresh(registered.tokens.refresh_token, CLIENT)
        assert result.status is Status.bad_credential
        assert result.error.code == "invalid_refresh_token"

    def test_requires_token(self, service: AuthService) -> None:
        assert service.refresh("", CLIENT).status is Status.bad_input


class TestLogout:
    def test_revokes_only_that_session(self, service: AuthService, registered: AuthenticatedSession) -> None:
        second = service.login("alice@example.com", STRONG_PASSWORD, CLIENT).value
        assert service.logout(registered.tokens.session_token, CLIENT).value is True
        assert service.sessions.validate(registered.tokens.session_token) is None
        assert service.sessions.validate(second.tokens.session_token) is not None
        assert service.store.list_audit_events(limit=1)[0].event_type == "logout"

    def test_unknown_session_still_succeeds(self, service: AuthService) -> None:
        result = service.logout("0" * 64, CLIENT)
        assert isinstance(result, Success)
        assert result.value is False

    def test_failure_is_audited_as_logout_error(
        self, service: AuthService, registered: AuthenticatedSession, monkeypatch
    ) -> None:
        def broken_revoke(token):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(service.sessions, "revoke", broken_revoke)
        result = service.logout(registered.tokens.session_token, CLIENT)

        assert result.status is Status.internal_error
        types = _event_types(service.store)
        assert types[0] == "logout_error"
        assert "logout" not in types


class TestLogoutAll:
    def test_revokes_every_session(self, service: AuthService, registered: AuthenticatedSession) -> None:
        second = service.login("alice@example.com", STRONG_PASSWORD, CLIENT).value
        result = service.logout_all(second.tokens.session_token, CLIENT)
        assert result.value == 2
        assert service.sessions.validate(registered.tokens.session_token) is None
        assert service.sessions.validate(second.tokens.session_token) is None
        assert service.store.list_audit_events(limit=1)[0].event_type == "logout_all"

    def test_requires_valid_session(self, service: AuthService) -> None:
        assert service.logout_all("0" * 64, CLIENT).status is Status.bad_credential

    def test_failure_is_audited_as_logout_all_error(
        self, service: AuthService, registered: AuthenticatedSession, monkeypatch
    ) -> None:
        def broken_revoke_all(user_id):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(service.sessions, "revoke_all", broken_revoke_all)
        result = service.logout_all(registered.tokens.session_token, CLIENT)

        assert result.status is Status.internal_error
        types = _event_types(service.store)
        assert types[0] == "logout_all_error"
        assert "logout_all" not in types
        assert service.sessions.validate(registered.tokens.session_token) is not None


# ---------------------------------------------------------------------------
# password reset / change
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_full_flow(
        self, service: AuthService, registered: AuthenticatedSession, reset_outbox: list[tuple]
    ) -> None:
        message = service.request_password_reset("alice@example.com", CLIENT).value
        assert message == RESET_REQUESTED_MESSAGE
        assert len(reset_outbox) == 1
        user, token, _ = reset_outbox[0]
        assert user.id == registered.user.id

        stored = service.store.get_user_by_id(user.id)
        assert stored.password_reset_token_hash != token

        assert isinstance(service.complete_password_reset(token, OTHER_PASSWORD, CLIENT), Success)
        assert service.sessions.validate(registered.tokens.session_token) is None
        assert service.login("alice@example.com", STRONG_PASSWORD, CLIENT).status is Status.bad_credential
        assert isinstance(service.login("alice@example.com", OTHER_PASSWORD, CLIENT), Success)

        reused = service.complete_password_reset(token, STRONG_PASSWORD, CLIENT)
        assert reused.status is Status.bad_input
        assert reused.error.code == "invalid_reset_token"

    def test_unknown_email_looks_the_same(self, service: AuthService, reset_outbox: list[tuple]) -> None:
        result = service.request_password_reset("ghost@example.com", CLIENT)
        assert result.value == RESET_REQUESTED_MESSAGE
        assert reset_outbox == []

    def test_token_expires(
        self,
        service: AuthService,
        registered: AuthenticatedSession,
        reset_outbox: list[tuple],
        clock: FakeClock,
    ) -> None:
        service.request_password_reset("alice@example.com", CLIENT)
        _, token, expires_at = reset_outbox[0]
        assert expires_at == clock.now + timedelta(hours=1)
        clock.advance(hours=1)
        assert service.complete_password_reset(token, OTHER_PASSWORD, CLIENT).error.code == "invalid_reset_token"

    def test_rejects_weak_password(
        self, service: AuthService, registered: AuthenticatedSession, reset_outbox: list[tuple]
    ) -> None:
        service.request_password_reset("alice@example.com", CLIENT)
        _, token, _ = reset_outbox[0]
        assert service.complete_password_reset(token, "weak", CLIENT).status is Status.bad_input

    def test_clears_lockout(
        self, service: AuthService, registered: AuthenticatedSession, reset_outbox: list[tuple]
    ) -> None:
        for _ in range(5):
            service.login("alice@example.com", OTHER_PASSWORD, CLIENT)
        service.request_password_reset("alice@example.com", CLIENT)
        _, token, _ = reset_outbox[0]
        service.complete_password_reset(token, OTHER_PASSWORD, CLIENT)
        assert isinstance(service.login("alice@example.com", OTHER_PASSWORD, CLIENT), Success)


class TestChangePassword:
    def test_revokes_sessions_and_takes_effect(self, service: AuthService, registered: AuthenticatedSession) -> None:
        token = registered.tokens.session_token
        result = service.change_password(token, STRONG_PASSWORD, OTHER_PASSWORD, CLIENT)
        assert result.value == 1
        assert service.sessions.validate(token) is None
        assert isinstance(service.login("alice@example.com", OTHER_PASSWORD, CLIENT), Success)

    def test_wrong_current_password(self, service: AuthService, registered: AuthenticatedSession) -> None:
        result = service.change_password(registered.tokens.session_token, OTHER_PASSWORD, OTHER_PASSWORD, CLIENT)
        assert result.status is Status.bad_credential
        assert result.error.code == "invalid_current_password"
        assert service.sessions.validate(registered.tokens.session_token) is not None

    def test_requires_session(self, service: AuthService) -> None:
        result = service.change_password("0" * 64, STRONG_PASSWORD, OTHER_PASSWORD, CLIENT)
        assert result.status is Status.bad_credential


# ---------------------------------------------------------------------------
# account deletion
# ---------------------------------------------------------------------------


class TestDeleteAccount:
    def test_requires_exact_confirmation(self, service: AuthService, registered: AuthenticatedSession) -> None:
        result = service.delete_account(registered.tokens.session_token, "delete my account", CLIENT)
        assert result.status is Status.bad_input
        assert service.store.get_user_by_id(registered.user.id) is not None

    def test_removes_user_keeps_audit(self, service: AuthService, registered: AuthenticatedSession) -> None:
        user_id = registered.user.id
        service.secrets.issue(user_id, "ci")
        result = service.delete_account(registered.tokens.session_token, DELETE_CONFIRMATION, CLIENT)
        assert isinstance(result, Success)

        assert service.store.get_user_by_id(user_id) is None
        assert service.store.list_secrets(user_id, include_revoked=True) == []
        assert service.sessions.validate(registered.tokens.session_token) is None
        types = {e.event_type for e in service.store.list_audit_events(user_id=user_id)}
        assert {"registration", "api_key_created", "account_deleted"} <= types


# ---------------------------------------------------------------------------
# error masking and read views
# ---------------------------------------------------------------------------


class TestErrorMasking:
    def test_unexpected_error_is_masked(self, service: AuthService, monkeypatch) -> None:
        def boom(email):
            raise RuntimeError("connection string postgres://secret@db")

        monkeypatch.setattr(service.store, "get_user_by_email", boom)
        result = service.login("alice@example.com", STRONG_PASSWORD, CLIENT)
        assert result.status is Status.internal_error
        assert "postgres" not in result.error.message
        assert service.store.list_audit_events(limit=1)[0].event_type == "login_error"


class TestReadViews:
    def test_profile_and_views(self, service: AuthService, registered: AuthenticatedSession) -> None:
        assert service.profile(registered.user.id).email == "alice@example.com"
        assert service.profile(9999) is None
        assert len(service.active_sessions(registered.user.id)) == 1
        assert service.recent_events(registered.user.id)[0].event_type == "registration"
