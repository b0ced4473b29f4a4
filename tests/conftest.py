"""
tests/conftest.py -- Shared test fixtures for the PNIT security engine.

This module provides:
  - FakeClock: a controllable UTC clock for expiry, lockout and window tests
  - store: an isolated in-memory SecurityStore per test
  - make_settings(): Settings with test-friendly costs and overridable limits
  - service: a fully wired AuthService on the in-memory store and FakeClock
  - api_client: TestClient over create_app() with its own database
  - client_factory: TestClients with per-test Settings overrides

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit-level fixtures run on one thread, so :memory: is enough.

MASTER_KEY and the cost settings must be in the environment before any
core/auth import so get_settings() never fails and bcrypt stays fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any core/auth import.
os.environ.setdefault("MASTER_KEY", "test-master-key-0123456789abcdef-0123456789")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("KDF_ITERATIONS", "10000")

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from auth.service import AuthService, build_auth_service
from auth.store import SecurityStore
from core.config import Settings

STRONG_PASSWORD = "Sup3r$ecret"
OTHER_PASSWORD = "An0ther!pass"

# Generous limits so tests that are not about rate limiting never trip them.
RELAXED_RATE_LIMITS = {
    "login": "1000/minute",
    "register": "1000/minute",
    "password_reset": "1000/minute",
    "api": "1000/minute",
    "api_auth": "1000/minute",
}


class FakeClock:
    """Callable returning a fixed, manually advanced UTC time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_settings(relaxed: bool = True, **overrides) -> Settings:
    """Settings for tests. relaxed=False keeps the default production rate limits."""
    values = {"bcrypt_rounds": 4, "kdf_iterations": 10_000}
    if relaxed:
        values["rate_limits"] = dict(RELAXED_RATE_LIMITS)
    values.update(overrides)
    return Settings(**values)


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[SecurityStore, None, None]:
    s = SecurityStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def reset_outbox() -> list[tuple]:
    """Collects (user, token, expires_at) from the password reset notifier."""
    return []


@pytest.fixture
def service(store: SecurityStore, clock: FakeClock, reset_outbox: list) -> AuthService:
    return build_auth_service(
        make_settings(),
        store,
        clock=clock,
        notifier=lambda user, token, expires_at: reset_outbox.append((user, token, expires_at)),
    )


def _shared_memory_url() -> str:
    return f"sqlite:///file:test_pnit_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """TestClient over the real app with relaxed rate limits and an isolated DB.

    Module-scoped for speed; tests create their own users with unique_email().
    """
    app = create_app(settings=make_settings(database_url=_shared_memory_url()))
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def strict_client() -> Generator[TestClient, None, None]:
    """TestClient with the production default rate limits."""
    app = create_app(settings=make_settings(relaxed=False, database_url=_shared_memory_url()))
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def client_factory() -> Generator:
    """Build TestClients over create_app() with per-test Settings overrides.

    Each client gets its own shared-memory database and relaxed limits unless
    rate_limits is overridden. Lifespans are closed at teardown.
    """
    clients: list[TestClient] = []

    def _make(**overrides) -> TestClient:
        app = create_app(settings=make_settings(database_url=_shared_memory_url(), **overrides))
        client = TestClient(app, raise_server_exceptions=True)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
