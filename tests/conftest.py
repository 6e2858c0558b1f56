"""
tests/conftest.py -- Shared test fixtures for ECVMS auth tests.

This module provides:
  - FakeClock: a settable millisecond clock for expiry tests
  - reset_rate_limits: clears the shared login limiter before every test
  - user_store: an isolated file-backed SQLite UserStore per test
  - guard: a SessionGuard bound to a fixed secret and a FakeClock
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient with an Admin and a Staff token

Design: file-backed SQLite under tmp_path rather than ':memory:'. The store
is exercised from several threads (TestClient's thread pool, concurrency
tests) and a plain ':memory:' DB is per-connection, so each thread would see
a blank schema.

Environment variables must be set before any auth/core import: DEBUG lets
get_settings() auto-generate SECRET_KEY, BCRYPT_ROUNDS keeps hashing fast,
ALLOWED_HOSTS admits TestClient's "testserver" host.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import Role
from auth.sessions import SessionGuard
from auth.store import UserStore
from core.config import get_settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
MAX_AGE_MS = 8 * 60 * 60 * 1000

# TestClient reports this as both the peer address and the user agent.
TEST_CLIENT_HOST = "testclient"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_rate_limits() -> None:
    """Every TestClient request shares one peer address, so login attempts
    from earlier tests would otherwise count against later ones."""
    limiter.reset()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'users.db'}"


@pytest.fixture
def user_store(db_url: str) -> Generator[UserStore, None, None]:
    store = UserStore(db_url=db_url)
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def guard(clock: FakeClock) -> SessionGuard:
    return SessionGuard(TEST_SECRET, MAX_AGE_MS, fingerprint_policy="log_only", clock=clock)


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, guard: SessionGuard, setup_required: bool = False):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test objects into app.state so TestClient routes see an
    isolated directory rather than the default database file.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.session_guard = guard
        app.state.setup_required = setup_required
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, staff_token) for API integration tests.

    Directory contents at start:
      testadmin / testpass123   (Admin)
      teststaff / staffpass123  (Staff)
    Tokens are issued for TestClient's own host and user agent, so they also
    pass the fingerprint check.
    """
    db_path = tmp_path_factory.mktemp("api") / "users.db"
    user_store = UserStore(db_url=f"sqlite:///{db_path}")
    user_store.create_user("testadmin", "testpass123", Role.admin, created_by="system")
    user_store.create_user("teststaff", "staffpass123", Role.staff, created_by="system")

    guard = SessionGuard.from_settings(get_settings())
    admin_token = guard.issue_session("testadmin", Role.admin, ip=TEST_CLIENT_HOST, user_agent=TEST_CLIENT_HOST)
    staff_token = guard.issue_session("teststaff", Role.staff, ip=TEST_CLIENT_HOST, user_agent=TEST_CLIENT_HOST)

    app.router.lifespan_context = _patch_lifespan(user_store, guard)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, admin_token, staff_token

    user_store.close()


@pytest.fixture
def setup_client(tmp_path) -> Generator[tuple[TestClient, UserStore], None, None]:
    """Yield (client, store) for an app whose directory has no Admin yet."""
    user_store = UserStore(db_url=f"sqlite:///{tmp_path / 'setup.db'}")
    guard = SessionGuard.from_settings(get_settings())
    app.router.lifespan_context = _patch_lifespan(user_store, guard, setup_required=True)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, user_store

    user_store.close()
