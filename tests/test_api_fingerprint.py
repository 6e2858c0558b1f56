"""
tests/test_api_fingerprint.py -- Fingerprint policy at the HTTP boundary.

A token is bound to the client that logged in. Under the "reject" policy a
request from a different user agent or forwarded address gets the generic
401; under "log_only" the same request is served.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role
from auth.sessions import SessionGuard
from auth.store import UserStore
from core.config import get_settings
from conftest import TEST_CLIENT_HOST, _patch_lifespan


def _client_for_policy(tmp_path, policy: str) -> Generator[tuple[TestClient, str], None, None]:
    user_store = UserStore(db_url=f"sqlite:///{tmp_path / 'users.db'}")
    user_store.create_user("fleetadmin", "fleetpass123", Role.admin, created_by="system")
    settings = get_settings()
    guard = SessionGuard(settings.secret_key, settings.session_max_age_seconds * 1000, fingerprint_policy=policy)
    token = guard.issue_session("fleetadmin", Role.admin, ip=TEST_CLIENT_HOST, user_agent=TEST_CLIENT_HOST)
    app.router.lifespan_context = _patch_lifespan(user_store, guard)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token

    user_store.close()


@pytest.fixture
def reject_client(tmp_path) -> Generator[tuple[TestClient, str], None, None]:
    yield from _client_for_policy(tmp_path, "reject")


@pytest.fixture
def log_only_client(tmp_path) -> Generator[tuple[TestClient, str], None, None]:
    yield from _client_for_policy(tmp_path, "log_only")


def _headers(token: str, **extra: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}", **extra}


class TestRejectPolicy:
    def test_same_client_is_served(self, reject_client) -> None:
        client, token = reject_client
        resp = client.get("/api/v1/auth/me", headers=_headers(token))
        assert resp.status_code == 200
        assert resp.json()["username"] == "fleetadmin"

    def test_changed_user_agent_is_401(self, reject_client) -> None:
        client, token = reject_client
        resp = client.get("/api/v1/auth/me", headers=_headers(token, **{"User-Agent": "curl/8.5.0"}))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_changed_forwarded_address_is_401(self, reject_client) -> None:
        client, token = reject_client
        resp = client.get("/api/v1/auth/me", headers=_headers(token, **{"X-Forwarded-For": "198.51.100.23"}))
        assert resp.status_code == 401

    def test_login_binds_the_issuing_client(self, reject_client) -> None:
        client, _token = reject_client
        login = client.post("/api/v1/auth/login", json={"username": "fleetadmin", "password": "fleetpass123"})
        assert login.status_code == 200
        token = login.json()["access_token"]
        client.cookies.clear()
        assert client.get("/api/v1/auth/me", headers=_headers(token)).status_code == 200
        other = client.get("/api/v1/auth/me", headers=_headers(token, **{"User-Agent": "Mozilla/5.0"}))
        assert other.status_code == 401


class TestLogOnlyPolicy:
    def test_changed_user_agent_is_served_and_logged(self, log_only_client, caplog) -> None:
        client, token = log_only_client
        resp = client.get("/api/v1/auth/me", headers=_headers(token, **{"User-Agent": "curl/8.5.0"}))
        assert resp.status_code == 200
        assert "fingerprint" in caplog.text.lower()
