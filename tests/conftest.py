"""
tests/conftest.py -- Shared test fixtures for SessionGuard.

This module provides:
  - auth_config:   AuthConfig with distinct, long-enough test secrets
  - memory_store:  fresh InMemoryRefreshStore per test
  - sql_store:     SqlRefreshStore on a per-test SQLite file (tmp_path)
  - rate_limiter:  LoginRateLimiter on memory:// storage
  - make_service:  factory building an AuthenticationService around any
                   credential callable
  - api_client:    TestClient with a patched lifespan and two local users

Design: the SQL store uses a real file under tmp_path, not ':memory:'.
TestClient and the concurrency tests run work on several threads, and a plain
':memory:' database is private to one connection.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates signing secrets in dev mode rather than raising ValueError.
LOGIN_IP_RATE_LIMIT is raised so the per-IP slowapi limit never interferes
with tests that exercise the per-identity limiter.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import timedelta

# CRITICAL: Set before any api/core import so get_settings() picks them up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_IP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.credentials import CredentialResult, LocalUser, PasswordCredentialVerifier, hash_password
from auth.limiter import LoginRateLimiter
from auth.models import AuthConfig, Role
from auth.service import AuthenticationService
from auth.store import InMemoryRefreshStore, SqlRefreshStore

ACCESS_SECRET = "test-access-secret-0123456789abcdef0123456789"
REFRESH_SECRET = "test-refresh-secret-fedcba9876543210fedcba98"

ADMIN_PASSWORD = "adminpass123"
USER_PASSWORD = "userpass123"

# Low bcrypt cost keeps the suite fast; production uses the default of 12.
_USERS = [
    LocalUser(username="admin", password_hash=hash_password(ADMIN_PASSWORD, rounds=4), role=Role.admin),
    LocalUser(username="alice", password_hash=hash_password(USER_PASSWORD, rounds=4), role=Role.user),
]


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        issuer="sessionguard-test",
        audience="sessionguard-test-api",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        max_login_attempts=5,
        login_window=timedelta(minutes=15),
    )


@pytest.fixture
def memory_store() -> InMemoryRefreshStore:
    return InMemoryRefreshStore()


@pytest.fixture
def sql_store(tmp_path) -> Generator[SqlRefreshStore, None, None]:
    store = SqlRefreshStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield store
    store.close()


@pytest.fixture
def rate_limiter(auth_config: AuthConfig) -> LoginRateLimiter:
    return LoginRateLimiter(auth_config)


@pytest.fixture
def local_credentials() -> PasswordCredentialVerifier:
    return PasswordCredentialVerifier(_USERS)


@pytest.fixture
def make_service(auth_config, memory_store, rate_limiter) -> Callable[..., AuthenticationService]:
    """Return a factory: make_service(verify_credentials=None, store=None).

    The default credential callable accepts admin/ADMIN_PASSWORD and
    alice/USER_PASSWORD without running bcrypt.
    """

    def fake_credentials(username: str, password: str) -> CredentialResult:
        if username == "admin" and password == ADMIN_PASSWORD:
            return CredentialResult(ok=True, role="admin")
        if username == "alice" and password == USER_PASSWORD:
            return CredentialResult(ok=True, role="user")
        return CredentialResult(ok=False)

    def factory(verify_credentials=None, store=None) -> AuthenticationService:
        return AuthenticationService(
            auth_config,
            store if store is not None else memory_store,
            rate_limiter,
            verify_credentials or fake_credentials,
        )

    return factory


@pytest.fixture
def service(make_service) -> AuthenticationService:
    return make_service()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthenticationService):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built service and its store into app.state so routes never
    touch the production database or the environment's user table.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.refresh_store = service.store
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await app.state.purge_task

    return test_lifespan


@pytest.fixture
def client_for() -> Generator[Callable[[AuthenticationService], TestClient], None, None]:
    """Return a factory that starts a TestClient around a given service."""
    clients: list[TestClient] = []

    def factory(service: AuthenticationService) -> TestClient:
        app.router.lifespan_context = _patch_lifespan(service)
        client = TestClient(app, raise_server_exceptions=False)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def api_client(make_service, local_credentials, client_for) -> TestClient:
    """TestClient backed by the bcrypt verifier and an in-memory store.

    Users: admin / ADMIN_PASSWORD (admin), alice / USER_PASSWORD (user).
    """
    return client_for(make_service(verify_credentials=local_credentials))
