"""
tests/test_service.py -- AuthenticationService lifecycle tests.

Covers:
  - Login: success, wrong password, unknown user, Mapping-shaped results
  - Lockout: five wrong passwords, then even the right one is refused
    without consulting the credential backend
  - Credential backend outage: distinct error, never counted as a failure
  - Refresh: rotation, reuse detection, concurrent refresh of one token
  - Logout: idempotent, invalid tokens are a no-op
  - Admin revocation and role enforcement in authenticate()
"""

from __future__ import annotations

import threading

import pytest

from auth.credentials import CredentialResult
from auth.errors import (
    CredentialCheckUnavailable,
    Forbidden,
    InvalidCredentials,
    IssuanceError,
    RateLimited,
    ReuseDetected,
    TokenVerificationError,
)
from auth.models import Role, SessionState

# Must match the users wired in conftest.py.
ADMIN_PASSWORD = "adminpass123"
USER_PASSWORD = "userpass123"


class CountingCredentials:
    """Credential callable that records how often it was consulted."""

    def __init__(self, result=None, exc: Exception | None = None) -> None:
        self.calls = 0
        self.result = result
        self.exc = exc

    def __call__(self, username: str, password: str):
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        if self.result is not None:
            return self.result
        ok = username == "admin" and password == ADMIN_PASSWORD
        return CredentialResult(ok=ok, role="admin" if ok else None)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_issues_pair(self, service, memory_store):
        pair = service.login("admin", ADMIN_PASSWORD)
        assert pair.role is Role.admin
        assert pair.state is SessionState.authenticated
        assert service.authenticate(pair.access_token).username == "admin"
        assert len(memory_store.list_active("admin")) == 1

    def test_wrong_password_and_unknown_user_raise_same_error(self, service):
        with pytest.raises(InvalidCredentials):
            service.login("admin", "wrong")
        with pytest.raises(InvalidCredentials):
            service.login("ghost", "whatever")

    def test_failure_is_counted(self, service, rate_limiter):
        with pytest.raises(InvalidCredentials):
            service.login("admin", "wrong")
        assert rate_limiter.status("admin").attempts == 1

    def test_success_clears_failures(self, service, rate_limiter):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                service.login("admin", "wrong")
        service.login("admin", ADMIN_PASSWORD)
        assert rate_limiter.status("admin").attempts == 0

    def test_mapping_result_is_accepted(self, make_service):
        svc = make_service(verify_credentials=lambda u, p: {"ok": True, "role": "user"})
        assert svc.login("bob", "pw").role is Role.user

    def test_unknown_role_from_backend_is_issuance_error(self, make_service):
        svc = make_service(verify_credentials=lambda u, p: CredentialResult(ok=True, role="superuser"))
        with pytest.raises(IssuanceError):
            svc.login("bob", "pw")


class TestLockout:
    def test_sixth_attempt_denied_even_with_correct_password(self, make_service):
        credentials = CountingCredentials()
        svc = make_service(verify_credentials=credentials)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                svc.login("admin", "wrong")
        assert credentials.calls == 5

        with pytest.raises(RateLimited) as excinfo:
            svc.login("admin", ADMIN_PASSWORD)

        assert credentials.calls == 5
        assert excinfo.value.retry_after > 0

    def test_lockout_ignores_username_case(self, make_service):
        svc = make_service(verify_credentials=CountingCredentials())
        for name in ("admin", "Admin", "ADMIN", " admin", "admin "):
            with pytest.raises(InvalidCredentials):
                svc.login(name, "wrong")
        with pytest.raises(RateLimited):
            svc.login("admin", ADMIN_PASSWORD)


class TestCredentialBackendOutage:
    @pytest.mark.parametrize("exc", [TimeoutError("slow"), ConnectionError("down"), CredentialCheckUnavailable("x")])
    def test_outage_is_distinct_and_not_counted(self, make_service, rate_limiter, exc):
        svc = make_service(verify_credentials=CountingCredentials(exc=exc))
        for _ in range(10):
            with pytest.raises(CredentialCheckUnavailable):
                svc.login("admin", ADMIN_PASSWORD)
        assert rate_limiter.status("admin").attempts == 0
        assert rate_limiter.check_allowed("admin")


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_rotates(self, service, memory_store):
        first = service.login("alice", USER_PASSWORD)
        second = service.refresh(first.refresh_token)
        assert second.state is SessionState.refreshed
        assert second.refresh_token != first.refresh_token
        assert service.authenticate(second.access_token).username == "alice"
        assert len(memory_store.list_active("alice")) == 1

    def test_old_token_twice_fails_and_revokes_lineage(self, service, memory_store):
        first = service.login("alice", USER_PASSWORD)
        second = service.refresh(first.refresh_token)

        with pytest.raises(ReuseDetected):
            service.refresh(first.refresh_token)

        assert memory_store.list_active("alice") == []
        with pytest.raises(ReuseDetected):
            service.refresh(second.refresh_token)

    def test_invalid_token_does_not_revoke_anything(self, service, memory_store):
        service.login("alice", USER_PASSWORD)
        with pytest.raises(TokenVerificationError):
            service.refresh("not.a.token")
        assert len(memory_store.list_active("alice")) == 1

    def test_concurrent_refresh_has_one_winner_and_revokes_lineage(self, make_service, sql_store):
        svc = make_service(store=sql_store)
        pair = svc.login("alice", USER_PASSWORD)
        barrier = threading.Barrier(2)
        outcomes: list[str] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                svc.refresh(pair.refresh_token)
                result = "ok"
            except ReuseDetected:
                result = "reuse"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "reuse"]
        assert sql_store.list_active("alice") == []


# ---------------------------------------------------------------------------
# Logout and revocation
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_revokes_refresh_token(self, service):
        pair = service.login("alice", USER_PASSWORD)
        service.logout(pair.refresh_token)
        with pytest.raises(ReuseDetected):
            service.refresh(pair.refresh_token)

    def test_logout_is_idempotent(self, service):
        pair = service.login("alice", USER_PASSWORD)
        service.logout(pair.refresh_token)
        service.logout(pair.refresh_token)

    def test_logout_with_garbage_is_noop(self, service, memory_store):
        service.login("alice", USER_PASSWORD)
        service.logout("garbage")
        assert len(memory_store.list_active("alice")) == 1

    def test_access_token_stays_valid_after_logout(self, service):
        pair = service.login("alice", USER_PASSWORD)
        service.logout(pair.refresh_token)
        assert service.authenticate(pair.access_token).username == "alice"


class TestRevokeAndAuthorize:
    def test_revoke_sessions_kills_every_device(self, service):
        pairs = [service.login("alice", USER_PASSWORD) for _ in range(3)]
        assert service.revoke_sessions("alice") == 3
        for pair in pairs:
            with pytest.raises(ReuseDetected):
                service.refresh(pair.refresh_token)

    def test_authenticate_enforces_role(self, service):
        user = service.login("alice", USER_PASSWORD)
        admin = service.login("admin", ADMIN_PASSWORD)
        with pytest.raises(Forbidden):
            service.authenticate(user.access_token, required_role=Role.admin)
        assert service.authenticate(admin.access_token, required_role=Role.admin).role is Role.admin
        assert service.authenticate(admin.access_token, required_role=Role.user).role is Role.admin

    def test_refresh_token_is_not_an_access_token(self, service):
        pair = service.login("alice", USER_PASSWORD)
        with pytest.raises(TokenVerificationError):
            service.authenticate(pair.refresh_token)
