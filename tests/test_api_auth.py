"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> slowapi middleware ->
AuthenticationService -> bcrypt verifier / in-memory store -> exception
handlers -> response model serialization.

Coverage:
  - POST /login: 200 with pair, 401 (identical body for every cause),
    429 with Retry-After after five failures, 503 on credential outage,
    422 on a malformed body
  - POST /refresh: rotation, reuse -> 401 and lineage revoked
  - POST /logout: 204, idempotent, garbage accepted
  - GET /me: Bearer access token required; refresh token refused
  - 401 bodies are byte-identical across /me, /refresh and /login
  - POST /users/{username}/revoke: admin only
  - Cache-Control: no-store on token-bearing and error responses

Fixtures used (from conftest.py):
  - api_client: TestClient with users admin/adminpass123 and alice/userpass123
  - make_service, client_for: build a client around a custom credential backend
"""

from __future__ import annotations

import base64
import json
import time

from fastapi.testclient import TestClient

ADMIN = {"username": "admin", "password": "adminpass123"}
ALICE = {"username": "alice", "password": "userpass123"}


def _login(client: TestClient, creds: dict) -> dict:
    resp = client.post("/api/v1/auth/login", json=creds)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _unsigned_admin_token() -> str:
    def b64(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()

    now = int(time.time())
    claims = {"sub": "admin", "role": "admin", "typ": "access", "iat": now, "exp": now + 600}
    return f"{b64({'alg': 'none', 'typ': 'JWT'})}.{b64(claims)}."


class TestLogin:
    def test_login_returns_token_pair(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/login", json=ADMIN)
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["role"] == "admin"
        assert data["expires_in"] == 900
        assert data["access_token"] and data["refresh_token"]
        assert resp.headers["cache-control"] == "no-store"

    def test_failure_bodies_are_identical(self, api_client: TestClient) -> None:
        wrong_password = api_client.post("/api/v1/auth/login", json={"username": "admin", "password": "nope"})
        unknown_user = api_client.post("/api/v1/auth/login", json={"username": "ghost", "password": "nope"})
        bad_refresh = api_client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})

        assert wrong_password.status_code == unknown_user.status_code == bad_refresh.status_code == 401
        assert wrong_password.content == unknown_user.content == bad_refresh.content
        assert wrong_password.json()["error"]["code"] == "unauthorized"
        assert wrong_password.headers["www-authenticate"] == "Bearer"
        assert wrong_password.headers["cache-control"] == "no-store"

    def test_sixth_attempt_is_rate_limited(self, api_client: TestClient) -> None:
        for _ in range(5):
            resp = api_client.post("/api/v1/auth/login", json={"username": "admin", "password": "nope"})
            assert resp.status_code == 401

        resp = api_client.post("/api/v1/auth/login", json=ADMIN)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0

    def test_credential_outage_is_503(self, make_service, client_for) -> None:
        def unreachable(username: str, password: str):
            raise TimeoutError("directory timed out")

        client = client_for(make_service(verify_credentials=unreachable))
        resp = client.post("/api/v1/auth/login", json=ADMIN)
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"

    def test_missing_password_is_422(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/login", json={"username": "admin"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRefresh:
    def test_refresh_returns_new_pair(self, api_client: TestClient) -> None:
        first = _login(api_client, ALICE)
        resp = api_client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert resp.status_code == 200
        second = resp.json()
        assert second["refresh_token"] != first["refresh_token"]
        assert second["role"] == "user"
        assert resp.headers["cache-control"] == "no-store"

    def test_reuse_is_401_and_revokes_lineage(self, api_client: TestClient) -> None:
        first = _login(api_client, ALICE)
        second = api_client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]}).json()

        reuse = api_client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert reuse.status_code == 401

        after = api_client.post("/api/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert after.status_code == 401


class TestLogout:
    def test_logout_revokes_refresh_token(self, api_client: TestClient) -> None:
        pair = _login(api_client, ALICE)
        resp = api_client.post("/api/v1/auth/logout", json={"refresh_token": pair["refresh_token"]})
        assert resp.status_code == 204

        again = api_client.post("/api/v1/auth/logout", json={"refresh_token": pair["refresh_token"]})
        assert again.status_code == 204

        refresh = api_client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_with_garbage_is_204(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/logout", json={"refresh_token": "garbage"})
        assert resp.status_code == 204


class TestMe:
    def test_me_with_access_token(self, api_client: TestClient) -> None:
        pair = _login(api_client, ALICE)
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(pair["access_token"]))
        assert resp.status_code == 200
        assert resp.json() == {"username": "alice", "role": "user"}

    def test_me_without_token_is_401(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_me_with_refresh_token_is_401(self, api_client: TestClient) -> None:
        pair = _login(api_client, ALICE)
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(pair["refresh_token"]))
        assert resp.status_code == 401

    def test_unsigned_token_is_401(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(_unsigned_admin_token()))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_401_bodies_match_across_endpoints(self, api_client: TestClient) -> None:
        bad_access = api_client.get("/api/v1/auth/me", headers=_bearer("not.a.token"))
        no_header = api_client.get("/api/v1/auth/me")
        basic_scheme = api_client.get("/api/v1/auth/me", headers={"Authorization": "Basic YWxpY2U6eA=="})
        bad_refresh = api_client.post("/api/v1/auth/refresh", json={"refresh_token": "not.a.token"})
        bad_login = api_client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong-password"})

        responses = [bad_access, no_header, basic_scheme, bad_refresh, bad_login]
        assert {r.status_code for r in responses} == {401}
        assert {r.content for r in responses} == {bad_refresh.content}
        for r in responses:
            assert r.headers["cache-control"] == "no-store"
            assert r.headers["www-authenticate"] == "Bearer"


class TestAdminRevoke:
    def test_admin_revokes_all_sessions_of_user(self, api_client: TestClient) -> None:
        admin = _login(api_client, ADMIN)
        alice_sessions = [_login(api_client, ALICE) for _ in range(2)]

        resp = api_client.post("/api/v1/auth/users/alice/revoke", headers=_bearer(admin["access_token"]))
        assert resp.status_code == 200
        assert resp.json() == {"username": "alice", "revoked": 2}

        for pair in alice_sessions:
            refresh = api_client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
            assert refresh.status_code == 401

    def test_non_admin_is_403(self, api_client: TestClient) -> None:
        alice = _login(api_client, ALICE)
        resp = api_client.post("/api/v1/auth/users/admin/revoke", headers=_bearer(alice["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert resp.headers["cache-control"] == "no-store"

    def test_unauthenticated_is_401(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/users/alice/revoke")
        assert resp.status_code == 401

