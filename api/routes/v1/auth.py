"""
api/routes/v1/auth.py -- Token lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login                    -- password login; returns token pair
  POST /api/v1/auth/refresh                  -- rotate refresh token; returns new pair
  POST /api/v1/auth/logout                   -- revoke refresh token; 204
  GET  /api/v1/auth/me                       -- identity behind the access token
  POST /api/v1/auth/users/{username}/revoke  -- revoke all sessions (admin only)

Handlers are thin: they call AuthenticationService and let AuthError
propagate. The exception handlers in api/main.py map every error kind onto
the HTTP contract (401 / 403 / 429 / 503) so the mapping lives in one place.

Handlers are sync (def): the core is thread-safe and blocking
(bcrypt, SQLite), so Starlette runs them in its thread pool.

Security:
  POST /login is rate-limited per IP (slowapi) on top of the per-identity
  failed-login limiter inside the service.
  Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_ip_limit
from api.models import LoginRequest, LogoutRequest, MeResponse, RefreshRequest, RevokeResponse, TokenResponse
from auth.dependencies import get_current_identity, require_admin
from auth.models import Identity, TokenPair
from auth.service import AuthenticationService

# Auth policy:
# - POST /api/v1/auth/login:                   public
# - POST /api/v1/auth/refresh:                 public (refresh token is the credential)
# - POST /api/v1/auth/logout:                  public (refresh token is the credential)
# - GET  /api/v1/auth/me:                      requires access token
# - POST /api/v1/auth/users/{username}/revoke: requires admin
router = APIRouter()


def _service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=TokenResponse.from_pair(pair).model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_ip_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return an access/refresh pair.

    Wrong username and wrong password produce the same 401 body.
    """
    pair = _service(request).login(body.username, body.password)
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    pair = _service(request).refresh(body.refresh_token)
    return _token_response(pair)


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: LogoutRequest) -> Response:
    """Revoke the presented refresh token. Always 204, even for unknown tokens."""
    _service(request).logout(body.refresh_token)
    return Response(status_code=204, headers={"Cache-Control": "no-store"})


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(identity: Identity = Depends(get_current_identity)) -> MeResponse:
    """Return the identity carried by the presented access token."""
    return MeResponse(username=identity.username, role=identity.role.value)


@router.post("/auth/users/{username}/revoke", response_model=RevokeResponse)
def revoke_user_sessions(
    request: Request,
    username: str,
    admin: Identity = Depends(require_admin),
) -> RevokeResponse:
    """Revoke every refresh token owned by ``username``. Admin only.

    Outstanding access tokens stay valid until they expire (at most the
    configured access lifetime); no new ones can be minted for the user.
    """
    count = _service(request).revoke_sessions(username)
    return RevokeResponse(username=username, revoked=count)
