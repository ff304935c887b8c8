"""
api/main.py -- FastAPI application entry point for SessionGuard.

Run with:  uvicorn api.main:app

Middleware stack (outermost to innermost):
  1. log_requests      -- method, path, status, latency per request
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the auth core from Settings (config -> store -> limiter ->
credential verifier -> service), starts the refresh-token purge task, and
tears everything down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.credentials import LocalUser, PasswordCredentialVerifier
from auth.errors import (
    AuthError,
    Forbidden,
    InvalidCredentials,
    RateLimited,
    ReuseDetected,
    StoreUnavailable,
    TokenVerificationError,
)
from auth.limiter import LoginRateLimiter
from auth.models import AuthConfig, Role
from auth.service import AuthenticationService
from auth.store import SqlRefreshStore
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionguard.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_auth_config(settings: Settings) -> AuthConfig:
    """Translate environment-level Settings into the auth core's explicit config."""
    return AuthConfig(
        access_secret=settings.access_secret,
        refresh_secret=settings.refresh_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        algorithm=settings.jwt_algorithm,
        access_ttl=timedelta(minutes=settings.access_token_minutes),
        refresh_ttl=timedelta(days=settings.refresh_token_days),
        max_login_attempts=settings.login_max_attempts,
        login_window=timedelta(seconds=settings.login_window_seconds),
    )


def build_service(settings: Settings, store) -> AuthenticationService:
    config = build_auth_config(settings)
    credentials = PasswordCredentialVerifier(
        LocalUser(username=u.username, password_hash=u.password_hash, role=Role(u.role)) for u in settings.users
    )
    rate_limiter = LoginRateLimiter(config, settings.rate_limit_storage_uri)
    return AuthenticationService(config, store, rate_limiter, credentials)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired refresh records every ``interval_seconds``.

    The purge runs in a worker thread so a slow DELETE never stalls the event
    loop. Any failure is logged and retried on the next tick; only
    cancellation ends the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.refresh_store.purge_expired)
        except StoreUnavailable:
            logger.warning("Refresh token purge skipped: store unavailable")
        except Exception:
            logger.exception("Refresh token purge failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("SessionGuard API starting up")
    settings = get_settings()
    app.state.refresh_store = SqlRefreshStore(settings.database_url)
    app.state.auth_service = build_service(settings, app.state.refresh_store)
    logger.info("Auth core initialized (%d local users)", len(settings.users))
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.purge_task
    app.state.refresh_store.close()
    logger.info("SessionGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGuard API",
    description="Username/password login issuing rotating access/refresh token pairs.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Every reason a credential or token is refused collapses to one response.
_UNAUTHORIZED_ERRORS = (TokenVerificationError, ReuseDetected, InvalidCredentials)


def _auth_error_response(exc: AuthError) -> JSONResponse:
    """Map an AuthError onto the HTTP contract.

    401 bodies are byte-identical whatever the cause; the specific error
    kind is only ever written to the server log.
    """
    headers = {"Cache-Control": "no-store"}
    if isinstance(exc, _UNAUTHORIZED_ERRORS):
        status, code, message = 401, "unauthorized", "Invalid credentials or token."
        headers["WWW-Authenticate"] = "Bearer"
    elif isinstance(exc, RateLimited):
        status, code, message = 429, "rate_limited", "Too many failed login attempts."
        headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, Forbidden):
        status, code, message = 403, "forbidden", "Insufficient role."
    else:
        # StoreUnavailable, IssuanceError, CredentialCheckUnavailable,
        # unhandled ConflictError: fail the request, not the process.
        status, code, message = 503, "service_unavailable", "Authentication temporarily unavailable."
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
        headers=headers,
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    logger.info("%s %s refused: %s", request.method, request.url.path, exc.code)
    return _auth_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the per-IP limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions (404, 405, ...).

    Authentication failures never take this path; they are AuthError and go
    through auth_error_handler.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and refresh-store reachability."""
    store = request.app.state.refresh_store
    database = "ok" if store.ping() else "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
