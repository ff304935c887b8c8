"""
auth/dependencies.py -- FastAPI Depends() helpers for protected routes.

Access tokens arrive as ``Authorization: Bearer <token>``. Both helpers go
through AuthenticationService.authenticate() and let AuthError propagate:
the exception handlers in api/main.py turn every TokenVerificationError into
the same 401 body that login and refresh failures produce, and Forbidden into
403. A missing or non-Bearer header is a MalformedToken like any other
unusable token.

get_current_identity() raises 401 when unauthenticated.
require_admin() raises 401 when unauthenticated and 403 if the role is
insufficient.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.errors import MalformedToken, TokenVerificationError
from auth.models import Identity, Role
from auth.service import AuthenticationService

logger = logging.getLogger("sessionguard.auth")


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise MalformedToken("Missing Bearer access token.")
    return token.strip()


def _authenticate(request: Request, required_role: Role | None) -> Identity:
    service: AuthenticationService = request.app.state.auth_service
    try:
        return service.authenticate(_bearer_token(request), required_role=required_role)
    except TokenVerificationError as exc:
        logger.info("Access token rejected on %s (%s)", request.url.path, exc.code)
        raise


def get_current_identity(request: Request) -> Identity:
    """Require a valid access token. Raises a TokenVerificationError (HTTP 401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    return _authenticate(request, None)


def require_admin(request: Request) -> Identity:
    """Require admin role. HTTP 401 if unauthenticated, Forbidden (HTTP 403) if not admin."""
    return _authenticate(request, Role.admin)
