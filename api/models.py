"""
API request and response models for SessionGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import TokenPair

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    admin = "admin"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    max_length on password keeps inputs well below bcrypt's 72-byte
    truncation threshold.
    """

    model_config = ConfigDict(str_strip_whitespace=False)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    role: RoleEnum

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        """Build a TokenResponse from a domain TokenPair."""
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            role=RoleEnum(pair.role.value),
        )


class MeResponse(BaseModel):
    username: str
    role: RoleEnum


class RevokeResponse(BaseModel):
    username: str
    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error code plus a human message.

    detail is optional context for non-auth errors (e.g. validation output).
    Auth failures never populate it -- the cause of a 401 is not disclosed.
    """

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
