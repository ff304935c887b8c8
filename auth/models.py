"""
auth/models.py -- Domain dataclasses for the authentication core.

Pattern: Data class (pure data container, near-zero logic). The codec,
store, issuer and verifier do the work; these types only carry shape.

AuthConfig is the one exception with behaviour: it validates itself in
__post_init__ so a misconfigured deployment fails at construction time rather
than on the first login. It is built by the application entry point and passed
into every component explicitly -- nothing in auth/ reads global settings.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")


class Role(str, Enum):
    user = "user"
    admin = "admin"


# Higher value = more privilege. admin satisfies any user-gated route.
ROLE_PRIORITY = {Role.user: 1, Role.admin: 2}


class SessionState(str, Enum):
    """Lifecycle of one session lineage."""

    anonymous = "anonymous"
    authenticated = "authenticated"
    refreshed = "refreshed"
    revoked = "revoked"


@dataclass(frozen=True)
class Identity:
    """An authenticated principal. Immutable for the life of a session."""

    username: str
    role: Role

    def has_role(self, required: Role) -> bool:
        return ROLE_PRIORITY[self.role] >= ROLE_PRIORITY[required]


@dataclass(frozen=True)
class AccessClaims:
    """Decoded, verified access-token payload. Never persisted."""

    subject: str
    role: Role
    issuer: str
    audience: str
    issued_at: datetime
    expires_at: datetime
    algorithm: str
    token_id: str | None = None

    @property
    def identity(self) -> Identity:
        return Identity(username=self.subject, role=self.role)


@dataclass(frozen=True)
class RefreshClaims:
    """Decoded, verified refresh-token payload. token_id links to a RefreshRecord."""

    subject: str
    role: Role
    issuer: str
    audience: str
    issued_at: datetime
    expires_at: datetime
    algorithm: str
    token_id: str

    @property
    def identity(self) -> Identity:
        return Identity(username=self.subject, role=self.role)


@dataclass(frozen=True)
class RefreshRecord:
    """Server-side state for one refresh token.

    A record is *active* when it is not revoked and has not expired. Rotation
    revokes the predecessor and inserts the successor in a single unit, so at
    most one record per rotation chain is ever active.
    """

    token_id: str
    username: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return not self.revoked and now < self.expires_at


@dataclass(frozen=True)
class RateLimitStatus:
    """Read-only view of one limiter key's current window."""

    key: str
    attempts: int
    remaining: int
    reset_at: datetime | None


@dataclass(frozen=True)
class TokenPair:
    """Result of a successful login or refresh."""

    access_token: str
    refresh_token: str
    role: Role
    expires_in: int  # access token lifetime in seconds
    state: SessionState = SessionState.authenticated


@dataclass(frozen=True)
class VerifiedRefresh:
    """A refresh token that passed signature, claim and store checks."""

    identity: Identity
    token_id: str


@dataclass(frozen=True)
class AuthConfig:
    """Explicit configuration for every auth component.

    Secrets are required and must differ: a token minted for one purpose must
    never verify under the other purpose's key.
    """

    access_secret: str
    refresh_secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_ttl: timedelta = timedelta(minutes=15)
    refresh_ttl: timedelta = timedelta(days=7)
    max_login_attempts: int = 5
    login_window: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        if not self.access_secret or not self.refresh_secret:
            raise ValueError("access_secret and refresh_secret are required.")
        if self.access_secret == self.refresh_secret:
            raise ValueError("access_secret and refresh_secret must differ.")
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported algorithm {self.algorithm!r}; expected one of {SUPPORTED_ALGORITHMS}.")
        if not self.issuer or not self.audience:
            raise ValueError("issuer and audience must be non-empty.")
        # Claims carry whole seconds; a shorter lifetime would mint exp == iat.
        if self.access_ttl < timedelta(seconds=1) or self.refresh_ttl < timedelta(seconds=1):
            raise ValueError("Token lifetimes must be at least one second.")
        if self.access_ttl >= self.refresh_ttl:
            raise ValueError("access_ttl must be shorter than refresh_ttl.")
        if self.max_login_attempts < 1:
            raise ValueError("max_login_attempts must be at least 1.")
        if self.login_window < timedelta(seconds=1):
            raise ValueError("login_window must be at least one second.")
