"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every failure the core can produce is an AuthError subclass. The classes are
fine-grained (MalformedToken vs SignatureInvalid vs Expired ...)
so logs and tests can tell them apart. The HTTP layer is responsible for
collapsing them: every TokenVerificationError, ReuseDetected and
InvalidCredentials becomes the same 401 body, so a client never learns which
check failed.

Layer rule: stdlib only. No imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authentication-core errors."""

    code = "auth_error"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    """The credential collaborator rejected the username/password pair."""

    code = "invalid_credentials"


class RateLimited(AuthError):
    """Too many failed logins for this key within the current window."""

    code = "rate_limited"

    def __init__(self, key: str, retry_after: int) -> None:
        super().__init__(f"Too many failed attempts; retry in {retry_after}s.")
        self.key = key
        self.retry_after = retry_after


class CredentialCheckUnavailable(AuthError):
    """The credential collaborator timed out or could not be reached.

    Kept distinct from InvalidCredentials so an infrastructure outage is
    never recorded as a failed attempt against the user's rate limit.
    """

    code = "credential_backend_unavailable"


class Forbidden(AuthError):
    """The identity is authenticated but lacks the required role."""

    code = "forbidden"


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------


class TokenVerificationError(AuthError):
    """Base class for every reason a presented token is not accepted."""

    code = "token_invalid"


class MalformedToken(TokenVerificationError):
    code = "malformed_token"


class AlgorithmMismatch(TokenVerificationError):
    code = "algorithm_mismatch"


class SignatureInvalid(TokenVerificationError):
    code = "signature_invalid"


class ClaimMismatch(TokenVerificationError):
    code = "claim_mismatch"


class Expired(TokenVerificationError):
    code = "expired"


class ReuseDetected(AuthError):
    """A validly signed refresh token has no active record.

    Raised only after the owner's whole lineage has been revoked.
    """

    code = "reuse_detected"

    def __init__(self, username: str, message: str = "Refresh token reuse detected.") -> None:
        super().__init__(message)
        self.username = username


# ---------------------------------------------------------------------------
# Issuance and storage
# ---------------------------------------------------------------------------


class ConflictError(AuthError):
    """A store write lost a race or targeted a record that is no longer active."""

    code = "conflict"


class IssuanceError(AuthError):
    """Signing a token failed."""

    code = "issuance_failed"


class StoreUnavailable(AuthError):
    """The refresh-token store could not complete the operation."""

    code = "store_unavailable"
