"""
auth/service.py -- Login / refresh / logout orchestration.

Each refresh-token lineage moves through SessionState:

    anonymous --login--> authenticated --refresh--> refreshed --refresh--> ...
        any state --logout / reuse / rotation conflict--> revoked

revoked is terminal: only a fresh login re-enters authenticated.

Ordering rules that matter for security:
  login:   limiter check BEFORE the credential check, so a locked-out key
           never reaches the (slow, enumerable) password comparison. A
           credential backend failure is NOT a failed attempt.
  refresh: verify -> rotate -> sign, with rotation inside TokenIssuer.issue().
           A rotation ConflictError means another request consumed the same
           token first; the loser revokes the lineage and reports reuse.

No method retries. Retrying a rotation blindly could double-issue.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from auth.credentials import CredentialResult
from auth.errors import (
    ConflictError,
    CredentialCheckUnavailable,
    Forbidden,
    InvalidCredentials,
    IssuanceError,
    RateLimited,
    ReuseDetected,
    TokenVerificationError,
)
from auth.issuer import TokenIssuer
from auth.limiter import LoginRateLimiter
from auth.models import AuthConfig, Identity, Role, SessionState, TokenPair
from auth.store import RefreshStore
from auth.verifier import TokenVerifier

logger = logging.getLogger("sessionguard.auth")

# Collaborator exceptions that mean "no answer", as opposed to "wrong password".
_BACKEND_FAILURES = (TimeoutError, ConnectionError, OSError)


class AuthenticationService:
    """Entry point used by the HTTP layer.

    Usage:
        service = AuthenticationService(config, store, limiter, verify_credentials)
        pair = service.login("alice", "s3cret")
        pair = service.refresh(pair.refresh_token)
        service.logout(pair.refresh_token)
    """

    def __init__(
        self,
        config: AuthConfig,
        store: RefreshStore,
        limiter: LoginRateLimiter,
        verify_credentials: Callable[[str, str], CredentialResult | Mapping[str, Any]],
    ) -> None:
        self.config = config
        self.store = store
        self.limiter = limiter
        self.verify_credentials = verify_credentials
        self.issuer = TokenIssuer(config, store)
        self.verifier = TokenVerifier(config, store)

    # ------------------------------------------------------------------
    # anonymous -> authenticated
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> TokenPair:
        """Check credentials and issue a first token pair.

        Raises:
            RateLimited: key is locked out; credentials were not consulted.
            InvalidCredentials: wrong username/password (counted).
            CredentialCheckUnavailable: collaborator failed (not counted).
            IssuanceError, StoreUnavailable: tokens could not be issued.
        """
        if not self.limiter.check_allowed(username):
            retry_after = self.limiter.retry_after(username)
            logger.warning("Login for %r denied by rate limiter (retry in %ds)", username, retry_after)
            raise RateLimited(username, retry_after)

        result = self._check_credentials(username, password)
        if not result.ok:
            self.limiter.record_failure(username)
            logger.info("Login failed for %r", username)
            raise InvalidCredentials("Invalid username or password.")

        try:
            role = Role(result.role)
        except ValueError as exc:
            raise IssuanceError(f"Credential backend returned unknown role {result.role!r}.") from exc

        self.limiter.clear(username)
        pair = self.issuer.issue(Identity(username=username, role=role))
        logger.info("Session %s for %r (role=%s)", SessionState.authenticated.value, username, role.value)
        return pair

    def _check_credentials(self, username: str, password: str) -> CredentialResult:
        try:
            result = self.verify_credentials(username, password)
        except CredentialCheckUnavailable:
            logger.error("Credential backend unavailable during login for %r", username)
            raise
        except _BACKEND_FAILURES as exc:
            logger.error("Credential backend failed during login for %r: %s", username, type(exc).__name__)
            raise CredentialCheckUnavailable("Credential backend unavailable.") from exc
        if isinstance(result, Mapping):
            result = CredentialResult(ok=bool(result.get("ok")), role=result.get("role"))
        return result

    # ------------------------------------------------------------------
    # authenticated/refreshed -> refreshed
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate ``refresh_token`` and return a new pair.

        Raises:
            TokenVerificationError: token rejected by signature/claim checks.
            ReuseDetected: token already consumed or revoked; lineage revoked.
            IssuanceError, StoreUnavailable: new pair could not be issued.
        """
        verified = self.verifier.verify_refresh(refresh_token)
        username = verified.identity.username
        try:
            pair = self.issuer.issue(verified.identity, replaces=verified.token_id)
        except ConflictError as exc:
            # Lost the race for this token id: another request rotated it
            # between our lookup and our compare-and-swap.
            revoked = self.store.revoke_lineage(username)
            logger.warning(
                "Session %s for %r: concurrent rotation conflict, %d records revoked",
                SessionState.revoked.value,
                username,
                revoked,
            )
            raise ReuseDetected(username, "Refresh token was rotated concurrently.") from exc
        logger.info("Session %s for %r", SessionState.refreshed.value, username)
        return pair

    # ------------------------------------------------------------------
    # any -> revoked
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str) -> None:
        """Revoke the record behind ``refresh_token``.

        Idempotent: an invalid, expired or already revoked token is a no-op,
        so the HTTP layer can always answer 204.
        """
        try:
            claims = self.verifier.decode_refresh(refresh_token)
        except TokenVerificationError as exc:
            logger.info("Logout with unusable refresh token ignored (%s)", exc.code)
            return
        if self.store.revoke(claims.token_id):
            logger.info("Session %s for %r (logout)", SessionState.revoked.value, claims.subject)

    def revoke_sessions(self, username: str) -> int:
        """Revoke every refresh token owned by ``username`` (admin kill switch)."""
        count = self.store.revoke_lineage(username)
        logger.warning("All sessions of %r revoked by administrator (%d records)", username, count)
        return count

    # ------------------------------------------------------------------
    # Protected resources
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str, required_role: Role | None = None) -> Identity:
        """Return the identity behind ``access_token``, enforcing ``required_role``.

        Raises:
            TokenVerificationError: token rejected.
            Forbidden: valid token, insufficient role.
        """
        identity = self.verifier.verify_access(access_token)
        if required_role is not None and not identity.has_role(required_role):
            raise Forbidden(f"Role {required_role.value!r} required.")
        return identity
