"""
auth/verifier.py -- Validate presented access and refresh tokens.

verify_access() is stateless: signature + claims only. Access tokens are
short-lived and are not looked up anywhere.

verify_refresh() adds the server-side check. A refresh token whose signature
and claims are valid but which has no active record was already consumed
(rotated), revoked, or never recorded. All three mean the token is in the
wrong hands, so the owner's entire lineage is revoked *before* ReuseDetected
is raised. The revocation is an explicit call here, not a side effect hidden
in an except block.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from auth.codec import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, ClaimsCodec
from auth.errors import MalformedToken, ReuseDetected
from auth.models import AccessClaims, AuthConfig, Identity, RefreshClaims, Role, VerifiedRefresh
from auth.store import RefreshStore

logger = logging.getLogger("sessionguard.verifier")


def _role(claims: dict[str, Any]) -> Role:
    try:
        return Role(claims.get("role"))
    except ValueError as exc:
        raise MalformedToken("Token carries no valid role.") from exc


def _ts(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenVerifier:
    def __init__(self, config: AuthConfig, store: RefreshStore) -> None:
        self.store = store
        self.access_codec = ClaimsCodec(
            config.access_secret,
            config.algorithm,
            issuer=config.issuer,
            audience=config.audience,
            token_type=ACCESS_TOKEN_TYPE,
        )
        self.refresh_codec = ClaimsCodec(
            config.refresh_secret,
            config.algorithm,
            issuer=config.issuer,
            audience=config.audience,
            token_type=REFRESH_TOKEN_TYPE,
        )

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def decode_access(self, token: str) -> AccessClaims:
        claims = self.access_codec.verify(token)
        return AccessClaims(
            subject=claims["sub"],
            role=_role(claims),
            issuer=claims["iss"],
            audience=claims["aud"],
            issued_at=_ts(claims["iat"]),
            expires_at=_ts(claims["exp"]),
            algorithm=self.access_codec.algorithm,
            token_id=claims.get("jti"),
        )

    def verify_access(self, token: str) -> Identity:
        return self.decode_access(token).identity

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def decode_refresh(self, token: str) -> RefreshClaims:
        """Signature and claim checks only -- no store lookup."""
        claims = self.refresh_codec.verify(token)
        token_id = claims.get("jti")
        if not isinstance(token_id, str) or not token_id:
            raise MalformedToken("Refresh token carries no token id.")
        return RefreshClaims(
            subject=claims["sub"],
            role=_role(claims),
            issuer=claims["iss"],
            audience=claims["aud"],
            issued_at=_ts(claims["iat"]),
            expires_at=_ts(claims["exp"]),
            algorithm=self.refresh_codec.algorithm,
            token_id=token_id,
        )

    def verify_refresh(self, token: str) -> VerifiedRefresh:
        """Return the identity and token id of an active refresh token.

        Raises:
            TokenVerificationError: signature/claims rejected (no side effects).
            ReuseDetected: signed token with no matching active record; the
                           subject's lineage has already been revoked.
        """
        claims = self.decode_refresh(token)
        record = self.store.find_active(claims.token_id)
        if record is None or record.username != claims.subject:
            revoked = self.store.revoke_lineage(claims.subject)
            logger.warning(
                "Refresh token reuse for %s (token %s...); revoked %d records",
                claims.subject,
                claims.token_id[:8],
                revoked,
            )
            raise ReuseDetected(claims.subject)
        return VerifiedRefresh(identity=claims.identity, token_id=claims.token_id)
