"""
auth/codec.py -- Sign and verify JWT claim sets under an explicit key.

Security design decisions:
  Algorithm pinning: the header ``alg`` is compared against the configured
       algorithm BEFORE any signature work. "none", a different HMAC size, or
       an asymmetric algorithm are all AlgorithmMismatch, whatever the claims
       say. python-jose is additionally called with algorithms=[expected] so
       the library itself can never fall back to another algorithm.

  Ordered checks: structure -> alg -> signature -> standard claims ->
       explicit iss/aud/typ presence -> strict expiry. Each stage raises its
       own TokenVerificationError subclass. python-jose silently accepts a
       token that omits ``aud`` entirely, which is why presence is re-checked
       after decode.

  One key per purpose: access and refresh tokens are signed with different
       secrets and carry a different ``typ``. A ClaimsCodec instance is bound
       to exactly one (secret, typ) pair, so a refresh token presented as an
       access token fails twice over.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from jose import jws, jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError, JWTError

from auth.errors import (
    AlgorithmMismatch,
    ClaimMismatch,
    Expired,
    IssuanceError,
    MalformedToken,
    SignatureInvalid,
)
from auth.models import SUPPORTED_ALGORITHMS

logger = logging.getLogger("sessionguard.codec")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

# Claims every token must carry; absence is a structural defect.
_REQUIRED_OPTIONS = {
    "require_iat": True,
    "require_exp": True,
    "require_sub": True,
    "leeway": 0,
}


def sign_claims(claims: dict[str, Any], secret: str, algorithm: str) -> str:
    """Return a compact JWS for ``claims`` signed with ``secret``.

    Refuses to mint a token whose expiry is not strictly after its issue time
    -- such a token would be dead on arrival and usually means a clock or
    config bug upstream.
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise IssuanceError(f"Refusing to sign with unsupported algorithm {algorithm!r}.")
    iat, exp = claims.get("iat"), claims.get("exp")
    if not isinstance(iat, int) or not isinstance(exp, int) or exp <= iat:
        raise IssuanceError("Claims must carry integer iat/exp with exp > iat.")
    try:
        return jwt.encode(claims, secret, algorithm=algorithm)
    except JOSEError as exc:
        raise IssuanceError(f"Token signing failed: {exc}") from exc


def verify_claims(
    token: str,
    secret: str,
    *,
    algorithm: str,
    issuer: str,
    audience: str,
    token_type: str | None = None,
) -> dict[str, Any]:
    """Verify ``token`` and return its claims, or raise a TokenVerificationError.

    The whole check is a single call: no partially verified payload is ever
    returned to the caller.
    """
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedToken("Token is not a compact JWS.")

    # 1. Structure: header and payload must both decode before anything else.
    try:
        header = jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise MalformedToken(str(exc)) from exc

    # 2. Algorithm pinning, including the unsigned "none" variant.
    presented_alg = header.get("alg")
    if presented_alg != algorithm:
        raise AlgorithmMismatch(f"Token alg {presented_alg!r} does not match expected {algorithm!r}.")

    # 3. Signature. Structure was validated above, so any JWS failure with
    #    the pinned algorithm is a signature failure.
    try:
        jws.verify(token, secret, algorithms=[algorithm])
    except JOSEError as exc:
        raise SignatureInvalid("Signature verification failed.") from exc

    # 4. Standard claims (exp, iss, aud) via python-jose.
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options=_REQUIRED_OPTIONS,
        )
    except ExpiredSignatureError as exc:
        raise Expired("Token has expired.") from exc
    except JWTClaimsError as exc:
        raise ClaimMismatch(str(exc)) from exc
    except JWTError as exc:
        raise MalformedToken(str(exc)) from exc

    # 5. Explicit presence checks python-jose does not enforce.
    if claims.get("iss") != issuer:
        raise ClaimMismatch("Issuer claim missing or wrong.")
    if claims.get("aud") != audience:
        raise ClaimMismatch("Audience claim missing or wrong.")
    if token_type is not None and claims.get("typ") != token_type:
        raise ClaimMismatch(f"Expected a {token_type} token.")

    # 6. Strict expiry: valid only while now < exp.
    if _now_ts() >= int(claims["exp"]):
        raise Expired("Token has expired.")

    return claims


def _now_ts() -> int:
    return int(datetime.now(timezone.utc).timestamp())


class ClaimsCodec:
    """A sign/verify pair bound to one purpose's secret, algorithm and typ.

    Usage:
        codec = ClaimsCodec(secret, "HS256", issuer="sg", audience="sg-api", token_type="access")
        token = codec.sign({"sub": "alice", "role": "user", "iat": now, "exp": now + 900})
        claims = codec.verify(token)
    """

    def __init__(self, secret: str, algorithm: str, *, issuer: str, audience: str, token_type: str) -> None:
        self._secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.token_type = token_type

    def sign(self, claims: dict[str, Any]) -> str:
        payload = dict(claims)
        payload.update(iss=self.issuer, aud=self.audience, typ=self.token_type)
        return sign_claims(payload, self._secret, self.algorithm)

    def verify(self, token: str) -> dict[str, Any]:
        try:
            return verify_claims(
                token,
                self._secret,
                algorithm=self.algorithm,
                issuer=self.issuer,
                audience=self.audience,
                token_type=self.token_type,
            )
        except Exception as exc:
            logger.debug("%s token rejected: %s", self.token_type, type(exc).__name__)
            raise

    def __repr__(self) -> str:
        # Never include the secret.
        return f"ClaimsCodec(typ={self.token_type!r}, alg={self.algorithm!r}, iss={self.issuer!r})"
