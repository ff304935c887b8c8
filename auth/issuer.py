"""
auth/issuer.py -- Mint access/refresh token pairs.

Both tokens are signed first and the single store write happens last. If the
write fails (StoreUnavailable, ConflictError) the signed strings are simply
dropped: a refresh JWT never leaves this module without a server-side record,
and a record never exists for a token that could not be signed.

Refresh token ids come from secrets.token_urlsafe(32) -- 256 bits, so
collisions and guessing are not practical concerns.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from auth.codec import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, ClaimsCodec
from auth.models import AuthConfig, Identity, RefreshRecord, SessionState, TokenPair
from auth.store import RefreshStore

logger = logging.getLogger("sessionguard.issuer")


def new_token_id() -> str:
    return secrets.token_urlsafe(32)


class TokenIssuer:
    """Build and persist a fresh token pair for an authenticated identity."""

    def __init__(self, config: AuthConfig, store: RefreshStore) -> None:
        self.config = config
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

    def issue(self, identity: Identity, *, replaces: str | None = None) -> TokenPair:
        """Return a new pair for ``identity``.

        Args:
            identity: The authenticated principal.
            replaces: Token id of the refresh token being rotated. When set the
                      new record is written with store.rotate(), which revokes
                      ``replaces`` in the same unit; otherwise store.insert().

        Raises:
            IssuanceError: signing failed.
            ConflictError: ``replaces`` was no longer active (rotation lost).
            StoreUnavailable: the store write failed.
        """
        now = datetime.now(timezone.utc).replace(microsecond=0)
        iat = int(now.timestamp())
        access_ttl = int(self.config.access_ttl.total_seconds())
        refresh_ttl = int(self.config.refresh_ttl.total_seconds())

        access_token = self.access_codec.sign(
            {
                "sub": identity.username,
                "role": identity.role.value,
                "iat": iat,
                "exp": iat + access_ttl,
                "jti": new_token_id(),
            }
        )

        record = RefreshRecord(
            token_id=new_token_id(),
            username=identity.username,
            issued_at=now,
            expires_at=now + self.config.refresh_ttl,
        )
        refresh_token = self.refresh_codec.sign(
            {
                "sub": identity.username,
                "role": identity.role.value,
                "iat": iat,
                "exp": iat + refresh_ttl,
                "jti": record.token_id,
            }
        )

        if replaces is None:
            self.store.insert(record)
            state = SessionState.authenticated
        else:
            self.store.rotate(replaces, record)
            state = SessionState.refreshed

        logger.debug("Issued pair for %s (refresh %s...)", identity.username, record.token_id[:8])
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            role=identity.role,
            expires_in=access_ttl,
            state=state,
        )
