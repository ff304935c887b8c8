"""
auth/credentials.py -- Local username/password verifier (bcrypt).

The authentication core only needs *something* that satisfies
``verify_credentials(username, password) -> CredentialResult``. This module
provides that collaborator for deployments without an external identity
store: a fixed table of bcrypt hashes supplied through configuration.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Cost factor makes
       brute force expensive for low-entropy secrets.

  Timing equalization: an unknown username is checked against _DUMMY_HASH so
       the response time does not reveal whether the account exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import bcrypt

from auth.models import Role

logger = logging.getLogger("sessionguard.credentials")


@dataclass(frozen=True)
class CredentialResult:
    """Outcome of a credential check. ``role`` is set only when ``ok``."""

    ok: bool
    role: str | None = None


class CredentialVerifier(Protocol):
    """The external collaborator consumed by AuthenticationService.login().

    Implementations return CredentialResult(ok=False) for a wrong password and
    RAISE (TimeoutError, ConnectionError, OSError or
    CredentialCheckUnavailable) when they cannot give an answer at all.
    """

    def __call__(self, username: str, password: str) -> CredentialResult: ...


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash: treat as a mismatch, never as a match.
        return False


# Computed once at import so the first unknown-user check costs the same as
# every later one.
_DUMMY_HASH: str = hash_password("sessionguard_timing_dummy")


@dataclass(frozen=True)
class LocalUser:
    username: str
    password_hash: str
    role: Role


class PasswordCredentialVerifier:
    """Check passwords against an in-memory table of bcrypt hashes.

    Usage:
        verifier = PasswordCredentialVerifier([LocalUser("admin", hash_password("pw"), Role.admin)])
        verifier("admin", "pw")  # CredentialResult(ok=True, role="admin")
    """

    def __init__(self, users: Iterable[LocalUser]) -> None:
        self._users = {u.username: u for u in users}
        logger.info("Local credential table loaded (%d users)", len(self._users))

    def __call__(self, username: str, password: str) -> CredentialResult:
        user = self._users.get(username)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_password(password, _DUMMY_HASH)
            return CredentialResult(ok=False)
        if not verify_password(password, user.password_hash):
            return CredentialResult(ok=False)
        return CredentialResult(ok=True, role=user.role.value)
