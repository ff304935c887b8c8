"""
auth/limiter.py -- Per-identity failed-login limiter.

This is separate from the per-IP slowapi limiter in api/limiter.py. slowapi
counts every request to a route; this limiter counts only FAILED credential
checks for one identity key and is cleared on success, which slowapi cannot
express. Both share the same engine: the ``limits`` package that slowapi is
built on.

Window semantics (FixedWindowRateLimiter):
  The window opens on the first recorded failure and lasts ``login_window``.
  Once ``attempts >= max_login_attempts`` inside the window, check_allowed()
  returns False until the window elapses. A success calls clear(), which
  drops the counter immediately.

Atomicity: increments go through the storage backend's incr(), which is
lock-protected for memory:// and a single INCR for redis://. Concurrent
failures for the same key therefore never lose an update -- under-counting
would fail open.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

from auth.models import AuthConfig, RateLimitStatus

logger = logging.getLogger("sessionguard.limiter")

_NAMESPACE = "sessionguard-login"


def normalize_key(key: str) -> str:
    """Collapse case and surrounding whitespace so 'Admin ' and 'admin' share a counter."""
    return key.strip().lower()


class LoginRateLimiter:
    """Fixed-window counter of failed logins per key.

    Usage:
        limiter = LoginRateLimiter(config)              # in-process memory storage
        limiter = LoginRateLimiter(config, "redis://h") # shared across workers
    """

    def __init__(self, config: AuthConfig, storage_uri: str = "memory://") -> None:
        self.max_attempts = config.max_login_attempts
        self.window_seconds = int(config.login_window.total_seconds())
        self._item = RateLimitItemPerSecond(self.max_attempts, self.window_seconds, namespace=_NAMESPACE)
        self._storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)

    def record_failure(self, key: str) -> None:
        key = normalize_key(key)
        # hit() always increments; its boolean result is irrelevant here.
        self._strategy.hit(self._item, key)
        stats = self._strategy.get_window_stats(self._item, key)
        if stats.remaining == 0:
            logger.warning("Login limit reached for key %r (%d attempts)", key, self.max_attempts)

    def check_allowed(self, key: str) -> bool:
        return self._strategy.test(self._item, normalize_key(key))

    def clear(self, key: str) -> None:
        self._strategy.clear(self._item, normalize_key(key))

    def status(self, key: str) -> RateLimitStatus:
        """Return the current window for ``key`` without mutating it."""
        key = normalize_key(key)
        stats = self._strategy.get_window_stats(self._item, key)
        attempts = self.max_attempts - stats.remaining
        reset_at = None
        if attempts > 0:
            reset_at = datetime.fromtimestamp(stats.reset_time, tz=timezone.utc)
        return RateLimitStatus(key=key, attempts=attempts, remaining=stats.remaining, reset_at=reset_at)

    def retry_after(self, key: str) -> int:
        """Seconds until the current window for ``key`` resets (0 if none is open)."""
        stats = self._strategy.get_window_stats(self._item, normalize_key(key))
        if stats.remaining >= self.max_attempts:
            return 0
        return max(1, math.ceil(stats.reset_time - time.time()))
