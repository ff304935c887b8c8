"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

This limiter counts *requests per client IP*. The per-identity count of
*failed logins* lives in auth.limiter.LoginRateLimiter; the two are
complementary (one caps spraying from a single address, the other caps
guessing against a single account).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_ip_limit() -> str:
    """Per-IP limit for POST /auth/login, read from settings at request time."""
    return get_settings().login_ip_rate_limit
