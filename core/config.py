"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

The auth core never imports this module. The application entry point
(api/main.py) reads Settings once and converts it into an explicit
auth.models.AuthConfig that is passed into every component, so tests can
build components with their own secrets without touching the environment.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. access_secret -> ACCESS_SECRET). Complex fields (users) are parsed
      from JSON.

  @model_validator(mode="after"): DEBUG-conditional secret handling. Dev mode
      generates missing secrets with a warning; production refuses to start.

Security notes:
  Secrets shorter than 32 chars are rejected outright -- HMAC signing relies
  on key entropy. Access and refresh secrets must differ so one purpose's
  token can never verify under the other's key.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionguard.config")

_MIN_SECRET_LENGTH = 32


class UserEntry(BaseModel):
    """One local account for the bcrypt credential verifier."""

    username: str = Field(min_length=1, max_length=255)
    password_hash: str = Field(min_length=1)
    role: str = Field(default="user", pattern=r"^(user|admin)$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments (with DEBUG=true) without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    access_secret: str = ""
    refresh_secret: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_algorithm: str = Field(default="HS256", pattern=r"^HS(256|384|512)$")
    jwt_issuer: str = "sessionguard"
    jwt_audience: str = "sessionguard-api"
    access_token_minutes: int = Field(default=15, gt=0)
    refresh_token_days: int = Field(default=7, gt=0)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Per-identity failed-login limit (auth.limiter).
    login_max_attempts: int = Field(default=5, ge=1)
    login_window_seconds: int = Field(default=900, ge=1)
    # "memory://" for a single process; "redis://host:6379" to share counters.
    rate_limit_storage_uri: str = "memory://"
    # Per-IP request limit on POST /auth/login (slowapi).
    login_ip_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///sessionguard_auth.db"
    purge_interval_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Local accounts (JSON list in the USERS env var)
    # ------------------------------------------------------------------

    users: list[UserEntry] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Issued tokens will not survive a restart -- acceptable locally.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters, and reject
            identical access/refresh secrets.
        """
        for name in ("access_secret", "refresh_secret"):
            if getattr(self, name):
                continue
            if not self.debug:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())

        if len(self.access_secret) < _MIN_SECRET_LENGTH or len(self.refresh_secret) < _MIN_SECRET_LENGTH:
            raise ValueError(f"ACCESS_SECRET and REFRESH_SECRET must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.access_secret == self.refresh_secret:
            raise ValueError("ACCESS_SECRET and REFRESH_SECRET must differ.")
        if self.access_token_minutes * 60 >= self.refresh_token_days * 86400:
            raise ValueError("Access tokens must expire before refresh tokens.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
