"""
core/config.py -- Settings for CrowdControl, read from the environment.

Every knob the service has lives on Settings: the token signing key and
lifetime, the database URL, the login rate limit and lockout threshold, the
notification pool size and the address used in activation / recovery links.
Other modules call get_settings() and never touch os.environ.

get_settings() is cached, so the environment (and .env, if present) is read
once per process. Tests that need different values must set the environment
before the first call or call get_settings.cache_clear().

SECRET_KEY policy:
  DEBUG=true   -- a missing key is replaced by a random one (logged at
                  WARNING); tokens then die with the process.
  otherwise    -- a missing key stops startup.
  always       -- keys under 32 characters are refused. Tokens are
                  HMAC-SHA256 signed with this key.

Layer rule: core/ imports nothing from api/, auth/ or notify/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("crowdcontrol.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'crowdcontrol.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # 7 days. Every issued session token carries exp = iat + this value.
    token_expire_seconds: int = 7 * 24 * 3600
    login_rate_limit: str = "10/minute"
    # Consecutive failed logins before an account is locked. 0 disables the
    # policy; administrators can still lock accounts explicitly.
    lockout_threshold: int = 0

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    # Base address used to build activation / recovery links.
    website_address: str = "http://localhost:8000"
    notification_workers: int = 2
    notification_backlog: int = 100

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Apply the SECRET_KEY policy and sanity-check the numeric knobs."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.token_expire_seconds <= 0:
            raise ValueError("TOKEN_EXPIRE_SECONDS must be positive.")
        if self.notification_workers < 1 or self.notification_backlog < 1:
            raise ValueError("Notification workers and backlog must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings."""
    return Settings()
