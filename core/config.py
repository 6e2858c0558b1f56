"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ECVMS happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Settings
      are process-wide and never mutated after startup.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY).

  @model_validator(mode="after"): Cross-field validation of the signing key.
      Dev mode generates a key with a warning, production mode refuses to
      start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Session signatures
  and client fingerprints are both keyed by it.

  A missing SECRET_KEY outside DEBUG raises ConfigurationError, which is not a
  ValueError subclass, so pydantic lets it propagate unchanged to the caller.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
import time
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ecvms.config")

SESSION_MAX_AGE_SECONDS = 8 * 60 * 60


class ConfigurationError(RuntimeError):
    """Fatal startup misconfiguration (e.g. no signing key). Never per-request."""


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file, as long as DEBUG=true or a
    SECRET_KEY is supplied.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_max_age_seconds: int = SESSION_MAX_AGE_SECONDS
    fingerprint_policy: Literal["log_only", "reject"] = "log_only"

    # ------------------------------------------------------------------
    # User directory
    # ------------------------------------------------------------------

    # Empty string means "use the store's default SQLite file".
    auth_db_url: str = ""
    bcrypt_rounds: int = 12

    # Bootstrap seeds. Hashes are bcrypt strings, never plaintext.
    auth_users_json: str = ""
    admin_username: str = "admin"
    admin_password_hash: str = ""
    staff_username: str = "staff"
    staff_password_hash: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    login_rate_limit: str = "10/minute"
    # Key the login limit on X-Forwarded-For / X-Real-IP instead of the socket
    # peer. Only enable behind a reverse proxy that overwrites those headers.
    trust_proxy_headers: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart.

        Production mode: refuse to start without a key.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ConfigurationError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ConfigurationError("SECRET_KEY must be at least 32 characters.")
        if self.session_max_age_seconds <= 0 or self.session_max_age_seconds > SESSION_MAX_AGE_SECONDS:
            raise ConfigurationError(f"SESSION_MAX_AGE_SECONDS must be between 1 and {SESSION_MAX_AGE_SECONDS}.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ConfigurationError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
