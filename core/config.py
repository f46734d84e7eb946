"""
core/config.py -- Centralized configuration for Gatehouse via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead, or accept the
values as constructor arguments (the engine classes do, so they stay
embeddable without a global settings object).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. crypto_secret -> CRYPTO_SECRET). List fields such as
      EXTRA_RESOURCES are given as JSON (e.g. '["billing", "reports"]').

  @model_validator(mode="after"): DEBUG-conditional secret handling. Dev mode
      generates missing secrets with a warning, production mode refuses to
      start without them.

Security notes:
  SECRET_KEY signs every JWT; shorter than 32 chars is rejected.
  CRYPTO_SECRET derives the AES key for stored client secrets; shorter than
  16 chars is rejected. Losing CRYPTO_SECRET makes every stored client secret
  unrecoverable, so it must be persisted outside the process in production.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")


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
    # below either generates a dev value or raises, so callers never see "".
    secret_key: str = ""
    crypto_secret: str = ""
    database_url: str = "sqlite:///gatehouse_auth.db"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # 24 hours, matching the lifetime short-lived tokens have always had.
    token_expire_seconds: int = 86400

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    extra_resources: list[str] = []
    main_application_name: str = "OAUTH2_main_application"
    client_id_suffix: str = "::client.app"
    credentials_file: str = "credentials.txt"
    reseed_when_no_admin: bool = True

    # ------------------------------------------------------------------
    # Login protection
    # ------------------------------------------------------------------

    max_failed_login_attempts: int = 5
    lockout_cooldown_minutes: int = 10
    lockout_window_minutes: int = 15
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the SECRET_KEY / CRYPTO_SECRET policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Tokens and stored client secrets will not survive a restart.

        Production mode: refuse to start if either secret is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if not self.crypto_secret:
            if self.debug:
                self.crypto_secret = secrets.token_hex(16)
                logger.warning(
                    "Using auto-generated CRYPTO_SECRET. Stored client secrets will be unreadable after restart."
                )
            else:
                raise ValueError("CRYPTO_SECRET is required in production mode.")
        if len(self.crypto_secret) < 16:
            raise ValueError("CRYPTO_SECRET must be at least 16 characters.")

        if self.max_failed_login_attempts < 1:
            raise ValueError("MAX_FAILED_LOGIN_ATTEMPTS must be at least 1.")
        if self.lockout_window_minutes < 1:
            raise ValueError("LOCKOUT_WINDOW_MINUTES must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
