"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TechPacker happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Implements the DEBUG-conditional signing
      key logic: dev mode generates keys with a warning, production mode
      refuses to start without them.

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       REFRESH_SECRET_KEY is a hard startup failure.

  [M8] Access and refresh tokens must be signed with different keys so one
       kind can never be replayed as the other.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, audit/, documents/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("techpacker.config")

_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{Path(__file__).resolve().parent.parent / 'techpacker.db'}"


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
    refresh_secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    store_max_retries: int = 5

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    two_factor_token_expire_seconds: int = 15 * 60
    bcrypt_rounds: int = 10

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    two_factor_code_ttl_seconds: int = 10 * 60
    two_factor_max_attempts: int = 5

    # ------------------------------------------------------------------
    # Cache (optional accelerator -- "none" is a legal production setting)
    # ------------------------------------------------------------------

    cache_backend: Literal["redis", "memory", "none"] = "none"
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl_short: int = 300

    # ------------------------------------------------------------------
    # Email (two-factor code dispatch)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = ""
    email_from_name: str = "TechPacker"

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_queue_size: int = 1000

    # ------------------------------------------------------------------
    # Rate limiting / registration
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    two_factor_verify_rate_limit: str = "10/minute"
    # Each resend restarts the attempt counter.
    two_factor_resend_rate_limit: str = "3/minute"
    rate_limit_enabled: bool = True
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # First-run bootstrap: when both are set and the identity table is
    # empty, startup provisions this admin account.
    # ------------------------------------------------------------------

    admin_email: str = ""
    admin_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_keys(self) -> "Settings":
        """Enforce the signing key policy [M6][M7][M8].

        Dev mode (DEBUG=true): auto-generate random keys with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.
        """
        for field_name in ("secret_key", "refresh_secret_key"):
            value = getattr(self, field_name)
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Tokens will not persist across restarts.",
                        field_name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field_name)) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        if self.two_factor_max_attempts < 1:
            raise ValueError("TWO_FACTOR_MAX_ATTEMPTS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
