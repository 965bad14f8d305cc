"""
core/config.py -- TokenKeeper settings, read once from the environment.

Every environment lookup goes through Settings. Code that needs a value calls
get_settings(); nothing reads os.environ on its own.

Settings is a pydantic-settings model: each field is filled from the env var
of the same name (upper-cased) or from .env, coerced and range-checked.
get_settings() is cached, so the process sees one Settings object.

SECRET_KEY rules (checked in validate_secret_key):
  [M6] Under 32 characters is refused. It keys the HMAC over every stored
       token digest.
  [M7] Missing with DEBUG off is a startup error. With DEBUG on a throwaway
       key is generated, and tokens minted with it die with the process.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenkeeper.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'tokenkeeper.db'}"


class Settings(BaseSettings):
    """Runtime configuration. Every field has a default except the effective SECRET_KEY."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces it or fails.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Prepended to every generated secret so leaked credentials are easy to
    # spot for secret scanners (e.g. "tk_"). Empty disables the prefix.
    token_prefix: str = ""
    # Default lifetime for tokens minted without an explicit ttl.
    # None means tokens never expire unless the caller asks for it.
    token_expiration_minutes: Optional[int] = Field(default=None, ge=0)
    ability_update_attempts: int = Field(default=3, ge=1)

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------

    prune_expired_after_hours: int = Field(default=24, ge=0)
    prune_interval_seconds: int = Field(default=3600, ge=1)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    token_create_rate_limit: str = "30/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY [M6] [M7]."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("DEBUG is on and SECRET_KEY is unset; using a random key for this process")
            else:
                raise ValueError("SECRET_KEY must be set (or run with DEBUG=true for a throwaway key).")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Cached Settings instance. Tests that change env vars must call get_settings.cache_clear()."""
    return Settings()
