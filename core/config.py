"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Keyturn happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Two layers:
  Settings (pydantic-settings BaseSettings): reads environment variables and an
      optional .env file. Field names map to env var names (jwt_secret ->
      JWT_SECRET). Type coercion and validation are built in. get_settings()
      caches one instance per process via lru_cache.

  AuthConfig (frozen dataclass): the immutable value handed to the auth core.
      Built once from Settings at startup with AuthConfig.from_settings() and
      passed down explicitly. The core never reads Settings itself.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. JWT HMAC signing
       relies on key entropy -- a short key weakens every token.

  [M7] Outside DEBUG mode a missing JWT_SECRET or JWT_REFRESH_SECRET is a hard
       startup failure. The gap surfaces at process start, not on the first
       login.

  The access and refresh secrets must differ. With equal secrets an access
  token would verify under the refresh context and only the "kind" claim
  would stand between it and a replay.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyturn.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'keyturn_auth.db'}"

_MIN_SECRET_LENGTH = 32

# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")

_DURATION_UNITS: dict[str, str] = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


def parse_duration(value: str) -> timedelta:
    """Parse a token lifetime of the form "<N>h" or "<N>d" into a timedelta.

    Seconds ("30s") and minutes ("15m") are accepted as well. Zero, negative,
    and unit-less values raise ValueError.
    """
    match = _DURATION_RE.match(value or "")
    if match is None:
        raise ValueError(f"Invalid duration {value!r}; expected <N>s, <N>m, <N>h or <N>d.")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"Duration must be positive, got {value!r}.")
    return timedelta(**{_DURATION_UNITS[match.group(2)]: amount})


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_access_expires_in: str = "24h"
    jwt_refresh_expires_in: str = "7d"

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 10
    hash_soft_timeout_ms: int = 300

    # ------------------------------------------------------------------
    # HTTP boundary
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("jwt_access_expires_in", "jwt_refresh_expires_in")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        parse_duration(v)
        return v

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_rounds(cls, v: int) -> int:
        # bcrypt.gensalt() accepts 4..31
        if not 4 <= v <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return v

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M7].

        Dev mode (DEBUG=true): auto-generate each missing secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters [M6] and reject
            identical access and refresh secrets.
        """
        for field_name, env_name in (("jwt_secret", "JWT_SECRET"), ("jwt_refresh_secret", "JWT_REFRESH_SECRET")):
            value = getattr(self, field_name)
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.", env_name
                    )
                else:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field_name)) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{env_name} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different values.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Immutable auth configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningConfig:
    """One signing context: secret, token lifetime, and JWT algorithm."""

    secret: str
    expires_in: timedelta
    algorithm: str = "HS256"

    def __repr__(self) -> str:
        # Keep the secret out of logs and tracebacks.
        return f"SigningConfig(secret='***', expires_in={self.expires_in!r}, algorithm={self.algorithm!r})"


@dataclass(frozen=True)
class AuthConfig:
    """Everything the auth core needs, assembled once at process start."""

    access: SigningConfig
    refresh: SigningConfig
    bcrypt_rounds: int = 10
    hash_soft_timeout_ms: int = 300

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthConfig":
        return cls(
            access=SigningConfig(
                secret=settings.jwt_secret,
                expires_in=parse_duration(settings.jwt_access_expires_in),
            ),
            refresh=SigningConfig(
                secret=settings.jwt_refresh_secret,
                expires_in=parse_duration(settings.jwt_refresh_expires_in),
            ),
            bcrypt_rounds=settings.bcrypt_rounds,
            hash_soft_timeout_ms=settings.hash_soft_timeout_ms,
        )
