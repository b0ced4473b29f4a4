"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. master_key -> MASTER_KEY). Type coercion and validation are built
      in; dict fields such as RATE_LIMITS are read as JSON.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved from the environment.

Security notes:
  MASTER_KEY is mandatory in every mode, DEBUG included. A generated key would
  make every secret encrypted under it unrecoverable after a restart, so the
  process refuses to start instead. Keys shorter than 32 characters are
  rejected outright.

  The refresh token lifetime must be strictly longer than the access token
  lifetime; a refresh token that dies first could never be used.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import limits
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("pnit.config")

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'pnit_security.db'}"

# Production defaults. Notation is the `limits`
# library's: "<count>/<n> <unit>".
#   api      -- per authenticated API key
#   api_auth -- per client address, charged on every X-API-Key attempt
#               before the key is decrypted
_DEFAULT_RATE_LIMITS: dict[str, str] = {
    "login": "5/15 minutes",
    "register": "3/hour",
    "password_reset": "3/hour",
    "api": "100/hour",
    "api_auth": "300/hour",
}


@dataclass(frozen=True)
class RateLimitRule:
    """Parsed threshold for one endpoint: max_requests per window_seconds."""

    max_requests: int
    window_seconds: int


def parse_rate_limit(value: str) -> RateLimitRule:
    """Parse a rate string such as "5/15 minutes" into a RateLimitRule.

    Raises ValueError for strings `limits` cannot parse.
    """
    item = limits.parse(value)
    return RateLimitRule(max_requests=item.amount, window_seconds=item.get_expiry())


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field except master_key has a default, so tests only need to set
    MASTER_KEY (plus any overrides) before the first get_settings() call.
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
    # Empty string is the sentinel for "not configured"; the validator below
    # turns it into a startup failure.
    master_key: str = ""
    database_url: str = DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credentials and encryption
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    kdf_iterations: int = Field(default=100_000, ge=10_000)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    password_reset_ttl_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Lockout and rate limiting
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, ge=1)
    lockout_duration_seconds: int = Field(default=30 * 60, gt=0)
    rate_limits: dict[str, str] = Field(default_factory=lambda: dict(_DEFAULT_RATE_LIMITS))

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    max_api_keys_per_user: int = Field(default=10, ge=1)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost", "testserver"])
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost", "http://localhost:3000"])
    # Socket peers whose X-Forwarded-For / X-Real-IP headers are believed.
    # Empty: the client address is always the socket peer.
    trusted_proxies: list[str] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("rate_limits")
    @classmethod
    def validate_rate_limits(cls, value: dict[str, str]) -> dict[str, str]:
        """Fail at startup on a rate string the limiter could not apply."""
        for endpoint, rate in value.items():
            try:
                parse_rate_limit(rate)
            except ValueError as exc:
                raise ValueError(f"Invalid rate limit for {endpoint!r}: {rate!r}") from exc
        return value

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Enforce MASTER_KEY presence and the token lifetime ordering."""
        if not self.master_key:
            raise ValueError(
                "MASTER_KEY is required. Set MASTER_KEY in your environment or .env file. "
                "Generate one with: python main.py keygen"
            )
        if len(self.master_key) < 32:
            raise ValueError("MASTER_KEY must be at least 32 characters.")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be greater than ACCESS_TOKEN_TTL_SECONDS.")
        return self

    def rate_limit_rules(self) -> dict[str, RateLimitRule]:
        """Return the configured per-endpoint thresholds in parsed form."""
        return {endpoint: parse_rate_limit(rate) for endpoint, rate in self.rate_limits.items()}


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
