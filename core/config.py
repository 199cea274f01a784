"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for MedPortal happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance at construction time (the auth core does the
latter so tests can build services with their own thresholds).

Shape:
  Settings is a pydantic-settings BaseSettings. Each field is read from the
  env var of the same name in upper case (session_ttl_seconds ->
  SESSION_TTL_SECONDS) or from .env. get_settings() caches one instance;
  two model validators run after field parsing and hold the SECRET_KEY
  rule and the numeric bounds.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session tokens
       are stored as HMAC-SHA256(SECRET_KEY, token) -- a short key weakens that.

  [M7] Without DEBUG, an unset SECRET_KEY aborts startup. A generated key
       would orphan every stored session hash on the next restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or clinic/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("medportal.config")


class Settings(BaseSettings):
    """Every MedPortal knob. Defaults are complete, so Settings() works without a .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; check_secret_key replaces or rejects it.
    secret_key: str = ""
    log_level: str = "INFO"

    # Empty means "SQLite file next to auth/store.py".
    database_url: str = ""

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    bind_address: str = "127.0.0.1"
    bind_port: int = 8000
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    # Upper bound for a mediated call. Clients may ask for less via the
    # X-Request-Timeout header, never more.
    request_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Sessions and credentials
    # ------------------------------------------------------------------

    session_ttl_seconds: int = 3600

    password_min_length: int = 8
    password_require_upper: bool = True
    password_require_symbol: bool = True
    # Same symbol set the portal's sign-up form has always enforced.
    password_symbols: str = "@$!%*?&"

    # Argon2id cost parameters. Defaults follow argon2-cffi's RFC 9106 low
    # memory profile; tests lower them to keep the suite fast.
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536  # KiB
    argon2_parallelism: int = 4

    lockout_threshold: int = 5
    lockout_backoff_seconds: int = 900

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    # Optional path of a JSON-lines mirror of the audit log. The database
    # table is always written; the file is an additional append-only sink.
    audit_sink: str = ""

    # ------------------------------------------------------------------
    # Storage resilience
    # ------------------------------------------------------------------

    storage_retry_attempts: int = 3
    storage_retry_base_delay: float = 0.05
    storage_retry_max_delay: float = 1.0

    # ------------------------------------------------------------------
    # Rate limiting and registration
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    bulk_max_targets: int = 1000
    allow_admin_self_demotion: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def check_secret_key(self) -> "Settings":
        """SECRET_KEY keys every stored session hash [M6][M7].

        With DEBUG=true a missing key is replaced by a random one, which
        invalidates all sessions on restart. Without DEBUG a missing key
        stops startup. A key under 32 characters is refused either way.
        """
        if self.secret_key:
            if len(self.secret_key) < 32:
                raise ValueError(f"SECRET_KEY is {len(self.secret_key)} characters; at least 32 are required.")
            return self
        if not self.debug:
            raise ValueError("SECRET_KEY is not set. Configure it in the environment or .env, or run with DEBUG=true.")
        self.secret_key = secrets.token_hex(32)
        logger.warning("No SECRET_KEY configured; generated a throwaway key. Existing sessions die with this process.")
        return self

    @model_validator(mode="after")
    def validate_bounds(self) -> "Settings":
        """Reject configurations that would make the lockout or session machines meaningless."""
        if self.session_ttl_seconds <= 0:
            raise ValueError("SESSION_TTL_SECONDS must be positive.")
        if self.lockout_threshold < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1.")
        if self.lockout_backoff_seconds < 0:
            raise ValueError("LOCKOUT_BACKOFF_SECONDS must not be negative.")
        if self.password_min_length < 1:
            raise ValueError("PASSWORD_MIN_LENGTH must be at least 1.")
        if self.password_require_symbol and not self.password_symbols:
            raise ValueError("PASSWORD_SYMBOLS must not be empty when PASSWORD_REQUIRE_SYMBOL is set.")
        if self.storage_retry_attempts < 1:
            raise ValueError("STORAGE_RETRY_ATTEMPTS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings. Tests that change env vars call get_settings.cache_clear()."""
    return Settings()
