"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and the signing-key policy for
      asymmetric JWT algorithms.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing
       and the OAuth session cookie both rely on its entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [K1] RS256 / ES256 require a PEM private key (inline or by path). The public
       half is derived from it at key-load time, never configured separately,
       so the two cannot drift apart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatekeeper_auth.db'}"

SUPPORTED_JWT_ALGORITHMS = ("HS256", "HS384", "HS512", "RS256", "ES256")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound for acquiring a connection / waiting on a locked DB.
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    jwt_algorithm: str = "HS256"
    jwt_private_key: str = ""
    jwt_private_key_path: str = ""
    # Empty means "derive from the key material".
    jwt_key_id: str = ""
    jwt_issuer: str = "api.yourapp.com"
    jwt_audience: str = "yourapp.com"
    clock_skew_seconds: int = 0

    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    email_verification_ttl_seconds: int = 24 * 3600
    password_reset_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Accounts / RBAC
    # ------------------------------------------------------------------

    default_role: str = "Member"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # External identity providers (empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    apple_client_id: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_issuer: str = ""
    oidc_jwks_url: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    jwks_cache_seconds: int = 3600
    jwks_fetch_retries: int = 3
    jwks_fetch_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    # The revocation-ledger sweep runs hourly at this many minutes past the hour.
    ledger_purge_offset_minutes: int = 5

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_signing_config(self) -> "Settings":
        """Reject unsupported algorithms and asymmetric setups without a key [K1]."""
        self.jwt_algorithm = self.jwt_algorithm.upper()
        if self.jwt_algorithm not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {', '.join(SUPPORTED_JWT_ALGORITHMS)}.")
        if not self.jwt_algorithm.startswith("HS") and not (self.jwt_private_key or self.jwt_private_key_path):
            raise ValueError(f"{self.jwt_algorithm} requires JWT_PRIVATE_KEY or JWT_PRIVATE_KEY_PATH (PEM).")
        if not 0 <= self.ledger_purge_offset_minutes <= 59:
            raise ValueError("LEDGER_PURGE_OFFSET_MINUTES must be between 0 and 59.")
        return self

    def load_private_key_pem(self) -> str:
        """Return the configured PEM private key, reading the file if a path was given."""
        if self.jwt_private_key:
            return self.jwt_private_key
        return Path(self.jwt_private_key_path).read_text(encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
