"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. ldap_admin_dn -> LDAP_ADMIN_DN).

  Resolved config objects: the directory client never reads Settings itself.
      directory_config() hands it a frozen DirectoryConfig at construction
      time, so the client can be built (and tested) without ambient state.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key weakens every session.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may import auth/ value types only;
it never imports api/ or audit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from auth.directory import DirectoryConfig

logger = logging.getLogger("recruitauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'recruitauth.db'}"


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
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # One TTL for every login path. Tokens cannot be revoked server-side,
    # so this stays short.
    session_ttl_seconds: int = Field(default=3600, gt=0)
    session_cookie_name: str = "access_token"
    session_same_site: Literal["lax", "strict"] = "lax"

    # ------------------------------------------------------------------
    # Login policy
    # ------------------------------------------------------------------

    allowed_email_domain: str = "sunrise.net"
    login_rate_limit: str = "10/minute"
    registration_enabled: bool = True
    min_password_length: int = Field(default=8, ge=1)
    # Retry through the local path when the directory is unreachable.
    auth_fallback_to_local: bool = True
    # Which path verifies the current password on /set-local-password.
    password_authority: Literal["ldap", "local"] = "ldap"

    # ------------------------------------------------------------------
    # Directory (LDAP)
    # ------------------------------------------------------------------

    ldap_url: str = "ldap://idm.lab.local"
    ldap_base_dn: str = "dc=lab,dc=local"
    ldap_users_dn: str = "cn=users,cn=compat,dc=lab,dc=local"
    ldap_admin_dn: str = ""
    ldap_admin_password: str = ""
    ldap_admin_group: str = "admins"
    ldap_group_match: Literal["substring", "cn"] = "substring"
    ldap_object_class: str = "person"
    ldap_uid_attribute: str = "uid"
    ldap_mail_attribute: str = "mail"
    ldap_timeout_seconds: float = Field(default=5.0, gt=0)
    ldap_probe_timeout_seconds: float = Field(default=3.0, gt=0)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    def directory_config(self) -> DirectoryConfig:
        """Return the fully-resolved configuration for the directory client."""
        return DirectoryConfig(
            url=self.ldap_url,
            base_dn=self.ldap_base_dn,
            users_dn=self.ldap_users_dn,
            service_dn=self.ldap_admin_dn,
            service_password=self.ldap_admin_password,
            group_match=self.ldap_group_match,
            object_class=self.ldap_object_class,
            uid_attribute=self.ldap_uid_attribute,
            mail_attribute=self.ldap_mail_attribute,
            timeout_seconds=self.ldap_timeout_seconds,
            probe_timeout_seconds=self.ldap_probe_timeout_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
