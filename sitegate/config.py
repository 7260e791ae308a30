"""
sitegate configuration.

Loaded from the environment (or `.env`). The pipeline takes a Settings
instance explicitly; `get_settings()` is only for the process entry point.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure defaults (must never sign cookies in production)
_INSECURE_KEYS = {
    "",
    "change_this",
    "secret",
    "default-secret-change-in-production",
}

MAX_CONTEXT_COOKIE_AGE = 60 * 60 * 24  # 24h


class Settings(BaseSettings):
    APP_ENV: Literal["development", "staging", "production"] = "production"

    # Domains
    APP_DOMAIN: str = "blooms.cc"
    APP_DOMAIN_ALIASES: list[str] = []
    SITE_DOMAIN_SUFFIX: str = ""  # empty → APP_DOMAIN
    PREVIEW_DOMAIN_SUFFIXES: list[str] = [".vercel.app", ".railway.app"]
    MAIN_APP_SCHEME: str = "https"
    TRUST_FORWARDED_HOST: bool = True
    # Proxies in front of the app that append to x-forwarded-for (0 = use the socket peer)
    TRUSTED_PROXY_COUNT: int = 0

    # Site cache
    CACHE_BACKEND: Literal["memory", "redis"] = "memory"
    CACHE_MAX_SIZE: int = 1000
    CACHE_TTL_SUBDOMAIN: int = 3600
    CACHE_TTL_CUSTOM_DOMAIN: int = 1800
    CACHE_TTL_DEVELOPMENT: int = 60
    CACHE_KEY_PREFIX: str = "site:"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Datastore (Supabase)
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    SUPABASE_ANON_KEY: str = ""
    LOOKUP_TIMEOUT_SECONDS: float = 0.3
    AUTH_TIMEOUT_SECONDS: float = 0.3

    # Security filter
    SECURITY_ENABLED: bool = True
    CORS_ALLOWED_ORIGINS: list[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = False
    CORS_MAX_AGE: int = 86400
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_REQUESTS: int = 100
    CSRF_PROTECTION: bool = False
    CSRF_COOKIE_NAME: str = "__Host-csrf-token"
    CSRF_HEADER_NAME: str = "x-csrf-token"
    FRAME_OPTIONS: str = "SAMEORIGIN"
    SECRET_KEY: str = ""

    # Context cookies
    CONTEXT_COOKIE_MAX_AGE: int = MAX_CONTEXT_COOKIE_AGE

    # Admin endpoints
    ADMIN_API_TOKEN: str = ""

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def _validate(self) -> "Settings":
        self.APP_DOMAIN = self.APP_DOMAIN.strip().lower()
        self.SITE_DOMAIN_SUFFIX = (
            self.SITE_DOMAIN_SUFFIX.strip().lower().lstrip(".") or self.APP_DOMAIN
        )
        self.APP_DOMAIN_ALIASES = [a.strip().lower() for a in self.APP_DOMAIN_ALIASES]

        if self.TRUSTED_PROXY_COUNT < 0:
            raise ValueError("TRUSTED_PROXY_COUNT must not be negative")

        if not 0 < self.CONTEXT_COOKIE_MAX_AGE <= MAX_CONTEXT_COOKIE_AGE:
            raise ValueError(
                f"CONTEXT_COOKIE_MAX_AGE must be between 1 and {MAX_CONTEXT_COOKIE_AGE} seconds"
            )

        if self.APP_ENV in ("production", "staging"):
            needs_key = self.CSRF_PROTECTION or bool(self.SECRET_KEY)
            if needs_key and (self.SECRET_KEY in _INSECURE_KEYS or len(self.SECRET_KEY) < 32):
                raise ValueError(
                    "SECRET_KEY is insecure. Set a strong random key (≥ 32 chars) "
                    "in .env or environment."
                )
        return self

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_staging(self) -> bool:
        return self.APP_ENV == "staging"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"

    @property
    def main_app_origin(self) -> str:
        return f"{self.MAIN_APP_SCHEME}://{self.APP_DOMAIN}"

    @property
    def secure_cookies(self) -> bool:
        return self.is_production


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
