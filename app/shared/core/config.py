from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for Dompet billing.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Dompet"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    API_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:5173"
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    ALLOW_TEST_DATABASE_URL: bool = False
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Auth
    JWT_SECRET: Optional[str] = None
    JWT_AUDIENCE: str = "authenticated"

    # Rate limiting
    RATELIMIT_ENABLED: bool = True
    RATELIMIT_STORAGE_URI: str = "memory://"

    # Billing (Xendit)
    BILLING_CURRENCY: str = "IDR"
    XENDIT_SECRET_KEY: Optional[str] = None
    XENDIT_WEBHOOK_TOKEN: Optional[str] = None
    XENDIT_BASE_URL: str = "https://api.xendit.co"
    XENDIT_SUCCESS_URL: Optional[str] = None
    XENDIT_FAILURE_URL: Optional[str] = None
    XENDIT_INVOICE_DURATION_SECONDS: int = 86400  # 24 hours
    XENDIT_VA_EXPIRY_HOURS: int = 24
    XENDIT_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_database_config()
        self._validate_billing_config()
        return self

    def _validate_core_secrets(self) -> None:
        if not self.JWT_SECRET or len(self.JWT_SECRET) < 32:
            raise ValueError("JWT_SECRET must be set to a secure value (>= 32 chars).")

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_billing_config(self) -> None:
        if self.XENDIT_INVOICE_DURATION_SECONDS <= 0:
            raise ValueError("XENDIT_INVOICE_DURATION_SECONDS must be > 0.")
        if self.XENDIT_VA_EXPIRY_HOURS <= 0:
            raise ValueError("XENDIT_VA_EXPIRY_HOURS must be > 0.")
        if self.is_production:
            # Webhooks are unauthenticatable without the shared token.
            if not self.XENDIT_SECRET_KEY:
                raise ValueError("XENDIT_SECRET_KEY is required in production.")
            if not self.XENDIT_WEBHOOK_TOKEN:
                raise ValueError("XENDIT_WEBHOOK_TOKEN is required in production.")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}

    @property
    def success_redirect_url(self) -> str:
        return self.XENDIT_SUCCESS_URL or f"{self.FRONTEND_URL.rstrip('/')}/payment/success"

    @property
    def failure_redirect_url(self) -> str:
        return self.XENDIT_FAILURE_URL or f"{self.FRONTEND_URL.rstrip('/')}/payment/failed"
