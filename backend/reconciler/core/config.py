"""Application configuration using Pydantic BaseSettings"""
import logging
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("config")

PERSISTENCE_BACKENDS = ("none", "redis", "sql")

# Stripe refuses list pages larger than this
STRIPE_MAX_PAGE_SIZE = 100


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Runtime
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ID: str = ""

    # Metadata field on the Stripe subscription that carries our user id
    SUBSCRIPTION_METADATA_KEY: str = "user_id"

    # Bounded provider scan
    SUBSCRIPTION_SCAN_PAGE_SIZE: int = 100
    SUBSCRIPTION_SCAN_MAX_PAGES: int = 1

    # Timeouts for external calls (seconds)
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    PERSISTENCE_TIMEOUT_SECONDS: float = 3.0

    # Durable record store: none | redis | sql
    PERSISTENCE_BACKEND: str = "none"
    REDIS_URL: str = "redis://localhost:6379/0"
    DATABASE_URL: str = "sqlite:///./subscriptions.db"

    # Skip webhook events older than the last applied one (off by default)
    WEBHOOK_ORDERING_GUARD: bool = False

    # Diagnostic routes (manual override, debug listing, metadata repair)
    ENABLE_DIAGNOSTIC_ROUTES: Optional[bool] = None
    ADMIN_API_TOKEN: str = ""

    # OpenTelemetry
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "subscription-reconciler"
    OTEL_ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("PERSISTENCE_BACKEND")
    @classmethod
    def check_persistence_backend(cls, v):
        v = v.strip().lower()
        if v not in PERSISTENCE_BACKENDS:
            raise ValueError(f"PERSISTENCE_BACKEND must be one of {', '.join(PERSISTENCE_BACKENDS)}")
        return v

    @field_validator("SUBSCRIPTION_SCAN_PAGE_SIZE")
    @classmethod
    def check_page_size(cls, v):
        if v < 1:
            raise ValueError("SUBSCRIPTION_SCAN_PAGE_SIZE must be positive")
        if v > STRIPE_MAX_PAGE_SIZE:
            logger.warning(f"SUBSCRIPTION_SCAN_PAGE_SIZE={v} exceeds Stripe's limit, using {STRIPE_MAX_PAGE_SIZE}")
            return STRIPE_MAX_PAGE_SIZE
        return v

    @field_validator("SUBSCRIPTION_SCAN_MAX_PAGES")
    @classmethod
    def check_max_pages(cls, v):
        if v < 1:
            raise ValueError("SUBSCRIPTION_SCAN_MAX_PAGES must be at least 1")
        return v

    @property
    def diagnostic_routes_enabled(self) -> bool:
        if self.ENABLE_DIAGNOSTIC_ROUTES is not None:
            return self.ENABLE_DIAGNOSTIC_ROUTES
        return self.ENVIRONMENT in ("development", "test")


# Create global settings instance
settings = Settings()
