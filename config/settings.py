"""
Configuration settings for the application
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Billing provider names
PROVIDER_MOCK = "mock"
PROVIDER_STRIPE = "stripe"

# Subscription storage backends
STORE_MEMORY = "memory"
STORE_DATABASE = "database"

LOCAL_ENVIRONMENTS = {"development", "test", "local"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")

    # Billing configuration
    billing_provider: str = Field(default=PROVIDER_MOCK, alias="BILLING_PROVIDER")
    billing_store: str = Field(default=STORE_MEMORY, alias="BILLING_STORE")
    billing_mock_checkout_url: Optional[str] = Field(default=None, alias="BILLING_MOCK_CHECKOUT_URL")
    billing_mock_portal_url: Optional[str] = Field(default=None, alias="BILLING_MOCK_PORTAL_URL")

    # Stripe webhook configuration
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE_SECONDS")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")

    # Rate limiting (fixed windows per client ip and path)
    rate_limit_max_requests: int = Field(default=60, alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.env) and settings.env.lower() == "production"


def is_local_environment() -> bool:
    """True when demo identity headers may be trusted (development, test, local)."""
    return bool(settings.env) and settings.env.lower() in LOCAL_ENVIRONMENTS
