"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Signing secret of the Stripe webhook endpoint",
    )
    checkout_success_url: str = Field(
        default="http://localhost:3000/billing/success",
        description="Where the user lands after a confirmed checkout",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/billing",
        description="Where Stripe sends the user when checkout is abandoned",
    )
    checkout_return_url: str = Field(
        default="http://localhost:8080/billing/checkout/complete?session_id={CHECKOUT_SESSION_ID}",
        description="Synchronous confirmation endpoint Stripe redirects to after payment",
    )
    portal_return_url: str = Field(
        default="http://localhost:3000/billing",
        description="Where the customer portal sends the user back to",
    )
    trial_period_days: int = Field(
        default=14,
        ge=0,
        le=730,
        description="Trial length requested for new subscriptions",
    )
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Maximum age of a signed webhook timestamp",
    )
    gateway_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=80,
        description="Network timeout for a single Stripe API call",
    )
    catalog_ttl_seconds: int = Field(
        default=300,
        ge=0,
        description="How long the product catalog is cached before refresh",
    )
    cas_max_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Compare-and-swap attempts before a ledger write gives up",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the webhook and checkout-return HTTP server",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
