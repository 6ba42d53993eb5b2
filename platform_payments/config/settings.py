"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    gateway_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Per-call timeout for gateway requests (seconds)"
    )

    # Store Configuration
    store_backend: str = Field(default="memory", description="Payment store backend (memory/redis)")
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    redis_key_prefix: str = Field(default="payments", description="Prefix for all Redis keys")
    lock_timeout_seconds: int = Field(
        default=300, gt=0, description="Per-booking and per-payment lock timeout (seconds)"
    )
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook event ids are remembered"
    )

    # Retry Policy
    payment_retry_max_attempts: int = Field(default=3, ge=1, description="Max gateway call attempts")
    payment_retry_base_delay: float = Field(
        default=1.0, ge=0, description="Base delay for retry backoff (seconds)"
    )
    payment_retry_max_delay: float = Field(
        default=30.0, ge=0, description="Upper bound for a single backoff wait (seconds)"
    )
    payment_retry_jitter: float = Field(
        default=0.5, ge=0, description="Maximum random jitter added to each wait (seconds)"
    )

    # Money
    default_currency: str = Field(default="gbp", description="Currency for booking payments")
    platform_fee_percent: float = Field(
        default=0.029, ge=0, lt=1, description="Percentage component of the platform fee"
    )
    platform_fee_flat: int = Field(
        default=30, ge=0, description="Flat component of the platform fee (minor units)"
    )
    default_deposit_percentage: float = Field(
        default=0.2, gt=0, lt=1, description="Deposit share used when none is supplied"
    )
    minimum_charge_amount: int = Field(
        default=50, ge=1, description="Smallest amount the gateway accepts (minor units)"
    )

    # Onboarding and Reports
    frontend_url: str = Field(
        default="http://localhost:3000", description="Base URL for onboarding return links"
    )
    reports_dir: str = Field(default="reports", description="Directory report artifacts are written to")
    reports_base_url: str = Field(
        default="http://localhost:8000/reports", description="Public base URL for report downloads"
    )

    # Application Configuration
    app_name: str = Field(default="platform-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Reconciliation
    reconciliation_hour: int = Field(
        default=2, ge=0, le=23, description="Hour of day the reconciliation worker runs"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key has a known prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Only the in-memory and Redis stores exist."""
        if v.lower() not in ("memory", "redis"):
            raise ValueError("store_backend must be 'memory' or 'redis'")
        return v.lower()

    @model_validator(mode="after")
    def validate_lock_timeout(self) -> "Settings":
        """
        A store lock must outlive the work done while holding it.

        Lock holders make at most two retried gateway calls in sequence.
        """
        required = 2 * self.gateway_retry_budget_seconds
        if self.lock_timeout_seconds <= required:
            raise ValueError(
                f"lock_timeout_seconds ({self.lock_timeout_seconds}) must exceed "
                f"{required:.1f}s, two gateway calls with all retries"
            )
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def gateway_retry_budget_seconds(self) -> float:
        """Longest one retried gateway call can take, with every attempt timing out."""
        waits = (self.payment_retry_max_attempts - 1) * (
            self.payment_retry_max_delay + self.payment_retry_jitter
        )
        return self.payment_retry_max_attempts * self.gateway_timeout_seconds + waits


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
