"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: Optional[str] = Field(
        default=None, description="Stripe secret API key (sk_test_...)"
    )
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_payment_method: str = Field(
        default="pm_card_visa",
        description="Payment method attached to purchase/authorize intents",
    )

    # Gateway Calls
    gateway_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for a single gateway action (seconds)"
    )
    gateway_retry_max_attempts: int = Field(
        default=3, ge=1, description="Attempts for transient gateway errors"
    )
    gateway_retry_base_delay: float = Field(
        default=0.5, ge=0, description="Base delay for retry backoff (seconds)"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Failures before the gateway circuit opens"
    )
    circuit_breaker_timeout: int = Field(
        default=60, description="Seconds before an open circuit lets a trial call through"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payment_lifecycle.db",
        description="Database connection URL (postgresql+asyncpg://... in production)",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for cross-process order locks"
    )
    order_lock_timeout: int = Field(default=60, description="Order lock expiry (seconds)")

    # Application Configuration
    app_name: str = Field(default="payment-lifecycle", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the Stripe secret key is a test or live key."""
        if v is None:
            return v
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
        return bool(self.stripe_secret_key) and self.stripe_secret_key.startswith("sk_test_")

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
