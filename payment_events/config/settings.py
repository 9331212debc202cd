"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The webhook secret, database URL and notification credentials are
    required: a missing value fails validation when the app is created,
    never on an individual request.
    """

    # Stripe Configuration
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_signature_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a signed webhook timestamp"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (optional fast path for the idempotency ledger)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    redis_processed_ttl_seconds: int = Field(
        default=86400 * 7, description="TTL of processed-event markers in Redis"
    )

    # Notification channel (Resend)
    resend_api_key: str = Field(..., description="Resend API key")
    resend_api_url: str = Field(
        default="https://api.resend.com/emails", description="Resend email endpoint"
    )
    notification_from_address: str = Field(..., description="Sender address for emails")
    notification_timeout_seconds: float = Field(
        default=5.0, description="Upper bound on a single notification dispatch"
    )
    notification_max_attempts: int = Field(
        default=2, description="Send attempts per notification (1 disables retry)"
    )

    # Idempotency ledger
    ledger_stale_after_seconds: int = Field(
        default=300, description="Age after which a pending event may be re-admitted"
    )
    ledger_monitor_interval_seconds: int = Field(
        default=60, description="Polling interval of the ledger monitor worker"
    )

    # Rewards
    commission_rate_percent: float = Field(
        default=10.0, description="Affiliate commission as a percentage of order amount"
    )
    points_unit_minor: int = Field(
        default=100, description="Order amount (minor units) worth one loyalty point"
    )

    # Application Configuration
    app_name: str = Field(default="payment-events", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "stripe_webhook_secret", "database_url", "resend_api_key", "notification_from_address"
    )
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty credentials; an empty env var is as fatal as a missing one."""
        if not v or not v.strip():
            raise ValueError("Value must not be empty")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("commission_rate_percent")
    @classmethod
    def validate_commission_rate(cls, v: float) -> float:
        """Commission rate must be a percentage."""
        if v < 0 or v > 100:
            raise ValueError("Commission rate must be between 0 and 100")
        return v

    @field_validator("points_unit_minor", "notification_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate strictly positive integers."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def uses_sqlite(self) -> bool:
        """SQLite does not accept pool sizing arguments."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Settings from the environment, loaded once per process.
    """
    return Settings()
