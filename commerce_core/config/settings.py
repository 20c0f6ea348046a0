"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

FAKE_GATEWAY_ADAPTER = "commerce_core.integrations.fake_gateway:FakeGateway"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis connection URL for the idempotency cache tier"
    )

    # Application Configuration
    app_name: str = Field(default="commerce-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log rendering: json or console")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Orders and pricing
    default_currency: str = Field(default="INR", description="Currency for new orders")
    tax_rate_bps: int = Field(
        default=1800, ge=0, description="Tax rate in basis points (1800 = 18% GST)"
    )
    shipping_rates: Dict[str, int] = Field(
        default_factory=lambda: {"standard": 0, "express": 15000, "overnight": 30000},
        description="Shipping method rates in minor units",
    )
    discount_rules: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description='Discount codes, e.g. {"WELCOME10": {"kind": "percentage", "value": 1000}}',
    )

    # Payment Processing
    payment_gateway_adapter: str = Field(
        default=FAKE_GATEWAY_ADAPTER,
        description="Gateway adapter import path (module:Class)",
    )
    gateway_timeout_seconds: float = Field(
        default=15.0, gt=0, description="Timeout for a single gateway call (seconds)"
    )
    gateway_lookup_attempts: int = Field(
        default=3, ge=1, description="Attempts when querying the gateway for an unknown outcome"
    )
    gateway_callback_secret: str = Field(
        default="", description="Shared secret for signed gateway callbacks"
    )
    payment_retry_max_attempts: int = Field(
        default=3, ge=1, description="Max retry attempts for a failed payment"
    )
    payment_retry_delay_minutes: int = Field(
        default=30, ge=0, description="Minimum age of a failed payment before the sweep retries it"
    )
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )
    idempotency_lease_seconds: int = Field(
        default=60, description="How long an in-flight idempotency claim blocks other callers"
    )

    # Webhook delivery
    webhook_backoff_base_seconds: float = Field(
        default=30.0, gt=0, description="Base delay for delivery retry backoff (seconds)"
    )
    webhook_backoff_cap_seconds: float = Field(
        default=3600.0, gt=0, description="Upper bound for delivery retry backoff (seconds)"
    )
    webhook_claim_lease_seconds: int = Field(
        default=120, description="How long a claimed delivery is reserved for one worker"
    )
    webhook_batch_size: int = Field(default=50, description="Deliveries claimed per sweep")
    webhook_poll_interval_seconds: float = Field(
        default=5.0, description="Dispatcher polling interval (seconds)"
    )
    webhook_response_body_limit: int = Field(
        default=10000, description="Max stored response body characters"
    )
    webhook_user_agent: str = Field(
        default="commerce-core-webhooks/1.0", description="User-Agent for outbound deliveries"
    )

    # Reconciliation
    reconciliation_interval_seconds: float = Field(
        default=300.0, description="Reconciliation worker interval (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in ("json", "console"):
            raise ValueError("Invalid log format. Must be json or console")
        return v.lower()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    @model_validator(mode="after")
    def validate_gateway_for_environment(self) -> "Settings":
        """Refuse to start a production deployment against the in-memory gateway."""
        if self.is_production and self.payment_gateway_adapter == FAKE_GATEWAY_ADAPTER:
            raise ValueError("PAYMENT_GATEWAY_ADAPTER must name a real adapter in production")
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
