"""Application configuration via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Merchant Billing"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 4

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "billing"
    postgres_password: str = Field(default="billing_secret")
    postgres_db: str = "merchant_billing"
    db_pool_size: int = 20
    db_max_overflow: int = 10

    @computed_field
    @property
    def database_url(self) -> str:
        """Async PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker and result backend)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @computed_field
    @property
    def redis_url(self) -> str:
        """Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Payment Gateways
    enable_stripe_gateway: bool = False
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_seconds: int = 300

    enable_payfast_gateway: bool = False
    payfast_merchant_id: Optional[str] = None
    payfast_merchant_key: Optional[str] = None
    payfast_passphrase: Optional[str] = None
    payfast_sandbox: bool = True

    enable_stcpay_gateway: bool = False
    stcpay_api_url: str = "https://api.stcpay.com.sa/v1"
    stcpay_merchant_id: Optional[str] = None
    stcpay_api_key: Optional[str] = None
    stcpay_webhook_secret: Optional[str] = None

    gateway_timeout_seconds: float = Field(default=30.0, gt=0)

    # Recurring billing
    enable_recurring_billing: bool = True
    enable_automated_dunning: bool = True
    default_dunning_attempts: int = Field(default=3, ge=1)
    default_dunning_retry_intervals_days: List[int] = [3, 5, 7]
    default_dunning_notify_customer: bool = True
    default_dunning_final_action: Literal["cancel_subscription", "mark_unpaid"] = "cancel_subscription"
    termination_after_days_suspended: int = Field(default=30, ge=1)

    # Plan changes
    proration_policy: Literal["prorated", "no_credit", "full_credit"] = "prorated"

    # Notifications
    notification_webhook_url: Optional[str] = None

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8080"]

    @field_validator("default_dunning_retry_intervals_days")
    @classmethod
    def _check_retry_intervals(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("at least one dunning retry interval is required")
        if any(days <= 0 for days in value):
            raise ValueError("dunning retry intervals must be positive day counts")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
