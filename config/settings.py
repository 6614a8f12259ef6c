"""HandFull Billing – Application Configuration.

Pydantic Settings, loaded from a .env file or environment variables.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000
    public_url: str = "http://localhost:3000"  # Checkout success/cancel + portal return base
    cors_allowed_origins: str = "http://localhost:3000"

    # --- Database ---
    database_url: str = ""

    # --- Auth (session tokens issued by the account service) ---
    auth_secret: str = "change-me-long-random-secret"
    auth_token_ttl_hours: int = 12

    # --- Stripe ---
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_percentage_transaction: Decimal = Decimal("2.9")
    stripe_additional_transaction_fee: Decimal = Decimal("0.30")
    checkout_currency: str = "usd"
    checkout_min_amount: Decimal = Decimal("1")

    # --- Cost model (slightly inflated from actual hosting costs) ---
    cost_per_request: Decimal = Decimal("0.0001")
    cost_per_gb_month: Decimal = Decimal("0.03")
    cost_per_active_day: Decimal = Decimal("0.005")
    monthly_db_base_cost: Decimal = Decimal("0.15")
    usage_moderate_threshold: Decimal = Decimal("0.25")
    usage_heavy_threshold: Decimal = Decimal("1.00")

    # --- Metering ---
    metering_queue_size: int = 1000
    metering_workers: int = 1

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
