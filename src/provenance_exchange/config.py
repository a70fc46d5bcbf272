"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting has the wrong type, the app fails fast with a
clear error message.

Usage:
    from provenance_exchange.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Provenance Exchange."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database ---
    # Leave empty to keep records in the bounded in-memory store.
    database_url: str = ""
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False
    record_store_capacity: int = 10_000

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Marketplace rules ---
    listing_duration_hours: int = 48
    bid_ttl_hours: int = 24
    return_window_hours: int = 72
    counteroffer_limit: int = 3
    cancellation_fee: Decimal = Decimal("45")
    flat_shipping_cost: Decimal = Decimal("25")
    return_shipping_cost: Decimal = Decimal("25")
    insurance_rate: Decimal = Decimal("0.02")

    # --- Authentication partners ---
    poll_interval_seconds: float = 30.0
    partner_timeout_seconds: float = 30.0
    partner_retry_attempts: int = 3
    partner_retry_backoff_seconds: float = 1.0
    # "{partner_id}" is substituted per partner; leave empty to simulate partners.
    partner_base_url_template: str = ""
    partner_api_key: str = ""

    # --- Payments ---
    payment_simulate: bool = True
    payment_retry_attempts: int = 3

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def listing_duration(self) -> timedelta:
        return timedelta(hours=self.listing_duration_hours)

    @property
    def bid_ttl(self) -> timedelta:
        return timedelta(hours=self.bid_ttl_hours)

    @property
    def return_window(self) -> timedelta:
        return timedelta(hours=self.return_window_hours)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
