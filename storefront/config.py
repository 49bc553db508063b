"""Storefront fulfillment service configuration."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings (STRIPE_WEBHOOK_SECRET, DATABASE_URL, ...)."""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance: int = 300

    # Printful fulfillment (optional; without a key paid orders go to error/not_configured)
    printful_api_key: str = ""
    printful_store_id: str = ""
    printful_base_url: str = "https://api.printful.com"
    printful_timeout: float = 5.0

    # Order store: "postgres" or "memory"
    order_store: str = "postgres"
    database_url: str = ""
    database_timeout: float = 5.0

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


def get_settings() -> Settings:
    return Settings()
