"""Billing core configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

APP_STORE_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APP_STORE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"


class BillingEnv(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class BillingSettings(BaseSettings):
    """Billing settings loaded from environment variables with BILLING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: BillingEnv = BillingEnv.SANDBOX
    default_currency: str = "usd"

    # Stripe
    stripe_secret_key: SecretStr = SecretStr("")
    stripe_webhook_secret: SecretStr = SecretStr("")
    stripe_webhook_tolerance: int = 300

    # Stripe price ids per plan.  Every id listed here must map to a tier.
    price_discover_monthly: str = "price_discover_monthly"
    price_discover_yearly: str = "price_discover_yearly"
    price_connect_monthly: str = "price_connect_monthly"
    price_connect_yearly: str = "price_connect_yearly"
    price_community_monthly: str = "price_community_monthly"
    price_community_yearly: str = "price_community_yearly"

    # App Store
    apple_shared_secret: SecretStr = SecretStr("")
    apple_bundle_id: str = "com.kindred.app"
    apple_root_certificate_path: Path | None = None

    # Outbound provider calls
    provider_timeout: float = 10.0

    # Optimistic-lock retries around a single apply()
    apply_max_retries: int = 3
    apply_retry_base_delay: float = 0.05

    @field_validator("default_currency")
    @classmethod
    def _normalise_currency(cls, v: str) -> str:
        v = v.strip().lower()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"default_currency must be a 3-letter ISO code, got {v!r}")
        return v

    @property
    def app_store_verify_url(self) -> str:
        """verifyReceipt endpoint for the configured environment."""
        if self.environment == BillingEnv.PRODUCTION:
            return APP_STORE_PRODUCTION_URL
        return APP_STORE_SANDBOX_URL

    def plan_prices(self) -> dict[str, str]:
        """Return ``{plan_id: stripe_price_id}`` for every sold plan."""
        return {
            "discover_monthly": self.price_discover_monthly,
            "discover_yearly": self.price_discover_yearly,
            "connect_monthly": self.price_connect_monthly,
            "connect_yearly": self.price_connect_yearly,
            "community_monthly": self.price_community_monthly,
            "community_yearly": self.price_community_yearly,
        }


def load_settings(**overrides: object) -> BillingSettings:
    """Load settings from environment, with optional overrides for testing."""
    settings = BillingSettings(**overrides)  # type: ignore[arg-type]
    logger.debug("Loaded billing settings for environment: %s", settings.environment.value)
    return settings
