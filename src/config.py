"""Centralized configuration management for the settlement service.

Loads all configuration from environment variables with sensible defaults.
"""

from decimal import Decimal
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

from .models import Currency

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the settlement service."""

    environment: Literal["development", "production"] = Field(default="development")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(
        default="", description="Signing secret for Stripe webhook endpoints"
    )
    payment_method_types: list[str] = Field(default_factory=lambda: ["card", "cashapp"])

    # PayPal (optional second provider; enabled when both credentials are set)
    paypal_client_id: str = Field(default="")
    paypal_client_secret: str = Field(default="")
    paypal_environment: Literal["sandbox", "live"] = Field(default="sandbox")
    paypal_merchant_id: str = Field(default="", description="Platform merchant that receives platform fees")
    paypal_webhook_id: str = Field(default="", description="Webhook ID used for signature verification")
    paypal_timeout_seconds: float = Field(default=30.0)
    paypal_max_retries: int = Field(default=3)

    # Service
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4030)

    # Database
    database_path: str = Field(default="./settlement.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Money
    supported_currency: str = Field(default="USD", description="The single currency charges are made in")
    min_charge_cents: int = Field(default=50, description="Provider minimum ($0.50)")
    max_charge_cents: int = Field(default=10_000_000, description="Single charge cap ($100,000)")

    # Platform fee for ticket sales: percentage of subtotal plus a fixed amount
    platform_fee_percent: Decimal = Field(default=Decimal("3.7"))
    platform_fee_fixed_cents: int = Field(default=179)

    # Marketplace commission when the vendor has none configured
    default_commission_percent: Decimal = Field(default=Decimal("15"))

    # Webhook ledger retention; must exceed every provider's redelivery window
    webhook_retention_days: int = Field(default=7)

    # Upper bound on the debt read during checkout before failing open
    debt_read_timeout_seconds: float = Field(default=2.0)

    @property
    def paypal_enabled(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_client_secret)

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["api", "maintenance"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service == "api":
        if not config.stripe_secret_key:
            errors.append("STRIPE_SECRET_KEY must be set")
        if config.environment == "production" and not config.stripe_webhook_secret:
            errors.append("STRIPE_WEBHOOK_SECRET must be set in production")
        if bool(config.paypal_client_id) != bool(config.paypal_client_secret):
            errors.append("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET must be set together")
        if config.environment == "production" and config.paypal_enabled and not config.paypal_webhook_id:
            errors.append("PAYPAL_WEBHOOK_ID must be set in production")

    if config.supported_currency.upper() not in Currency.__members__:
        errors.append(f"SUPPORTED_CURRENCY {config.supported_currency!r} is not supported")

    if config.webhook_retention_days < 1:
        errors.append("WEBHOOK_RETENTION_DAYS must be at least 1")

    if config.min_charge_cents < 1 or config.min_charge_cents > config.max_charge_cents:
        errors.append("MIN_CHARGE_CENTS must be positive and not above MAX_CHARGE_CENTS")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
