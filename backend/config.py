"""
Configuration management for the Storefront Payments API.

Loads settings from .env via pydantic-settings.

Security notes:
    - The webhook signing secret falls back to the gateway secret key
    - validate_production_settings() refuses to boot without secrets in production
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/storefront.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"

    # ── Paystack ────────────────────────────────────────────────────
    paystack_secret_key: str = ""
    paystack_webhook_secret: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    gateway_timeout_seconds: float = 15.0
    webhook_signature_header: str = "X-Paystack-Signature"

    # ── Payments ────────────────────────────────────────────────────
    default_currency: str = "NGN"
    supported_currencies: str = "NGN,GHS,ZAR,USD"
    default_callback_url: str = "http://localhost:3000/checkout/complete"
    enforce_amount_match: bool = True  # reject success verdicts whose amount differs from the ledger
    payment_init_rate_limit: int = 10
    payment_init_rate_window_seconds: int = 60

    # ── Auth (JWT) ──────────────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "storefront-api"
    jwt_access_ttl_minutes: int = 60

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # allow unknown .env keys without crashing
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def supported_currencies_list(self) -> List[str]:
        return [c.strip().upper() for c in self.supported_currencies.split(",") if c.strip()]

    @property
    def webhook_secret(self) -> str:
        """Secret used to sign webhook bodies; the charge secret when unset."""
        return self.paystack_webhook_secret or self.paystack_secret_key

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.paystack_secret_key:
                raise ValueError(
                    "PAYSTACK_SECRET_KEY must be set in production. "
                    "It is used to start charges and to verify webhooks."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to sign access tokens."
                )
            if self.default_currency.upper() not in self.supported_currencies_list:
                raise ValueError(
                    f"DEFAULT_CURRENCY {self.default_currency} is not in SUPPORTED_CURRENCIES."
                )
            logger.info("✅ Production settings validated")
        else:
            warnings = []
            if not self.paystack_secret_key:
                warnings.append("PAYSTACK_SECRET_KEY not set (gateway calls will be rejected)")
            if not self.paystack_webhook_secret:
                warnings.append("PAYSTACK_WEBHOOK_SECRET not set (falling back to secret key)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
