"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
Secrets that gate inbound traffic are optional here; collaborators that need
them decide at construction how to behave when they are absent.
"""

import sys

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Subscription Entitlements API"
    api_version: str = "0.1.0"
    api_description: str = "Reconciles Stripe, App Store and Google Play subscriptions"

    # Aggregator webhook (RevenueCat) - empty means every webhook is rejected
    revenuecat_webhook_secret: str = ""

    # User session tokens (issued by the auth provider)
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_price_tiers: dict[str, str] = Field(default_factory=dict)  # price id -> tier
    stripe_default_tier: str = "pro"

    # Entitlement allowances
    tier_monthly_credits: dict[str, int] = Field(
        default_factory=lambda: {"free": 15, "pro": 100, "premium": 250}
    )
    native_sync_default_period_days: int = 30

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "subscription-entitlements"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.stripe_default_tier not in ("free", "premium", "pro"):
            errors.append(f"STRIPE_DEFAULT_TIER must be a known tier, got: {self.stripe_default_tier}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    def monthly_credits_for(self, tier: str) -> int:
        """Monthly credit allowance for a tier (free allowance for unknown tiers)."""
        return self.tier_monthly_credits.get(tier, self.tier_monthly_credits.get("free", 0))


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
