"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Paysync API"
    api_version: str = "0.1.0"
    api_description: str = "Idempotent payment and subscription reconciliation service"

    # Caller authentication (HS256 bearer tokens issued by the identity service)
    auth_jwt_secret: str = ""
    auth_jwt_algorithm: str = "HS256"
    admin_role: str = "admin"

    # CORS
    cors_allow_origins: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "paysync-api"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_publishable_key: str = ""  # Stripe publishable key (pk_test_... or pk_live_...)
    stripe_timeout_seconds: float = 15.0

    # Pricing Configuration
    default_currency: str = "USD"
    credit_price_minor: int = 2  # minor units per purchased credit
    contact_fee_credits: int = 1
    placement_fee_amount: int = 500

    # Idempotency ledger retention
    idempotency_retention_hours: int = 24

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

        if self.credit_price_minor <= 0:
            errors.append("CREDIT_PRICE_MINOR must be a positive integer")

        if not 1 <= self.idempotency_retention_hours <= 168:
            errors.append("IDEMPOTENCY_RETENTION_HOURS must be between 1 and 168")

        if len(self.default_currency) != 3:
            errors.append(f"DEFAULT_CURRENCY must be a 3-letter code, got: {self.default_currency}")

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


# Global settings instance - validates at import time
settings = Settings()