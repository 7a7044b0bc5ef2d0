"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "HighBid Generation API"
    api_version: str = "0.1.0"
    api_description: str = "Pay-per-use image and speech generation"

    # Hosted identity provider (session auth)
    auth_url: str = ""  # e.g. https://<project>.supabase.co
    auth_anon_key: str = ""
    auth_jwt_secret: str = ""  # When set, session JWTs are verified locally
    auth_jwt_audience: str = "authenticated"
    session_cookie_name: str = "sb-access-token"
    auth_timeout_seconds: float = 10.0

    # Admins are session users listed here (comma-separated emails)
    ADMIN_EMAILS: str = ""

    @property
    def admin_email_list(self) -> list[str]:
        """Get normalized list of admin emails."""
        emails = []
        for email in self.ADMIN_EMAILS.split(","):
            email = email.strip().lower()
            if email and email not in emails:
                emails.append(email)
        return emails

    # API tokens
    api_token_prefix: str = "hb_"

    # Job platform
    job_platform_base_url: str = "https://xgodo.com/api/v2"
    job_platform_api_token: str = ""
    image_job_id: str = ""
    speech_job_id: str = ""
    job_platform_timeout_seconds: float = 60.0
    poll_initial_delay_seconds: float = 30.0
    poll_interval_seconds: float = 30.0
    poll_max_attempts: int = 15
    job_correlation_ids_enabled: bool = False

    # Pricing fallbacks (used when the pricing tables cannot be read)
    default_image_price: Decimal = Decimal("0.50")
    default_speech_price_per_word: Decimal = Decimal("0.003")

    # Billing
    reserve_balance_on_admission: bool = False

    # Background generations
    generation_recovery_enabled: bool = True
    generation_recovery_grace_seconds: int = 300

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "highbid-generation-api"

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
        Job platform settings are checked per request instead, so the
        read-only endpoints keep working while generation is unconfigured.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.poll_max_attempts < 1:
            errors.append("POLL_MAX_ATTEMPTS must be at least 1")

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

    @property
    def max_poll_window_seconds(self) -> float:
        """Upper bound on how long a single generation can stay in polling."""
        return self.poll_initial_delay_seconds + (
            self.poll_max_attempts * self.poll_interval_seconds
        )


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
