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
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "CreditGate API"
    api_version: str = "0.1.0"
    api_description: str = "Credit-metered API key gateway for content extraction"

    # Session exchange - Google identity tokens
    GOOGLE_CLIENT_ID: str = ""  # Google OAuth client ID (web client)
    GOOGLE_CLIENT_IDS: str = ""  # Comma-separated list of additional client IDs

    @property
    def valid_google_client_ids(self) -> list[str]:
        """Get list of valid Google client IDs for token validation."""
        ids = []
        if self.GOOGLE_CLIENT_ID:
            ids.append(self.GOOGLE_CLIENT_ID)
        if self.GOOGLE_CLIENT_IDS:
            for cid in self.GOOGLE_CLIENT_IDS.split(","):
                cid = cid.strip()
                if cid and cid not in ids:
                    ids.append(cid)
        return ids

    # API key format: {prefix}_{body}
    api_key_prefix: str = "rsk"
    api_key_body_length: int = 32
    api_key_lookup_length: int = 8  # Body chars stored in clear for candidate lookup

    # Gateway policy (tiers, endpoint costs, packages) - JSON file, defaults if unset
    policy_file: str | None = None

    # Rate limiting
    rate_limit_backend: str = "memory"  # memory or redis
    rate_limit_window_seconds: int = 60
    redis_url: str = "redis://localhost:6379/0"

    # Upstream content extraction service
    upstream_extractor_url: str = "http://extractor:9000"
    upstream_timeout_seconds: float = 30.0

    # Usage recorder (write-behind request log)
    usage_queue_size: int = 10000
    usage_batch_size: int = 100
    usage_flush_interval_seconds: float = 1.0
    usage_failure_threshold: int = 10  # Consecutive failed batches before shutdown

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "creditgate-api"
    environment: str = "production"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    checkout_success_url: str = "http://localhost:3000/billing?checkout=success"
    checkout_cancel_url: str = "http://localhost:3000/billing?checkout=cancelled"

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

        if self.rate_limit_backend not in ("memory", "redis"):
            errors.append(
                f"RATE_LIMIT_BACKEND must be 'memory' or 'redis', got: {self.rate_limit_backend}"
            )

        if not 4 <= self.api_key_lookup_length < self.api_key_body_length:
            errors.append("API_KEY_LOOKUP_LENGTH must be at least 4 and shorter than the key body")

        if self.upstream_timeout_seconds <= 0:
            errors.append("UPSTREAM_TIMEOUT_SECONDS must be positive")

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
