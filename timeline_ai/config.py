"""
Application Configuration - Pydantic Settings for type-safe config.

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
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Timeline AI Generation API"
    api_version: str = "0.1.0"
    api_description: str = "Credit-metered AI generation pipeline for timelines"

    # Security - admin key for credit grants and prompt management
    admin_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "timeline-ai-api"

    # Generation provider (OpenAI-compatible)
    provider_base_url: str = "https://api.openai.com/v1"
    provider_api_key: str = ""
    text_model: str = "gpt-4o-mini"
    risk_model: str = "gpt-4o"
    image_model: str = "dall-e-3"
    image_size: str = "1024x1024"
    image_prompt_max_chars: int = 1000
    provider_timeout_seconds: float = 60.0

    # Retry policy for provider calls
    provider_max_attempts: int = 3
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_max_seconds: float = 8.0

    # Content cache
    cache_enabled: bool = True
    cache_ttl_seconds: float = 3600.0

    # Credits
    default_credit_grant: int = 100
    events_stage_cost: int = 8
    descriptions_stage_cost: int = 8
    image_cost_per_event: int = 5

    # Pipeline behaviour
    risk_prefilter_enabled: bool = False
    max_events_limit: int = 100

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
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        for name in (
            "default_credit_grant",
            "events_stage_cost",
            "descriptions_stage_cost",
            "image_cost_per_event",
            "provider_max_attempts",
            "max_events_limit",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be positive")

        if self.cache_ttl_seconds <= 0:
            errors.append("CACHE_TTL_SECONDS must be positive")
        if self.provider_timeout_seconds <= 0:
            errors.append("PROVIDER_TIMEOUT_SECONDS must be positive")

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
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite (no connection pool tuning)."""
        return self.database_url.startswith("sqlite")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
