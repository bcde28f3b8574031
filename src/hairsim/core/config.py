"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=50, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:5173", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Generation Cache
    # Empty REDIS_URL keeps the cache in process memory only
    redis_url: str = Field(default="", alias="REDIS_URL")
    cache_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, alias="CACHE_TTL_SECONDS")
    cache_max_entries: int = Field(default=1000, alias="CACHE_MAX_ENTRIES")
    cache_eviction_fraction: float = Field(default=0.2, alias="CACHE_EVICTION_FRACTION")
    cache_sweep_interval_seconds: int = Field(default=600, alias="CACHE_SWEEP_INTERVAL_SECONDS")
    cache_hits_are_free: bool = Field(default=True, alias="CACHE_HITS_ARE_FREE")

    # Queue wait-time estimation
    queue_concurrency_factor: float = Field(default=0.8, alias="QUEUE_CONCURRENCY_FACTOR")
    queue_history_size: int = Field(default=50, alias="QUEUE_HISTORY_SIZE")
    queue_initial_average_seconds: float = Field(
        default=30.0, alias="QUEUE_INITIAL_AVERAGE_SECONDS"
    )

    # Quota
    free_daily_limit: int = Field(default=3, alias="FREE_DAILY_LIMIT")
    default_tier: str = Field(default="free", alias="DEFAULT_TIER")
    # Unsettled reservations older than this are treated as abandoned
    quota_reservation_ttl_seconds: float = Field(
        default=600.0, alias="QUOTA_RESERVATION_TTL_SECONDS"
    )

    # Replicate Image Generation
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model_version: str = Field(
        default="black-forest-labs/flux-kontext-pro", alias="REPLICATE_MODEL_VERSION"
    )
    generation_timeout_seconds: float = Field(default=120.0, alias="GENERATION_TIMEOUT_SECONDS")

    # Stripe Payments
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = Field(
        default=300, alias="STRIPE_WEBHOOK_TOLERANCE_SECONDS"
    )
    client_url: str = Field(default="http://localhost:5173", alias="CLIENT_URL")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        if not 0 < self.queue_concurrency_factor <= 1:
            raise ValueError("QUEUE_CONCURRENCY_FACTOR must be in (0, 1]")
        if not 0 < self.cache_eviction_fraction <= 1:
            raise ValueError("CACHE_EVICTION_FRACTION must be in (0, 1]")
        if self.quota_reservation_ttl_seconds <= self.generation_timeout_seconds:
            raise ValueError(
                "QUOTA_RESERVATION_TTL_SECONDS must exceed GENERATION_TIMEOUT_SECONDS"
            )

        # Secrets are only mandatory where real money or real API spend is involved
        if self.app_env != "production":
            return self

        missing = []

        if not self.replicate_api_token:
            missing.append(
                "REPLICATE_API_TOKEN: Get your API token from https://replicate.com/account/api-tokens"
            )

        if not self.stripe_secret_key:
            missing.append("STRIPE_SECRET_KEY: Copy the secret key from the Stripe dashboard")

        if not self.stripe_webhook_secret:
            missing.append(
                "STRIPE_WEBHOOK_SECRET: Copy the signing secret of the checkout webhook endpoint"
            )

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        # JSON output for production (log aggregation)
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
