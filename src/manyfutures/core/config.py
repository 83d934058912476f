"""Application configuration using Pydantic BaseSettings."""

import logging
import os
import socket
from decimal import Decimal

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_worker_id() -> str:
    """Build a worker identifier unique per host and process."""
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Worker Loop
    worker_id: str = Field(default_factory=default_worker_id, alias="WORKER_ID")
    worker_concurrency: int = Field(default=2, ge=1, alias="WORKER_CONCURRENCY")
    poll_interval_seconds: int = Field(default=5, ge=1, alias="POLL_INTERVAL_SECONDS")
    lease_duration_seconds: int = Field(default=900, ge=1, alias="LEASE_DURATION_SECONDS")
    claim_batch_size: int = Field(default=5, ge=1, alias="CLAIM_BATCH_SIZE")

    # Retry & Backoff
    retry_base_delay_seconds: int = Field(default=60, ge=1, alias="RETRY_BASE_DELAY_SECONDS")
    retry_max_delay_seconds: int = Field(default=3600, ge=1, alias="RETRY_MAX_DELAY_SECONDS")
    default_max_attempts: int = Field(default=3, ge=1, alias="DEFAULT_MAX_ATTEMPTS")

    # Scheduling
    idempotency_period: str = Field(default="day", alias="IDEMPOTENCY_PERIOD")
    generation_lead_hours: int = Field(default=4, ge=0, alias="GENERATION_LEAD_HOURS")

    # Cost Governor (example figures, override per deployment)
    default_currency: str = Field(default="GBP", alias="DEFAULT_CURRENCY")
    daily_cost_limit: Decimal = Field(default=Decimal("50.00"), alias="DAILY_COST_LIMIT")
    job_cost_limit: Decimal = Field(default=Decimal("3.00"), alias="JOB_COST_LIMIT")
    estimated_job_cost: Decimal = Field(default=Decimal("2.50"), alias="ESTIMATED_JOB_COST")

    # Content Generation (OpenAI Responses API)
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    openai_model: str = Field(default="gpt-5-mini", alias="OPENAI_MODEL")
    generation_timeout_seconds: float = Field(default=120.0, alias="GENERATION_TIMEOUT_SECONDS")
    input_price_per_1k_tokens: Decimal = Field(
        default=Decimal("0.0002"), alias="INPUT_PRICE_PER_1K_TOKENS"
    )
    output_price_per_1k_tokens: Decimal = Field(
        default=Decimal("0.0016"), alias="OUTPUT_PRICE_PER_1K_TOKENS"
    )
    min_episode_chars: int = Field(default=200, ge=1, alias="MIN_EPISODE_CHARS")
    max_episode_chars: int = Field(default=60000, ge=1, alias="MAX_EPISODE_CHARS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments to avoid breaking tests.
        """
        if self.idempotency_period not in ("day", "hour"):
            raise ValueError("IDEMPOTENCY_PERIOD must be 'day' or 'hour'")

        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS")

        # Skip validation in test environments
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        # OPENAI_API_KEY is required for the episode worker
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY: Create an API key at https://platform.openai.com")

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
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.app_env == "production":
        # JSON output for production (log aggregation)
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        # Console output for development (human-readable)
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
