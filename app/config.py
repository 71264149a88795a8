"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Database
    DATABASE_URL: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_POOL_RECYCLE_SECONDS: int = Field(default=300)
    DB_ECHO: bool = Field(default=False)

    # Redis (empty disables the entitlement summary cache)
    REDIS_URL: str = Field(default="")
    ENTITLEMENT_CACHE_TTL_SECONDS: int = Field(default=300)

    # Service-to-service authentication
    INTERNAL_API_KEY: str = Field(default="")
    CRON_SECRET: str = Field(default="")

    # Dead-letter queue / retry schedule
    DLQ_BASE_DELAY_SECONDS: int = Field(default=60)
    DLQ_BACKOFF_MULTIPLIER: float = Field(default=2.0)
    DLQ_MAX_DELAY_SECONDS: int = Field(default=86400)  # 24 hours
    DLQ_MAX_ATTEMPTS: int = Field(default=5)
    DLQ_BATCH_SIZE: int = Field(default=10)
    DLQ_CLAIM_TTL_SECONDS: int = Field(default=300)
    DLQ_ALERT_THRESHOLD: int = Field(default=20)

    # Scheduled jobs
    SCHEDULER_ENABLED: bool = Field(default=True)
    DLQ_DRAIN_INTERVAL_SECONDS: int = Field(default=300)  # 5 minutes
    METRICS_RUN_HOUR_UTC: int = Field(default=0)
    HEALTH_REPORT_HOUR_UTC: int = Field(default=8)
    PURGE_WEEKDAY: int = Field(default=6, description="0=Monday ... 6=Sunday")
    EVENT_RETENTION_DAYS: int = Field(default=90)

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cache_enabled(self) -> bool:
        return bool(self.REDIS_URL)

    @field_validator(
        "DB_POOL_SIZE",
        "DLQ_BASE_DELAY_SECONDS",
        "DLQ_MAX_DELAY_SECONDS",
        "DLQ_MAX_ATTEMPTS",
        "DLQ_BATCH_SIZE",
        "DLQ_CLAIM_TTL_SECONDS",
        "DLQ_DRAIN_INTERVAL_SECONDS",
        "EVENT_RETENTION_DAYS",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Retry and scheduling parameters must be positive."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("DLQ_BACKOFF_MULTIPLIER")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """A multiplier below 1 would shrink the delay between attempts."""
        if v < 1:
            raise ValueError("DLQ_BACKOFF_MULTIPLIER must be >= 1")
        return v

    @field_validator("PURGE_WEEKDAY")
    @classmethod
    def validate_weekday(cls, v: int) -> int:
        if not 0 <= v <= 6:
            raise ValueError("PURGE_WEEKDAY must be between 0 and 6")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
