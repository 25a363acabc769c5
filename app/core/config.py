"""Core configuration settings.

Centralized configuration using Pydantic Settings for environment
variable management with sensible defaults.
"""

import logging
import os
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Groups:
    - Application and server
    - Database
    - Remote listing API
    - Sync orchestration (concurrency, rate, retries, stop conditions)
    - Watchdog (stuck detection and auto-resume)
    - Read API pagination and inbound rate limits
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # =========================================================================
    # Environment Detection
    # =========================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
    )

    # Application
    app_name: str = "Car Listing Cache"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/cars_cache.db"
    database_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    database_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW")
    database_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT")
    slow_query_threshold_ms: float = Field(default=500.0, alias="SLOW_QUERY_THRESHOLD_MS")
    enable_query_logging: bool = Field(default=False, alias="ENABLE_QUERY_LOGGING")

    # =========================================================================
    # Remote listing API
    # =========================================================================

    remote_api_base_url: str = Field(
        default="https://auctionsapi.com", alias="REMOTE_API_BASE_URL"
    )
    remote_api_listing_path: str = Field(default="/api/cars", alias="REMOTE_API_LISTING_PATH")
    remote_api_key: str | None = Field(default=None, alias="REMOTE_API_KEY")
    remote_api_key_header: str = Field(default="x-api-key", alias="REMOTE_API_KEY_HEADER")
    remote_api_per_page: int = Field(default=25, ge=1, le=1000, alias="REMOTE_API_PER_PAGE")
    remote_api_timeout_seconds: float = Field(default=30.0, gt=0, alias="REMOTE_API_TIMEOUT")
    remote_api_pagination_mode: Literal["page", "scroll"] = Field(
        default="page", alias="REMOTE_API_PAGINATION_MODE"
    )
    remote_api_scroll_time_minutes: int = Field(default=10, ge=1, le=15)
    source_site: str = Field(default="auctionsapi", alias="SOURCE_SITE")

    # =========================================================================
    # Sync orchestration
    # =========================================================================

    sync_stream: str = "main"
    sync_concurrency: int = Field(default=4, alias="SYNC_CONCURRENCY")
    sync_requests_per_second: float = Field(default=5.0, alias="SYNC_REQUESTS_PER_SECOND")
    sync_max_retries: int = Field(default=3, ge=0, le=10, alias="SYNC_MAX_RETRIES")
    sync_backoff_factor: float = Field(default=1.0, ge=0, alias="SYNC_BACKOFF_FACTOR")
    sync_max_backoff_seconds: float = Field(default=60.0, gt=0, alias="SYNC_MAX_BACKOFF")
    sync_empty_page_threshold: int = Field(default=25, ge=1, alias="SYNC_EMPTY_PAGE_THRESHOLD")
    sync_page_buffer: int = Field(default=5, ge=0, alias="SYNC_PAGE_BUFFER")
    sync_max_pages: int = Field(default=100_000, ge=1, alias="SYNC_MAX_PAGES")
    sync_estimated_total_records: int = Field(
        default=190_000, ge=0, alias="SYNC_ESTIMATED_TOTAL_RECORDS"
    )
    sync_merge_every_pages: int = Field(default=0, ge=0, alias="SYNC_MERGE_EVERY_PAGES")
    sync_completion_ratio: float = Field(default=0.95, gt=0, le=1, alias="SYNC_COMPLETION_RATIO")
    incremental_sync_interval_hours: int = Field(default=0, ge=0, alias="INCREMENTAL_SYNC_INTERVAL_HOURS")

    # Upper bounds for the tunables above
    max_sync_concurrency: int = 32
    max_requests_per_second: float = 100.0

    # =========================================================================
    # Watchdog
    # =========================================================================

    watchdog_activity_timeout_minutes: float = Field(default=10.0, gt=0)
    watchdog_max_run_duration_minutes: float = Field(default=120.0, gt=0)
    watchdog_low_progress_ratio: float = Field(default=0.05, ge=0, le=1)
    watchdog_min_runtime_minutes: float = Field(default=10.0, ge=0)
    watchdog_short_stall_minutes: float = Field(default=3.0, gt=0)
    watchdog_interval_seconds: int = Field(default=60, ge=5, alias="WATCHDOG_INTERVAL_SECONDS")
    auto_resume_enabled: bool = Field(default=False, alias="AUTO_RESUME_ENABLED")

    # =========================================================================
    # Read API
    # =========================================================================

    page_default_limit: int = Field(default=24, ge=1)
    page_max_limit: int = Field(default=100, ge=1)

    # Inbound rate limits (requests per window)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_default_requests: int = 120
    rate_limit_sync_requests: int = 5
    rate_limit_window_seconds: int = 60

    # CORS (RESTRICTED in production - no wildcards allowed)
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("environment", mode="before")
    @classmethod
    def detect_environment(cls, v: str | None) -> str:
        """Auto-detect environment from common environment variables."""
        if v:
            return v.lower()

        if os.getenv("PRODUCTION") or os.getenv("PROD"):
            return "production"
        if os.getenv("STAGING"):
            return "staging"

        return "development"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("remote_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_sync_bounds(self):
        """Keep concurrency and request rate inside their configured ranges."""
        if not 1 <= self.sync_concurrency <= self.max_sync_concurrency:
            raise ValueError(
                f"SYNC_CONCURRENCY must be between 1 and {self.max_sync_concurrency}"
            )
        if not 1 <= self.sync_requests_per_second <= self.max_requests_per_second:
            raise ValueError(
                f"SYNC_REQUESTS_PER_SECOND must be between 1 and {self.max_requests_per_second}"
            )
        if self.page_default_limit > self.page_max_limit:
            raise ValueError("page_default_limit cannot exceed page_max_limit")
        return self

    @model_validator(mode="after")
    def validate_debug_mode(self):
        """Prevent debug mode in production."""
        if self.environment == "production" and self.debug:
            logger.error(
                "DEBUG mode cannot be enabled in production! "
                "Set DEBUG=false or ENVIRONMENT=development"
            )
            raise ValueError("DEBUG cannot be True in production environment")
        return self

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_configured(self) -> bool:
        """Check if the remote API credentials are present."""
        return bool(self.remote_api_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
