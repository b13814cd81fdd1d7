"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, PostgresDsn, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EVENT_KINDS = (
    "product_view,addon_view,addon_click,addon_add_to_cart,addon_purchase,"
    "product_search,category_browse,seller_view,displayaddons_shown,"
    "related_product_click"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: PostgresDsn = Field(
        default=...,
        description="PostgreSQL connection URL with asyncpg driver",
    )

    # Redis (maintenance job queue)
    redis_url: RedisDsn = Field(
        default=...,
        description="Redis connection URL",
    )

    # Application
    app_env: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Application environment",
    )
    app_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    app_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # CORS
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins",
    )

    # Operator access
    operator_api_key_hash: str = Field(
        default="",
        description="HMAC-SHA256 hash of the operator API key",
    )

    # Event pipeline
    event_kinds: str = Field(
        default=DEFAULT_EVENT_KINDS,
        description="Comma-separated vocabulary of accepted event kinds",
    )
    conversion_event_kind: str = Field(
        default="addon_purchase",
        description="Event kind emitted for experiment conversions",
    )
    display_event_kind: str = Field(
        default="displayaddons_shown",
        description="Event kind emitted when a display configuration is served",
    )
    view_event_kind: str = Field(
        default="addon_view",
        description="Event kind counted as an add-on view in funnels",
    )
    click_event_kind: str = Field(
        default="addon_click",
        description="Event kind counted as an add-on click in funnels",
    )
    add_to_cart_event_kind: str = Field(
        default="addon_add_to_cart",
        description="Event kind counted as an add-to-cart in funnels",
    )
    ingest_batch_size: int = Field(
        default=100,
        ge=1,
        description="Pending events that trigger an immediate flush",
    )
    ingest_max_pending: int = Field(
        default=10_000,
        ge=1,
        description="Buffer cap; the oldest events are dropped beyond it",
    )
    ingest_flush_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between background event flushes",
    )
    event_retention_days: int = Field(
        default=90,
        ge=1,
        description="Days of events kept by the retention cleanup job",
    )
    report_query_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound for report and aggregation queries",
    )

    # Experiments
    experiment_cache_refresh_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between active-experiment snapshot refreshes",
    )
    display_experiment_name: str = Field(
        default="displayaddons_optimization",
        description="Experiment driving the product display strategy",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def event_kinds_set(self) -> frozenset[str]:
        """Parse the event vocabulary into a set."""
        return frozenset(
            kind.strip() for kind in self.event_kinds.split(",") if kind.strip()
        )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance (singleton pattern)."""
    return Settings()
