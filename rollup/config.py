"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List

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

    # Metric Store
    db_type: str = Field(default="duckdb", description="Database type")
    db_path: str = Field(default="./data/rollup.duckdb", description="DuckDB file path")

    # Schedule (all times UTC)
    pipeline_run_hour_utc: int = Field(default=0, description="Hour of the daily rollup run")
    backfill_interval_minutes: int = Field(
        default=5, ge=1, description="Backfill sweep interval"
    )
    summary_interval_hours: int = Field(
        default=4, ge=1, le=24, description="Summary precomputation interval"
    )
    scheduler_enabled: bool = Field(
        default=True, description="Start the job scheduler with the API process"
    )

    # Pipeline execution
    step_max_attempts: int = Field(default=2, description="Attempts per pipeline step")
    worker_pool_size: int = Field(default=4, description="Per-entity worker pool size")
    upsert_batch_size: int = Field(default=500, ge=1, description="Rows per batched upsert")
    snapshot_lookback_hours: int = Field(
        default=48, ge=1, description="Snapshot read window in hours"
    )

    # Tracking phases
    weekly_anchor_weekday: int = Field(
        default=0, description="Weekday for WEEKLY sampling (0=Monday)"
    )
    monthly_anchor_day: int = Field(
        default=1, description="Day of month for MONTHLY sampling"
    )
    phase_transition_grace_days: int = Field(
        default=1, ge=1, le=7, description="Days past a phase boundary still treated as crossing"
    )

    # Summary precomputation
    min_comparison_points: int = Field(
        default=3, ge=1, description="Minimum comparison data points for pct_change"
    )
    summary_precision: int = Field(default=2, ge=0, le=6, description="Decimal places")
    summary_batch_size: int = Field(default=50, ge=1, description="Summary rows per upsert")
    summary_retention_days: int = Field(
        default=7, ge=1, description="Age after which cached summaries are purged"
    )

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("pipeline_run_hour_utc")
    @classmethod
    def validate_run_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("pipeline_run_hour_utc must be between 0 and 23")
        return v

    @field_validator("weekly_anchor_weekday")
    @classmethod
    def validate_weekday(cls, v: int) -> int:
        if not 0 <= v <= 6:
            raise ValueError("weekly_anchor_weekday must be between 0 (Monday) and 6 (Sunday)")
        return v

    @field_validator("monthly_anchor_day")
    @classmethod
    def validate_month_day(cls, v: int) -> int:
        # Days past 28 would silently skip February.
        if not 1 <= v <= 28:
            raise ValueError("monthly_anchor_day must be between 1 and 28")
        return v

    @field_validator("step_max_attempts", "worker_pool_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()


class ConfigurationError(Exception):
    """Raised when required configuration (e.g. the Metric Store location) is missing."""

    pass
