"""
Caregiver Sync Configuration
Loads settings from environment variables with validation.
"""
import json
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Caregiver Sync"
    app_version: str = "1.0.0"
    debug: bool = False

    # Synchronization
    sync_interval_seconds: float = Field(default=30.0, env="SYNC_INTERVAL_SECONDS")
    fetch_timeout_seconds: float = Field(default=30.0, env="FETCH_TIMEOUT_SECONDS")
    recommended_bolus_max_age_minutes: int = Field(default=7, env="RECOMMENDED_BOLUS_MAX_AGE_MINUTES")
    glucose_interval_minutes: int = Field(default=5, env="GLUCOSE_INTERVAL_MINUTES")  # CGM cadence

    # Timeline (ahead-of-time rendering targets)
    timeline_entry_count: int = Field(default=60, env="TIMELINE_ENTRY_COUNT")
    timeline_step_minutes: int = Field(default=1, env="TIMELINE_STEP_MINUTES")
    timeline_upload_buffer_minutes: int = Field(default=1, env="TIMELINE_UPLOAD_BUFFER_MINUTES")
    timeline_default_refresh_minutes: int = Field(default=5, env="TIMELINE_DEFAULT_REFRESH_MINUTES")
    timeline_append_sentinel: bool = Field(default=False, env="TIMELINE_APPEND_SENTINEL")

    # Nightscout
    nightscout_lookback_hours: int = Field(default=24, env="NIGHTSCOUT_LOOKBACK_HOURS")
    nightscout_max_count: int = Field(default=1000, env="NIGHTSCOUT_MAX_COUNT")
    glucose_display_units: str = Field(default="mg/dL", env="GLUCOSE_DISPLAY_UNITS")

    # Monitored loopers: [{"id": ..., "name": ..., "url": ..., "apiSecret": ...}]
    loopers: str = Field(default="[]", env="LOOPERS")

    # Security Settings
    cors_origins: str = Field(
        default="http://localhost:5173,http://localhost:3000",
        env="CORS_ORIGINS"
    )
    rate_limit_per_minute: int = Field(default=60, env="RATE_LIMIT_PER_MINUTE")
    command_rate_limit_per_minute: int = Field(default=10, env="COMMAND_RATE_LIMIT_PER_MINUTE")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def looper_configs(self) -> List[dict]:
        """Parse the configured loopers."""
        loopers = json.loads(self.loopers or "[]")
        if not isinstance(loopers, list):
            raise ValueError("LOOPERS must be a JSON list")
        return loopers

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
