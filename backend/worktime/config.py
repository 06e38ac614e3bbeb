from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from zoneinfo import ZoneInfo


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="WT_", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "Worktime Tracker"
    host: str = "127.0.0.1"
    port: int = 8080

    sqlite_path: Path = Path("./data/worktime.db")
    storage_namespace: str = "worktime"
    storage_key: str = "task-tracker-data"

    timezone: str = Field(default_factory=lambda: os.getenv("TZ", "Europe/Berlin"))
    tick_interval_seconds: float = 1.0

    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @field_validator("tick_interval_seconds")
    @classmethod
    def _positive_tick(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("tick_interval_seconds must be positive")
        return value

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        ZoneInfo(value)
        return value

    @computed_field
    def database_url(self) -> str:
        return f"sqlite:///{self.sqlite_path}"


settings = Settings()

LOCAL_TZ = ZoneInfo(settings.timezone)

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
if settings.log_file is not None:
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)
