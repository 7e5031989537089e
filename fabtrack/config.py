"""Application configuration loaded from YAML with environment overrides."""

from __future__ import annotations

import os
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

from .status import DEFAULT_NOTE_TIMESTAMP_FORMAT
from .storage import DEFAULT_BUSY_TIMEOUT

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class AppConfig(BaseModel):
    """Top-level configuration model."""

    database_path: Optional[str] = None
    database_timeout: float = Field(DEFAULT_BUSY_TIMEOUT, gt=0)
    timezone: str = "UTC"
    note_timestamp_format: str = DEFAULT_NOTE_TIMESTAMP_FORMAT
    log_level: LogLevel = "INFO"
    seed_demo_data: bool = False

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {value!r}") from exc
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FABTRACK_CONFIG env
            variable or 'fabtrack.yaml' in the current directory.
    """

    config_path = path or os.getenv("FABTRACK_CONFIG", "fabtrack.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AppConfig(**data)
    else:
        config = AppConfig()

    env_db_path = os.getenv("FABTRACK_DATABASE_PATH")
    if env_db_path:
        config.database_path = env_db_path
    env_log_level = os.getenv("FABTRACK_LOG_LEVEL")
    if env_log_level:
        config = AppConfig(**{**config.model_dump(), "log_level": env_log_level})
    return config
