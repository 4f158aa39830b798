"""
Configuration loader for the watermark service.

Environment variables are centralized here to keep the rest of the code
focused on business logic. The watermark geometry itself is fixed and is not
configurable; only operational knobs live here.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    log_level: str = Field("INFO")
    max_upload_bytes: int = Field(100 * 1024 * 1024)
    job_retention: int = Field(32)
    stale_job_seconds: int = Field(3600)

    # Rendering
    watermark_font_path: Optional[Path] = Field(None)

    # Client
    service_url: str = Field("http://localhost:8000")
    request_timeout_seconds: int = Field(300)

    # Debugging
    debug: bool = Field(False)
    debug_output_dir: Path = Field(Path("/tmp/watermark_debug"))

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG|INFO|WARNING|ERROR|CRITICAL")
        return level

    @field_validator("max_upload_bytes", "job_retention", "stale_job_seconds", "request_timeout_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
