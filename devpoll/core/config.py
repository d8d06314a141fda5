# ═══════════════════════════════════════════════════════════════
# DevPoll - Configuration
# Environment-driven settings shared by every polling cycle
# ═══════════════════════════════════════════════════════════════

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-wide defaults for DevPoll.

    Values are read from ``DEVPOLL_*`` environment variables or a ``.env``
    file. They only provide defaults; nothing here carries per-device state.
    """
    model_config = SettingsConfigDict(
        env_prefix="DEVPOLL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="console", description="'console' or 'json'")
    log_file: Optional[str] = Field(default=None, description="Optional JSON log file")

    # Operation defaults
    default_timeout: float = Field(default=30.0, gt=0, le=3600)
    default_retry_count: int = Field(default=0, ge=0, le=10)
    default_retry_delay: float = Field(default=1.0, ge=0, le=60)

    # Fan-out
    max_concurrency: int = Field(default=4, ge=1, le=64)

    # Request/response
    verify_tls: bool = Field(default=False, description="Verify TLS certificates of polled devices")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {value}")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("console", "json"):
            raise ValueError(f"Invalid log format: {value}")
        return value


@lru_cache()
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()
