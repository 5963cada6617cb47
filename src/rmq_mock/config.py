"""Configuration module using Pydantic Settings v2.

Provides validated configuration from environment variables (prefixed with
``RMQ_MOCK_``) with support for .env files in local development. A Settings
instance can also be built explicitly and handed to a Session, which is how
tests keep behaviour isolated.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Simulator configuration with validation."""

    model_config = SettingsConfigDict(
        env_prefix="RMQ_MOCK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Queue behaviour
    pop_api: Literal["bunny", "legacy"] = Field(
        default="bunny",
        description=(
            "Shape returned by Queue.pop: 'bunny' returns a (delivery_info, "
            "properties, body) triple, 'legacy' returns the raw stored message"
        ),
    )
    temporary_queue_prefix: str = Field(
        default="amq.gen-",
        min_length=1,
        description="Prefix used for server-named queues",
    )
    consumer_tag_prefix: str = Field(
        default="bunny",
        min_length=1,
        description="Prefix used for generated consumer tags",
    )

    # Logging Configuration
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format (json for CI, text for development)",
    )
    log_file: str | None = Field(
        default=None,
        description="Path to log file. If None, logs only to stderr.",
    )
    log_rotation: str = Field(
        default="50 MB",
        description="Log rotation condition (size, time, etc.)",
    )
    log_retention: str = Field(
        default="7 days",
        description="Log retention duration",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
