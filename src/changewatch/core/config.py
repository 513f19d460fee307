"""Configuration management using Pydantic settings."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from changewatch.core.types import FullDocument


class LogLevel(str, Enum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MongoDBSettings(BaseSettings):
    """MongoDB connection settings."""

    model_config = SettingsConfigDict(env_prefix="MONGODB_")

    uri: SecretStr = Field(
        default=SecretStr("mongodb://localhost:27017"),
        description="MongoDB connection URI",
    )
    database: str | None = Field(
        default=None,
        description="Default database to watch",
    )
    read_preference: Literal[
        "primary", "primaryPreferred", "secondary", "secondaryPreferred", "nearest"
    ] = Field(default="primary")
    server_selection_timeout_ms: int = Field(default=30000, ge=1000)


class StreamSettings(BaseSettings):
    """Defaults applied to change streams opened from the CLI."""

    model_config = SettingsConfigDict(env_prefix="STREAM_")

    full_document: FullDocument = Field(default=FullDocument.DEFAULT)
    max_await_time_ms: int | None = Field(
        default=None,
        ge=0,
        description="Server wait per getMore when no changes are available",
    )
    batch_size: int | None = Field(default=None, ge=0)


class ObservabilitySettings(BaseSettings):
    """Observability settings."""

    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_")

    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: Literal["json", "console"] = Field(default="console")
    service_name: str = Field(default="changewatch")
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9090, ge=1, le=65535)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHANGEWATCH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    mongodb: MongoDBSettings = Field(default_factory=MongoDBSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @classmethod
    def load(cls) -> Settings:
        """Load settings from environment."""
        return cls()


# Global settings instance (lazy loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def configure_settings(settings: Settings | None) -> None:
    """Configure the global settings instance (for testing)."""
    global _settings
    _settings = settings
