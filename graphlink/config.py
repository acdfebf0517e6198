"""
Driver configuration.

Settings come from keyword arguments, a YAML file or ``GRAPHLINK_*``
environment variables, in that order of precedence.

Usage:
    config = DriverConfig(database="movies", max_connection_pool_size=20)
    config = DriverConfig.from_yaml("graphlink.yaml")
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from graphlink.exceptions import ConfigurationError
from graphlink.retry import RetryPolicy
from graphlink.routing import AccessMode


class DriverConfig(BaseSettings):
    """Options recognised by the driver core. Durations are in seconds."""

    model_config = SettingsConfigDict(env_prefix="GRAPHLINK_", extra="ignore")

    max_connection_pool_size: int = Field(default=100, gt=0)
    connection_acquisition_timeout: float = Field(default=60.0, ge=0)
    max_connection_lifetime: float | None = Field(default=3600.0, gt=0)

    max_transaction_retry_time: float = Field(default=30.0, ge=0)
    max_transaction_attempts: int | None = Field(default=None, gt=0)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_delay_multiplier: float = Field(default=2.0, ge=1)
    retry_delay_jitter: float = Field(default=0.2, ge=0, lt=1)
    retry_max_delay: float = Field(default=10.0, ge=0)

    default_access_mode: AccessMode = AccessMode.WRITE
    database: str = Field(default="neo4j", min_length=1)

    configure_logging: bool = False
    log_level: str = "INFO"

    @field_validator(
        "connection_acquisition_timeout",
        "max_connection_lifetime",
        "max_transaction_retry_time",
        "retry_initial_delay",
        "retry_max_delay",
        mode="before",
    )
    @classmethod
    def _duration_seconds(cls, value: Any) -> Any:
        if isinstance(value, timedelta):
            return value.total_seconds()
        return value

    @field_validator("database")
    @classmethod
    def _database_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("database must not be blank")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides: Any) -> "DriverConfig":
        """Load settings from a YAML mapping; ``overrides`` win over file values."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Expected a mapping in {path}, got {type(data).__name__}")
        section = data.get("graphlink", data)
        if not isinstance(section, dict):
            raise ConfigurationError(f"'graphlink' section in {path} must be a mapping", config_key="graphlink")
        return cls(**{**section, **overrides})

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retry_time=self.max_transaction_retry_time,
            max_attempts=self.max_transaction_attempts,
            initial_delay=self.retry_initial_delay,
            multiplier=self.retry_delay_multiplier,
            jitter=self.retry_delay_jitter,
            max_delay=self.retry_max_delay,
        )
