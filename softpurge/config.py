"""
Configuration module for softpurge.

Provides centralized configuration for the soft delete lifecycle and the
purge pipeline.
"""

import json
import logging
import os
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

import yaml
from dateutil.rrule import rrulestr
from pydantic import BaseModel, Field, field_validator


class BackoffType(str, Enum):
    """Supported retry backoff shapes for queued tasks."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class PurgeConfig(BaseModel):
    """Central configuration for the soft delete and purge pipeline.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (SOFTPURGE_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values (lowest priority)

    Example:
        >>> config = PurgeConfig(retention_days=14, worker_concurrency=2)
        >>> config.retention
        datetime.timedelta(days=14)

        Loading from environment:

        >>> os.environ["SOFTPURGE_RETENTION_DAYS"] = "45"
        >>> config = PurgeConfig.from_env()

    Note:
        The retention window is read once at startup. Components receive it
        at construction time, so changing it requires a restart of every
        worker process.
    """

    # General settings
    application_name: str = Field("softpurge", description="Application name")
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    log_level: str = Field("INFO", description="Logging level name")

    # Retention
    retention_days: int = Field(
        30, description="Days a soft-deleted record stays restorable", gt=0
    )

    # Purge scanner
    scan_batch_size: int = Field(
        500, description="Entities read per scan batch", gt=0, le=10000
    )
    scan_schedule: str = Field(
        "FREQ=DAILY;BYHOUR=0;BYMINUTE=0;BYSECOND=0",
        description="Recurrence rule (RFC 5545, UTC) for the safety-net scan",
    )
    scan_batch_timeout_seconds: float = Field(
        30.0, description="Timeout for a single scan batch read", gt=0
    )

    # Purge executor
    purge_timeout_seconds: float = Field(
        10.0, description="Timeout for a single conditional purge delete", gt=0
    )
    purge_max_attempts: int = Field(
        5, description="Delivery attempts before a task fails terminally", gt=0
    )
    purge_backoff_type: BackoffType = Field(
        BackoffType.EXPONENTIAL, description="Retry backoff shape"
    )
    purge_backoff_delay_seconds: float = Field(
        60.0, description="Base delay between retries", ge=0
    )

    # Worker
    worker_concurrency: int = Field(
        5, description="Tasks processed concurrently per worker", gt=0, le=100
    )
    worker_poll_interval_seconds: float = Field(
        1.0, description="Idle delay between queue polls", gt=0
    )
    worker_rate_limit_max: int = Field(
        100, description="Tasks started per rate window (0 disables)", ge=0
    )
    worker_rate_limit_window_seconds: float = Field(
        10.0, description="Length of the rate limit window", gt=0
    )
    task_lease_seconds: int = Field(
        300,
        description="Seconds before an unfinished claimed task is redelivered",
        gt=0,
    )

    # Health
    health_check_timeout_seconds: float = Field(
        1.5, description="Timeout for health pings", gt=0
    )

    # Job store
    job_store_url: str = Field(
        "sqlite:///./softpurge_jobs.db", description="SQLAlchemy URL of the job store"
    )
    queue_name: str = Field("soft-delete-purge", description="Queue name for tasks")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is a known logging level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("scan_schedule")
    @classmethod
    def validate_scan_schedule(cls, v: str) -> str:
        """Ensure the scan schedule parses as a recurrence rule."""
        try:
            rrulestr(v)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid scan schedule rule {v!r}: {e}") from e
        return v

    @property
    def retention(self) -> timedelta:
        """Retention window as a duration."""
        return timedelta(days=self.retention_days)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls, prefix: str = "SOFTPURGE_") -> "PurgeConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]

            field_type = field_info.annotation

            # Handle Optional types
            if get_origin(field_type) is Union:
                args = get_args(field_type)
                field_type = next((arg for arg in args if arg is not type(None)), str)

            try:
                if field_type == bool:
                    config_dict[field_name] = value.lower() in (
                        "true",
                        "1",
                        "yes",
                        "on",
                    )
                elif field_type == int:
                    config_dict[field_name] = int(value)
                elif field_type == float:
                    config_dict[field_name] = float(value)
                elif isinstance(field_type, type) and issubclass(field_type, Enum):
                    config_dict[field_name] = field_type(value)
                else:
                    config_dict[field_name] = value
            except (ValueError, TypeError):
                # Let model validation report the bad raw value
                config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PurgeConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to a ``.json``, ``.yaml`` or ``.yml`` file

        Returns:
            Configuration instance
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")

        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")

        return cls.model_validate(data)


# Global configuration instance
_config: Optional[PurgeConfig] = None


def get_config() -> PurgeConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration, loaded from the environment on first use
    """
    global _config

    if _config is None:
        _config = PurgeConfig.from_env()

    return _config


def set_config(config: PurgeConfig) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> PurgeConfig:
    """
    Configure softpurge with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = PurgeConfig(**kwargs)
    else:
        config_dict = _config.to_dict()
        config_dict.update(kwargs)
        _config = PurgeConfig(**config_dict)

    return _config
