"""
Configuration system for convergedb using Pydantic.
"""

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .schema.reconciler import DEFAULT_OBSOLETE_PREFIX


class DatabaseConfig(BaseModel):
    """
    Database connection configuration.

    Only ``type`` is interpreted here; every other key is handed to the
    selected driver, which validates its own settings.
    """

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = Field(None, description="Driver name, e.g. 'postgres'")
    database: Optional[str] = Field(None, description="Database name")

    def to_driver_config(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SchemaManagementConfig(BaseModel):
    """Schema management configuration."""

    mode: Literal["apply", "dry_run"] = Field("apply", description="Reconciliation mode")
    obsolete_prefix: str = Field(
        DEFAULT_OBSOLETE_PREFIX, description="Prefix given to retired tables"
    )

    @field_validator("obsolete_prefix")
    @classmethod
    def validate_obsolete_prefix(cls, v):
        if not v or not v.strip():
            raise ValueError("Obsolete prefix must not be empty")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")
    rich: bool = Field(True, description="Render console logs with rich")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class ConvergeSettings(BaseSettings):
    """Main convergedb configuration."""

    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig, description="Database connection"
    )
    schema_management: SchemaManagementConfig = Field(
        default_factory=SchemaManagementConfig,
        description="Schema management configuration",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CONVERGEDB_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ConvergeSettings":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            # Expand environment variables in the data
            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def validate_config(self) -> None:
        """Check the settings needed before connecting."""
        if not self.database.type:
            raise ConfigurationError("Database configuration has no driver 'type'")
