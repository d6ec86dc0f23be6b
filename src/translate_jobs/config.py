"""
Configuration management for translate-jobs.

Handles loading configuration from YAML files and environment variables.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if present (before Settings initialization)
load_dotenv()


class LLMProvider(str, Enum):
    """Available LLM providers."""

    OPENROUTER = "openrouter"


class ProjectConfig(BaseModel):
    """Project metadata configuration."""

    name: str = Field(default="translate-jobs")


class PathsConfig(BaseModel):
    """Configuration for file paths."""

    database_path: Path = Field(
        default=Path("./data/translate_jobs.duckdb"), validate_default=True
    )
    logs: Path = Field(default=Path("./logs"), validate_default=True)

    @field_validator("database_path", "logs")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """Expand user home directory and make path absolute."""
        return Path(v).expanduser().resolve()


class LimitsConfig(BaseModel):
    """Admission control limits."""

    calls_per_hour: int = Field(default=50, ge=1, le=1000)
    calls_per_day: int = Field(default=500, ge=1, le=10000)
    min_interval_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    # Hourly call count that trips the emergency stop (0 = disabled)
    emergency_stop_threshold: int = Field(default=45, ge=0, le=1000)

    @model_validator(mode="after")
    def check_day_covers_hour(self) -> LimitsConfig:
        """The daily cap must not be lower than the hourly cap."""
        if self.calls_per_day < self.calls_per_hour:
            raise ValueError(
                f"calls_per_day ({self.calls_per_day}) must be >= "
                f"calls_per_hour ({self.calls_per_hour})"
            )
        return self


class LocksConfig(BaseModel):
    """Deduplication lock configuration."""

    # Must exceed the worst-case job duration
    ttl_seconds: float = Field(default=3600.0, ge=1.0)
    sweep_on_acquire: bool = Field(default=True)


class TranslationConfig(BaseModel):
    """Configuration for the translation collaborator."""

    provider: LLMProvider = Field(default=LLMProvider.OPENROUTER)
    default_model: str = Field(default="anthropic/claude-sonnet-4.5")
    source_language: str = Field(default="en")
    openrouter_api_key: str = Field(default="")
    timeout_seconds: float = Field(default=120.0, ge=30.0, le=300.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=256, le=32000)


class BatchConfig(BaseModel):
    """Configuration for batch translation."""

    delay_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    max_too_soon_retries: int = Field(default=2, ge=0, le=10)


class UsageConfig(BaseModel):
    """Configuration for the usage log."""

    max_entries: int = Field(default=500, ge=10, le=100000)
    retention_days: int = Field(default=30, ge=1, le=3650)


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO")
    file: Path | None = Field(default=Path("./logs/translate_jobs.log"))
    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    backup_count: int = Field(default=5, ge=1, le=20)

    @field_validator("level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        """Normalise level names."""
        return v.upper()


class Settings(BaseSettings):
    """Main settings class that combines all configurations."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        extra="ignore",
    )

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    locks: LocksConfig = Field(default_factory=LocksConfig)
    translation: TranslationConfig = Field(default_factory=TranslationConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def __init__(self, **data: Any) -> None:
        """Initialize with environment variable fallback for the API key."""
        super().__init__(**data)
        if not self.translation.openrouter_api_key:
            self.translation.openrouter_api_key = os.getenv("OPENROUTER_API_KEY", "")

    @classmethod
    def from_yaml(cls, path: Path | str) -> Settings:
        """Load settings from a YAML file, with environment variable overrides."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        yaml_config = _substitute_env_vars(yaml_config)

        return cls(**yaml_config)


def _substitute_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively substitute ${ENV_VAR} patterns in config values."""
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = _substitute_env_vars(value)
        elif isinstance(value, str) and value.startswith("${") and value.endswith("}"):
            result[key] = os.getenv(value[2:-1], "")
        elif isinstance(value, list):
            result[key] = [
                _substitute_env_vars(item) if isinstance(item, dict) else item for item in value
            ]
        else:
            result[key] = value
    return result


def load_config(path: Path | str | None = None) -> Settings:
    """
    Load configuration from YAML file or return defaults.

    Args:
        path: Path to YAML config file. If None, looks for config.yaml in current directory.

    Returns:
        Settings instance with merged YAML and environment configurations.
    """
    if path is None:
        for candidate in (Path("config.yaml"), Path("config.yml"), Path(".translate-jobs.yaml")):
            if candidate.exists():
                path = candidate
                break

    if path is not None:
        return Settings.from_yaml(path)

    return Settings()


DEFAULT_CONFIG = """# translate-jobs configuration
project:
  name: "my-translation-site"

paths:
  database_path: "./data/translate_jobs.duckdb"
  logs: "./logs"

limits:
  # Maximum AI calls per fixed hour / day window
  calls_per_hour: 50
  calls_per_day: 500
  # Minimum spacing between two calls (seconds)
  min_interval_seconds: 2
  # Hourly call count that trips the emergency stop (0 disables)
  emergency_stop_threshold: 45

locks:
  # Locks older than this are considered abandoned (seconds)
  ttl_seconds: 3600
  sweep_on_acquire: true

translation:
  provider: "openrouter"
  default_model: "anthropic/claude-sonnet-4.5"
  source_language: "en"
  openrouter_api_key: "${OPENROUTER_API_KEY}"
  timeout_seconds: 120

batch:
  delay_seconds: 0.5
  max_too_soon_retries: 2

usage:
  max_entries: 500
  retention_days: 30

logging:
  level: "INFO"
  file: "./logs/translate_jobs.log"
"""


def create_default_config(path: Path | str = "config.yaml") -> Path:
    """Create a default configuration file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(DEFAULT_CONFIG)
    return path
