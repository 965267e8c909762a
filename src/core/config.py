"""
Relay Configuration

Loads the YAML configuration file into validated pydantic models.

Usage:
    from src.core.config import load_config

    settings = load_config("config.yaml")
    settings.app.poll_interval_seconds

Environment Variables:
    RELAY_CONFIG: Path to the YAML file (default: config.yaml)
    RELAY_DB_PATH: SQLite database path (default: {app.data_dir}/relay.db)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


def _non_blank(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must be non-empty")
    return value


class AppSettings(BaseModel):
    """Worker and storage settings."""

    data_dir: str
    poll_interval_ms: int = 500
    max_backoff_seconds: int = 60
    base_backoff_seconds: int = 5
    delivery_timeout_seconds: float = 30.0
    lease_seconds: int = 300
    max_attempts: Optional[int] = None

    @field_validator("data_dir")
    @classmethod
    def check_data_dir(cls, value: str) -> str:
        return _non_blank(value)

    @field_validator("poll_interval_ms", "max_backoff_seconds", "base_backoff_seconds", "lease_seconds")
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("delivery_timeout_seconds")
    @classmethod
    def check_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("max_attempts")
    @classmethod
    def check_attempts(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("must be > 0 when set")
        return value

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def database_path(self) -> str:
        return os.getenv("RELAY_DB_PATH", str(Path(self.data_dir).expanduser() / "relay.db"))


class MainFields(BaseModel):
    title: str

    @field_validator("title")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _non_blank(value)


class MainDatabase(BaseModel):
    id: str
    fields: MainFields

    @field_validator("id")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _non_blank(value)


class ResourceFields(BaseModel):
    relation: str
    order: str
    text: str
    media: str

    @field_validator("relation", "order", "text", "media")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _non_blank(value)


class ResourceDatabase(BaseModel):
    id: str
    fields: ResourceFields

    @field_validator("id")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _non_blank(value)


class Databases(BaseModel):
    main: MainDatabase
    resource: ResourceDatabase


class NotionSettings(BaseModel):
    """Notion API credentials and database field mapping."""

    token: str
    version: str = "2022-06-28"
    base_url: str = "https://api.notion.com/"
    databases: Databases

    @field_validator("token", "version")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _non_blank(value)


class Settings(BaseModel):
    """Root configuration mirroring the YAML layout."""

    app: AppSettings
    notion: NotionSettings
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def ensure_dirs(self) -> None:
        """Create `app.data_dir` if missing."""
        Path(self.app.data_dir).expanduser().mkdir(parents=True, exist_ok=True)


def parse_config(data: Dict[str, Any]) -> Settings:
    """Validate an already-parsed mapping."""
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e


def load_config(path: Optional[Union[str, Path]] = None) -> Settings:
    """
    Load configuration from a YAML file and validate it.

    Args:
        path: File to read; falls back to $RELAY_CONFIG, then config.yaml

    Returns:
        Validated Settings

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    config_path = Path(path or os.getenv("RELAY_CONFIG", DEFAULT_CONFIG_PATH))

    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML parse error in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    settings = parse_config(data)
    logger.info(f"Loaded configuration from {config_path}")
    return settings
