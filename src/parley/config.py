"""Configuration loading and validation for Parley."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

# Environment variable -> (section, key); a None section targets the root
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "PARLEY_DATA_DIR": (None, "data_dir"),
    "PARLEY_LOG_LEVEL": (None, "log_level"),
    "PARLEY_LOG_JSON": (None, "log_json"),
    "PARLEY_DATABASE_PATH": ("database", "path"),
    "PARLEY_MAX_MESSAGE_LENGTH": ("chat", "max_message_length"),
    "PARLEY_ALLOW_UPLOADS": ("chat", "allow_uploads"),
}


def apply_env_overrides(raw: dict) -> dict:
    """Overlay PARLEY_* environment variables onto raw config data.

    Values are passed through as strings; boolean and integer fields are
    coerced by the models during validation.
    """
    for env_name, (section, key) in ENV_OVERRIDES.items():
        if env_name not in os.environ:
            continue
        if section is None:
            target = raw
        else:
            target = raw[section] = raw.get(section) or {}
        target[key] = os.environ[env_name]
    return raw


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "parley.db"
    busy_timeout_seconds: float = 15.0


class ChatConfig(BaseModel):
    """Message ingestion behavior."""

    max_message_length: int = Field(6000, gt=0)
    allow_uploads: bool = True
    # Whether the conversation root itself carries the thread reference
    original_message_in_thread: bool = True
    # Thread replies advance the thread read pointer; optionally the channel one too
    advance_channel_read_on_thread_reply: bool = False
    # Off leaves a new reply unread for the thread's original author
    mark_reply_read_for_original_author: bool = True
    max_reply_chain_depth: int = Field(10000, gt=0)


class Config(BaseModel):
    """Root configuration for Parley."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def database_path(self) -> Path:
        """Get full path to database file."""
        return self.data_dir / self.database.path

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        apply_env_overrides(yaml_config)
        return cls.model_validate(yaml_config)

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Args:
            config_path: Optional path to YAML configuration file.

        Returns:
            Config instance (from file or defaults).
        """
        if config_path is None:
            for path in [Path("config.yaml"), Path("config.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls()

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls()
