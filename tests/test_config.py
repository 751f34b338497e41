"""Tests for the configuration module."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from parley.config import ChatConfig, Config, DatabaseConfig


@pytest.fixture
def sample_config_yaml(tmp_path: Path) -> Path:
    """Create a sample config file for testing."""
    config = {
        "data_dir": str(tmp_path / "data"),
        "log_level": "DEBUG",
        "log_json": False,
        "database": {"path": "test.db", "busy_timeout_seconds": 5},
        "chat": {
            "max_message_length": 500,
            "allow_uploads": False,
            "original_message_in_thread": False,
            "advance_channel_read_on_thread_reply": True,
        },
    }
    config_path = tmp_path / "config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f)
    return config_path


def test_config_load(sample_config_yaml: Path) -> None:
    """Test loading a valid configuration file."""
    config = Config.load(sample_config_yaml)

    assert config.log_level == "DEBUG"
    assert config.log_json is False
    assert config.database.path == "test.db"
    assert config.database.busy_timeout_seconds == 5
    assert config.chat.max_message_length == 500
    assert config.chat.allow_uploads is False
    assert config.chat.original_message_in_thread is False
    assert config.chat.advance_channel_read_on_thread_reply is True


def test_config_load_empty_file(tmp_path: Path) -> None:
    """An empty file yields defaults."""
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("")

    config = Config.load(config_path)

    assert config.chat == ChatConfig()


def test_config_load_not_found() -> None:
    """Test that missing config file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        Config.load(Path("/nonexistent/config.yaml"))


def test_config_load_or_default_missing() -> None:
    """Test that load_or_default returns defaults when file missing."""
    config = Config.load_or_default(Path("/nonexistent/config.yaml"))

    assert config.log_level == "INFO"
    assert config.log_json is True


def test_config_load_or_default_finds_local_file(tmp_path: Path, monkeypatch) -> None:
    """Without a path, config.yaml in the working directory is used."""
    (tmp_path / "config.yaml").write_text(yaml.dump({"log_level": "WARNING"}))
    monkeypatch.chdir(tmp_path)

    config = Config.load_or_default()

    assert config.log_level == "WARNING"


def test_config_defaults() -> None:
    """Test that default values are set correctly."""
    config = Config()

    assert config.data_dir == Path("./data")
    assert config.log_level == "INFO"
    assert config.log_json is True
    assert config.database == DatabaseConfig()
    assert config.database.path == "parley.db"
    assert config.chat.max_message_length == 6000
    assert config.chat.allow_uploads is True
    assert config.chat.original_message_in_thread is True
    assert config.chat.advance_channel_read_on_thread_reply is False
    assert config.chat.mark_reply_read_for_original_author is True


def test_config_database_path() -> None:
    """Test database path property."""
    config = Config(data_dir=Path("/var/parley"))

    assert config.database_path == Path("/var/parley/parley.db")


def test_config_env_override(sample_config_yaml: Path, monkeypatch) -> None:
    """Test environment variable overrides."""
    monkeypatch.setenv("PARLEY_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("PARLEY_LOG_JSON", "true")
    monkeypatch.setenv("PARLEY_DATA_DIR", "/srv/parley")

    config = Config.load(sample_config_yaml)

    assert config.log_level == "ERROR"
    assert config.log_json is True
    assert config.data_dir == Path("/srv/parley")


def test_config_env_override_nested_sections(sample_config_yaml: Path, monkeypatch) -> None:
    """Overrides reach the database and chat sections and are coerced."""
    monkeypatch.setenv("PARLEY_DATABASE_PATH", "override.db")
    monkeypatch.setenv("PARLEY_MAX_MESSAGE_LENGTH", "42")
    monkeypatch.setenv("PARLEY_ALLOW_UPLOADS", "true")

    config = Config.load(sample_config_yaml)

    assert config.database.path == "override.db"
    assert config.database.busy_timeout_seconds == 5
    assert config.chat.max_message_length == 42
    assert config.chat.allow_uploads is True
    assert config.chat.original_message_in_thread is False


def test_config_env_override_fills_empty_section(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("chat:\n")
    monkeypatch.setenv("PARLEY_MAX_MESSAGE_LENGTH", "10")

    assert Config.load(config_path).chat.max_message_length == 10


def test_config_log_level_is_normalized() -> None:
    assert Config(log_level="debug").log_level == "DEBUG"


def test_config_invalid_log_level() -> None:
    with pytest.raises(ValidationError):
        Config(log_level="LOUD")


@pytest.mark.parametrize("field", ["max_message_length", "max_reply_chain_depth"])
def test_chat_limits_must_be_positive(field: str) -> None:
    with pytest.raises(ValidationError):
        ChatConfig(**{field: 0})
