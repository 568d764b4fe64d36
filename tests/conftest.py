"""Pytest fixtures and configuration for inbox-actions tests.

Provides common fixtures for configuration, database, and time.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from inbox_actions.config import CONFIG_PATH_ENV, reset_config
from inbox_actions.config_schema import AppConfig
from inbox_actions.db.store import DatabaseStore


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

timezone: "UTC"

database:
  path: "data/test.db"

sync:
  first_sync_lookback_hours: 24
  max_emails_to_sync: 100
  max_emails_to_analyze: 50

retry:
  max_attempts: 3
  backoff_delays: [0, 0, 0]

extraction:
  locale: "en"
  default_due_hour: 18
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "timezone": "UTC",
        "sync": {
            "first_sync_lookback_hours": 24,
            "max_emails_to_sync": 100,
            "max_emails_to_analyze": 50,
        },
        "retry": {"max_attempts": 3, "backoff_delays": [0, 0, 0]},
        "oauth": {
            "google": {"client_id": "google-client-id"},
            "microsoft": {"client_id": "ms-client-id", "tenant_id": "test-tenant"},
        },
        "extraction": {"locale": "en", "default_due_hour": 18},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Point INBOX_ACTIONS_CONFIG_PATH at the temporary config file."""
    old_value = os.environ.get(CONFIG_PATH_ENV)
    os.environ[CONFIG_PATH_ENV] = str(config_file)
    yield
    if old_value is None:
        del os.environ[CONFIG_PATH_ENV]
    else:
        os.environ[CONFIG_PATH_ENV] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s
