"""Pytest fixtures and configuration for inbox triage tests.

Provides common fixtures for configuration and the database.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from inbox_triage.config import reset_config
from inbox_triage.config_schema import AppConfig
from inbox_triage.db.store import DatabaseStore


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

thresholds:
  high: 0.85
  low: 0.46

batch:
  default_limit: 50
  max_limit: 500
  max_ai_limit: 10
  requests_per_minute: 1000
  max_concurrency: 2

learning:
  repetition_threshold: 2
  auto_apply: false

tenants:
  acme:
    learning:
      repetition_threshold: 3
      auto_apply: true
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "thresholds": {"high": 0.85, "low": 0.46},
        "batch": {
            "default_limit": 50,
            "max_limit": 500,
            "max_ai_limit": 10,
            "requests_per_minute": 1000,
            "max_concurrency": 2,
        },
        "learning": {"repetition_threshold": 2, "auto_apply": False, "min_email_count": 3},
        "llm_logging": {"enabled": False},
        "schedule": {"enabled": False},
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
    """Set the INBOX_TRIAGE_CONFIG_PATH environment variable."""
    old_value = os.environ.get("INBOX_TRIAGE_CONFIG_PATH")
    os.environ["INBOX_TRIAGE_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["INBOX_TRIAGE_CONFIG_PATH"]
    else:
        os.environ["INBOX_TRIAGE_CONFIG_PATH"] = old_value


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
