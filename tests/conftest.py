"""Pytest fixtures and configuration for job tracker tests.

Provides common fixtures for configuration, database, and mocking.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from jobtracker.config import CONFIG_PATH_ENV, reset_config
from jobtracker.config_schema import AppConfig
from jobtracker.core.logging import clear_sync_context
from jobtracker.core.rate_limiter import reset_buckets


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def reset_rate_limits() -> Generator[None, None, None]:
    """Give every test fresh token buckets and no correlation ID."""
    reset_buckets()
    clear_sync_context()
    yield
    reset_buckets()


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

google:
  client_id: "test-client-id.apps.googleusercontent.com"

sync:
  interval_hours: 6
  user_delay_seconds: 0
  lookback_days: 90
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "google": {
            "client_id": "test-client-id.apps.googleusercontent.com",
        },
        "sync": {
            "interval_hours": 6,
            "user_delay_seconds": 0,
            "first_run_delay_seconds": 60,
            "lookback_days": 90,
            "max_results": 100,
            "body_max_chars": 2000,
        },
        "extraction": {
            "model": "claude-test-model",
            "confidence_threshold": 0.6,
            "requests_per_second": 50,
        },
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
    """Point JOBTRACKER_CONFIG_PATH at the temporary config file."""
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
