"""Tests for configuration loading and validation."""

from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from jobtracker.cli import cli, main
from jobtracker.config import get_config, load_config, reset_config, validate_config_file
from jobtracker.config_schema import AppConfig
from jobtracker.core.errors import ConfigLoadError, ConfigValidationError


class TestSchema:
    def test_defaults(self) -> None:
        config = AppConfig(google={"client_id": "abc"})

        assert config.sync.interval_hours == 6
        assert config.sync.lookback_days == 90
        assert config.sync.max_results == 100
        assert config.sync.body_max_chars == 2000
        assert config.extraction.confidence_threshold == 0.6
        assert config.database.path == "data/jobtracker.db"

    def test_google_client_id_required(self) -> None:
        with pytest.raises(ValidationError):
            AppConfig()
        with pytest.raises(ValidationError):
            AppConfig(google={"client_id": "  "})

    def test_rejects_out_of_range_threshold(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["extraction"]["confidence_threshold"] = 1.5
        with pytest.raises(ValidationError):
            AppConfig(**sample_config_dict)

    def test_rejects_database_path_traversal(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["database"] = {"path": "../outside.db"}
        with pytest.raises(ValidationError):
            AppConfig(**sample_config_dict)


class TestLoading:
    def test_load_config(self, config_file: Path) -> None:
        config = load_config(config_file)
        assert config.google.client_id == "test-client-id.apps.googleusercontent.com"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("google: [unclosed")
        with pytest.raises(ConfigLoadError):
            load_config(path)

    def test_validation_errors_name_the_field(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("sync:\n  interval_hours: 6\n")
        with pytest.raises(ConfigValidationError, match="google"):
            load_config(path)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\ngoogle:\n  client_id: abc\n")
        with pytest.raises(ConfigValidationError, match="newer"):
            load_config(path)

    def test_get_config_is_cached(self, set_config_env: None) -> None:
        assert get_config() is get_config()
        reset_config()
        assert get_config() is not None

    def test_validate_config_file(self, config_file: Path, tmp_path: Path) -> None:
        ok, message = validate_config_file(config_file)
        assert ok
        assert "Configuration valid" in message

        ok, message = validate_config_file(tmp_path / "missing.yaml")
        assert not ok
        assert message.startswith("Load error")


class TestCli:
    def test_validate_config_command(self, config_file: Path) -> None:
        result = CliRunner().invoke(cli, ["validate-config", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_validate_config_command_failure(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            cli, ["validate-config", "--config", str(tmp_path / "missing.yaml")]
        )
        assert result.exit_code == 1

    @pytest.mark.parametrize("args", [["sync"], ["sync", "--owner", "abc", "--all"]])
    def test_sync_requires_exactly_one_target(self, args: list[str]) -> None:
        result = CliRunner().invoke(cli, args)
        assert result.exit_code == 2
        assert "exactly one" in result.output

    def test_entry_point_loads_dotenv_before_dispatch(self) -> None:
        calls: list[str] = []

        with (
            patch("jobtracker.cli.load_dotenv", side_effect=lambda: calls.append("dotenv")),
            patch("jobtracker.cli.cli", side_effect=lambda: calls.append("cli")),
        ):
            main()

        assert calls == ["dotenv", "cli"]
