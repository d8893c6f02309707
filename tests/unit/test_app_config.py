"""Unit tests for the app_config module."""
import os
from unittest.mock import patch

import yaml

from l10n.app_config import AppConfig, default_app_config, load_app_config


class TestAppConfig:
    """Test cases for the AppConfig dataclass."""

    def test_app_config_creation(self):
        config = AppConfig(
            root="/test/root",
            state_dir=".l10n",
            log_level="INFO",
            log_file_path="",
            log_to_console=False,
            default_retries=3,
            request_timeout_seconds=30,
            requests_per_minute=10,
            failure_policy="continue",
            token_model="gpt-4o",
        )

        assert config.root == "/test/root"
        assert config.default_retries == 3
        assert config.continue_on_error is True

    def test_default_app_config(self):
        config = default_app_config("/test/root")

        assert config.state_dir == ".l10n"
        assert config.default_retries == 2
        assert config.request_timeout_seconds == 60
        assert config.requests_per_minute == 60
        assert config.failure_policy == "fail_fast"
        assert config.continue_on_error is False
        assert config.log_file_path == ""


class TestLoadAppConfig:
    """Test cases for the load_app_config function."""

    def _write_config(self, project, data):
        project.write(".l10n/config.yaml", yaml.dump(data))

    def test_load_config_with_valid_yaml_file(self, project):
        self._write_config(project, {
            "default_retries": 4,
            "request_timeout_seconds": 15,
            "requests_per_minute": 120,
            "failure_policy": "continue",
            "token_model": "gpt-4o-mini",
            "logging": {"log_level": "debug", "log_file_path": "logs/run.log", "log_to_console": False},
        })

        with patch("l10n.app_config.setup_logger") as mock_logger:
            config = load_app_config(project.root)

        assert config.default_retries == 4
        assert config.request_timeout_seconds == 15
        assert config.requests_per_minute == 120
        assert config.failure_policy == "continue"
        assert config.token_model == "gpt-4o-mini"
        assert config.log_level == "DEBUG"
        assert config.log_file_path == os.path.join(project.root, "logs", "run.log")
        mock_logger.assert_called_once_with("DEBUG", os.path.join(project.root, "logs", "run.log"), False)

    def test_load_config_with_missing_file_uses_defaults(self, project):
        with patch("l10n.app_config.setup_logger"):
            config = load_app_config(project.root)

        assert config.default_retries == 2
        assert config.failure_policy == "fail_fast"
        assert config.state_dir == ".l10n"
        assert config.log_file_path == os.path.join(project.root, ".l10n", "logs", "l10n.log")

    def test_invalid_yaml_falls_back_to_defaults(self, project, capsys):
        project.write(".l10n/config.yaml", "default_retries: [unclosed\n")

        with patch("l10n.app_config.setup_logger"):
            config = load_app_config(project.root)

        assert config.default_retries == 2
        assert "Invalid YAML" in capsys.readouterr().err

    def test_non_mapping_yaml_falls_back_to_defaults(self, project, capsys):
        project.write(".l10n/config.yaml", "- just\n- a list\n")

        with patch("l10n.app_config.setup_logger"):
            config = load_app_config(project.root)

        assert config.requests_per_minute == 60
        assert "must contain a YAML dictionary" in capsys.readouterr().err

    def test_load_config_with_environment_overrides(self, project):
        self._write_config(project, {"default_retries": 1, "failure_policy": "fail_fast"})

        with patch("l10n.app_config.setup_logger"):
            with patch.dict(os.environ, {
                "L10N_RETRIES": "5",
                "L10N_FAILURE_POLICY": "continue",
                "L10N_LOG_LEVEL": "warning",
            }):
                config = load_app_config(project.root)

        assert config.default_retries == 5
        assert config.failure_policy == "continue"
        assert config.log_level == "WARNING"

    def test_config_file_env_var(self, project):
        project.write("settings/l10n.yaml", yaml.dump({"default_retries": 7}))

        with patch("l10n.app_config.setup_logger"):
            with patch.dict(os.environ, {"L10N_CONFIG_FILE": "settings/l10n.yaml"}):
                config = load_app_config(project.root)

        assert config.default_retries == 7

    def test_invalid_values_fall_back(self, project):
        self._write_config(project, {"default_retries": "many", "failure_policy": "sometimes"})

        with patch("l10n.app_config.setup_logger"):
            config = load_app_config(project.root)

        assert config.default_retries == 2
        assert config.failure_policy == "fail_fast"

    def test_load_config_with_dotenv_file(self, project):
        project.write(".env", "OPENAI_API_KEY=sk-test\n")

        with patch("l10n.app_config.setup_logger"):
            with patch("l10n.app_config.load_dotenv") as mock_load_dotenv:
                load_app_config(project.root)

        mock_load_dotenv.assert_called_once_with(os.path.join(project.root, ".env"))
