"""Tool-level configuration for l10n runs."""
import logging
import os
import sys
from dataclasses import dataclass
from typing import Dict, Any

import yaml
from dotenv import load_dotenv

from l10n.logging_config import setup_logger

FAILURE_POLICIES = ("fail_fast", "continue")

DEFAULT_STATE_DIR = ".l10n"
DEFAULT_RETRIES = 2
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
DEFAULT_REQUESTS_PER_MINUTE = 60


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Core paths
    root: str
    state_dir: str

    # Logging
    log_level: str
    log_file_path: str
    log_to_console: bool

    # Processing settings
    default_retries: int
    request_timeout_seconds: int
    requests_per_minute: int
    failure_policy: str

    # Dry-run token estimates
    token_model: str

    @property
    def continue_on_error(self) -> bool:
        return self.failure_policy == "continue"


def default_app_config(root: str) -> AppConfig:
    """Build an AppConfig with built-in defaults and no file or env lookups."""
    return AppConfig(
        root=os.path.abspath(root),
        state_dir=DEFAULT_STATE_DIR,
        log_level="INFO",
        log_file_path="",
        log_to_console=True,
        default_retries=DEFAULT_RETRIES,
        request_timeout_seconds=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        requests_per_minute=DEFAULT_REQUESTS_PER_MINUTE,
        failure_policy="fail_fast",
        token_model="gpt-4o",
    )


def _load_dotenv_files(root: str) -> None:
    """Load the project's .env file, if any, without overriding the environment."""
    dotenv_path = os.path.join(root, '.env')
    if os.path.exists(dotenv_path):
        load_dotenv(dotenv_path)


def _load_yaml_config(root: str) -> Dict[str, Any]:
    """Load the optional YAML settings file. Problems fall back to defaults."""
    default_config_path = os.path.join(root, DEFAULT_STATE_DIR, 'config.yaml')
    config_file = os.environ.get('L10N_CONFIG_FILE', default_config_path)

    if not os.path.isabs(config_file):
        config_file = os.path.abspath(os.path.join(root, config_file))

    config: Dict[str, Any] = {}
    if not os.path.exists(config_file):
        return config

    try:
        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
        if loaded_config is None:
            print(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.",
                  file=sys.stderr)
        elif isinstance(loaded_config, dict):
            config = loaded_config
        else:
            print(f"Error: Configuration file '{config_file}' must contain a YAML dictionary. Using defaults.",
                  file=sys.stderr)
    except yaml.YAMLError as e:
        print(f"Error: Invalid YAML in configuration file '{config_file}': {e}", file=sys.stderr)
        print("Please check your YAML syntax. Using default configuration.", file=sys.stderr)
    except OSError as e:
        print(f"Error: Could not read configuration file '{config_file}': {e}", file=sys.stderr)
        print("Using default configuration.", file=sys.stderr)

    return config


def _int_setting(name: str, value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        print(f"Warning: '{name}' must be an integer, got {value!r}. Using {default}.", file=sys.stderr)
        return default
    return parsed


def _resolve_failure_policy(value: Any) -> str:
    policy = str(value or "fail_fast").strip().lower().replace("-", "_")
    if policy not in FAILURE_POLICIES:
        print(f"Warning: unknown failure_policy {value!r}. Using 'fail_fast'.", file=sys.stderr)
        return "fail_fast"
    return policy


def load_app_config(root: str) -> AppConfig:
    """
    Load tool settings from ``.env``, the YAML settings file and environment overrides,
    then configure logging.

    Args:
        root: The project root directory.

    Returns:
        AppConfig: The loaded application configuration.
    """
    root = os.path.abspath(root)

    _load_dotenv_files(root)
    config = _load_yaml_config(root)

    log_config = config.get('logging') or {}
    log_level = os.environ.get('L10N_LOG_LEVEL', log_config.get('log_level', 'INFO')).upper()
    state_dir = config.get('state_dir', DEFAULT_STATE_DIR)
    log_file_path = log_config.get('log_file_path', os.path.join(state_dir, 'logs', 'l10n.log'))
    if log_file_path and not os.path.isabs(log_file_path):
        log_file_path = os.path.join(root, log_file_path)
    log_to_console = bool(log_config.get('log_to_console', True))

    setup_logger(log_level, log_file_path, log_to_console)
    logger = logging.getLogger(__name__)

    default_retries = _int_setting(
        'default_retries',
        os.environ.get('L10N_RETRIES', config.get('default_retries', DEFAULT_RETRIES)),
        DEFAULT_RETRIES,
    )
    if default_retries < 0:
        logger.warning("default_retries must not be negative, got %d. Using %d.", default_retries, DEFAULT_RETRIES)
        default_retries = DEFAULT_RETRIES

    app_config = AppConfig(
        root=root,
        state_dir=state_dir,
        log_level=log_level,
        log_file_path=log_file_path,
        log_to_console=log_to_console,
        default_retries=default_retries,
        request_timeout_seconds=_int_setting(
            'request_timeout_seconds',
            config.get('request_timeout_seconds', DEFAULT_REQUEST_TIMEOUT_SECONDS),
            DEFAULT_REQUEST_TIMEOUT_SECONDS,
        ),
        requests_per_minute=_int_setting(
            'requests_per_minute',
            config.get('requests_per_minute', DEFAULT_REQUESTS_PER_MINUTE),
            DEFAULT_REQUESTS_PER_MINUTE,
        ),
        failure_policy=_resolve_failure_policy(
            os.environ.get('L10N_FAILURE_POLICY', config.get('failure_policy', 'fail_fast'))
        ),
        token_model=config.get('token_model', 'gpt-4o'),
    )
    logger.debug("Loaded settings for project root '%s'.", root)
    return app_config
