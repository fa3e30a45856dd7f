"""Configuration loader with hot-reload support.

This module provides configuration loading from YAML with automatic validation
against the Pydantic schema and hot-reload on file changes.

Usage:
    from inbox_triage.config import get_config, reload_config_if_changed

    config = get_config()

    # Before each scheduled job
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from inbox_triage.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

# Default config path - can be overridden via environment variable
DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "INBOX_TRIAGE_CONFIG_PATH"

# Global state for config singleton and hot-reload
_config_lock = threading.Lock()
_current_config: AppConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def _get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into one line per field."""
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        msg = err["msg"]
        err_type = err["type"]

        if err_type == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err_type == "extra_forbidden":
            messages.append(f"  - Unknown field '{field_path}'")
        elif err_type in ("float_type", "float_parsing"):
            messages.append(f"  - Field '{field_path}' must be a number")
        elif err_type in ("int_type", "int_parsing"):
            messages.append(f"  - Field '{field_path}' must be an integer")
        else:
            messages.append(f"  - Field '{field_path}': {msg}")

    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML mapping.

    Raises:
        ConfigLoadError: If file not found, not a mapping, or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate config data against the Pydantic schema.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        error_details = _format_validation_errors(e)
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{error_details}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Upgrade inbox-triage or downgrade the config."
        )

    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Always reads fresh from disk. For cached access use get_config().

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or _get_config_path()

    logger.debug("config_loading", path=str(config_path))

    data = _load_yaml(config_path)
    config = _validate_config(data, config_path)

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        tenants_count=len(config.tenants),
    )

    return config


def get_config() -> AppConfig:
    """Get the current configuration singleton.

    On first call, loads configuration from disk. Subsequent calls return
    the cached config. Thread-safe: the API server's scheduler thread and the
    event loop may both call this.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _current_config is None:
            _config_path = _get_config_path()
            _current_config = load_config(_config_path)
            _config_mtime = _config_path.stat().st_mtime

        return _current_config


def reload_config_if_changed() -> bool:
    """Check if the config file has changed and reload if so.

    Returns:
        True if config was reloaded, False if unchanged or the new file
        is invalid (the previous config is kept in that case)
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _config_path is None:
            return False

        try:
            current_mtime = _config_path.stat().st_mtime
        except OSError as e:
            logger.warning("config_mtime_check_failed", path=str(_config_path), error=str(e))
            return False

        if current_mtime <= _config_mtime:
            return False

        logger.info("config_changed", path=str(_config_path))

        try:
            new_config = load_config(_config_path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning(
                "config_reload_failed",
                path=str(_config_path),
                error=str(e),
            )
            # Don't retry the same broken file on every check
            _config_mtime = current_mtime
            return False

        _current_config = new_config
        _config_mtime = current_mtime
        logger.info("config_reloaded", path=str(_config_path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without loading it into the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or _get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - thresholds: high={config.thresholds.high} low={config.thresholds.low}\n"
        f"  - classifier model: {config.classifier.model}\n"
        f"  - auto-apply learned rules: {config.learning.auto_apply}\n"
        f"  - {len(config.tenants)} tenant overrides",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config, _config_path, _config_mtime
    with _config_lock:
        _current_config = None
        _config_path = None
        _config_mtime = 0.0
