"""Configuration loader with hot-reload support.

Loads config.yaml, validates it against the AppConfig schema, and keeps a
thread-safe singleton that can be refreshed when the file changes on disk.
Every section has defaults, so a missing file is only an error when the path
was given explicitly.

Usage:
    from mailpilot.config import get_config, reload_config_if_changed

    config = get_config()

    # Call before each batch to pick up edits without a restart
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailpilot.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailpilot.core.errors import ConfigLoadError, ConfigValidationError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "MAILPILOT_CONFIG_PATH"

_config_lock = threading.Lock()
_current_config: AppConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def _get_config_path() -> tuple[Path, bool]:
    """Return the config path and whether it was explicitly requested."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path), True
    return DEFAULT_CONFIG_PATH, False


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors as one actionable line per field."""
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"]) or "<root>"
        if err["type"] == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        else:
            messages.append(f"  - Field '{field_path}': {err['msg']}")
    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML mapping.

    Raises:
        ConfigLoadError: If the file is missing, unparsable, or not a mapping
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


def _validate_config(data: dict[str, Any], source: str) -> AppConfig:
    """Validate parsed data against the AppConfig schema.

    Raises:
        ConfigValidationError: If validation fails or the schema version is too new
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {source}:\n{format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade mailpilot or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from disk, bypassing the singleton.

    When no path is given and neither MAILPILOT_CONFIG_PATH nor the default
    file exists, built-in defaults are returned.

    Raises:
        ConfigLoadError: If an explicitly requested file cannot be loaded
        ConfigValidationError: If validation fails
    """
    if path is not None:
        config_path, explicit = path, True
    else:
        config_path, explicit = _get_config_path()

    if not explicit and not config_path.exists():
        logger.info("No configuration file found, using defaults", path=str(config_path))
        return AppConfig()

    logger.debug("Loading configuration", path=str(config_path))
    config = _validate_config(_load_yaml(config_path), str(config_path))

    logger.info(
        "Configuration loaded successfully",
        path=str(config_path),
        schema_version=config.schema_version,
        primary_model=config.models.primary,
        fallback_model=config.models.fallback,
    )
    return config


def get_config() -> AppConfig:
    """Get the current configuration singleton, loading it on first use.

    Thread-safe: the batch runner and CLI may call this from different threads.
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _current_config is None:
            config_path, _ = _get_config_path()
            _current_config = load_config()
            if config_path.exists():
                _config_path = config_path
                _config_mtime = config_path.stat().st_mtime
        return _current_config


def reload_config_if_changed() -> bool:
    """Reload the singleton if the config file changed since it was loaded.

    Returns:
        True if the config was reloaded. An invalid edit keeps the previous
        config, logs a warning and returns False.
    """
    global _current_config, _config_mtime

    with _config_lock:
        if _config_path is None:
            return False

        try:
            current_mtime = _config_path.stat().st_mtime
        except OSError as e:
            logger.warning(
                "Failed to check config file mtime", path=str(_config_path), error=str(e)
            )
            return False

        if current_mtime <= _config_mtime:
            return False

        logger.info("Configuration file changed, attempting reload", path=str(_config_path))

        try:
            _current_config = load_config(_config_path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning(
                "Configuration reload failed, keeping previous config",
                path=str(_config_path),
                error=str(e),
            )
            # Don't retry the same broken file on every check
            _config_mtime = current_mtime
            return False

        _config_mtime = current_mtime
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without touching the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - primary model: {config.models.primary}\n"
        f"  - fallback model: {config.models.fallback or 'none'}\n"
        f"  - daily budget: {config.budget.default_daily_limit_cents} cents\n"
        f"  - tiers: high >= {config.defaults.high_priority_threshold}, "
        f"medium >= {config.defaults.medium_priority_threshold}",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config, _config_path, _config_mtime
    with _config_lock:
        _current_config = None
        _config_path = None
        _config_mtime = 0.0
