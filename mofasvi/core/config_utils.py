"""Configuration utilities for safe and consistent config access."""

import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .config_schema import ConfigurationValidator, RunConfiguration
from .error_handling import InvalidConfigError

logger = logging.getLogger(__name__)


def safe_get(config: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """
    Safely get nested configuration values.

    Parameters
    ----------
    config : Dict[str, Any]
        Configuration dictionary
    *keys : str
        Nested keys to access (e.g., 'training', 'batch_size')
    default : Any, optional
        Default value if key not found

    Returns
    -------
    Any
        Configuration value or default

    Examples
    --------
    >>> config = {'training': {'batch_size': 0.25}}
    >>> safe_get(config, 'training', 'batch_size', default=0.5)
    0.25
    >>> safe_get(config, 'missing', 'key', default='fallback')
    'fallback'
    """
    current = config
    try:
        for key in keys:
            current = current[key]
        return current
    except (KeyError, TypeError):
        return default


def load_config_dict(filepath: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML configuration file into a dictionary.

    An empty file yields an empty dictionary.

    Raises
    ------
    InvalidConfigError
        If the file is not valid YAML or its top level is not a mapping
    """
    filepath = Path(filepath)
    try:
        with open(filepath, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"Could not parse configuration file {filepath}: {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise InvalidConfigError(
            f"Configuration file {filepath} must contain a mapping, got {type(config).__name__}"
        )
    logger.debug(f"Loaded configuration from {filepath}")
    return config


def load_config(filepath: Union[str, Path]) -> RunConfiguration:
    """Load, merge with defaults and validate a YAML configuration file."""
    return ConfigurationValidator.build(load_config_dict(filepath))


def save_config(config: RunConfiguration, filepath: Union[str, Path]) -> None:
    """Write a validated configuration back to YAML."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, indent=2)
    logger.debug(f"Saved configuration to {filepath}")


def update_config_safely(
    config: Dict[str, Any], updates: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Apply nested updates to a configuration dictionary without mutating it.

    Values of ``None`` in ``updates`` are ignored, so command-line flags that
    were not given leave the file configuration untouched.

    Parameters
    ----------
    config : Dict[str, Any]
        Base configuration
    updates : Dict[str, Any]
        Nested updates, e.g. ``{'training': {'batch_size': 0.25}}``

    Returns
    -------
    Dict[str, Any]
        New configuration dictionary
    """
    updated = {key: (dict(value) if isinstance(value, dict) else value)
               for key, value in config.items()}
    for section, values in updates.items():
        if isinstance(values, dict):
            target = updated.setdefault(section, {})
            for key, value in values.items():
                if value is not None:
                    target[key] = value
        elif values is not None:
            updated[section] = values
    return updated
