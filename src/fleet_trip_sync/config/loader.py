# fleet_trip_sync/config/loader.py
"""
Configuration Loading Logic.

This module handles the retrieval, parsing, and initial validation of the
service configuration. It bridges raw YAML files on disk and the strictly
typed Pydantic models defined in `config_models.py`.

Responsibilities:
    1.  File I/O: Locating and reading the configuration file.
    2.  Parsing: Converting YAML text into Python dictionaries.
    3.  Validation: Instantiating the `FleetSyncConfig` model to enforce types.
    4.  Error Handling: Capturing low-level I/O or parsing errors and logging
        them with context before raising.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from fleet_trip_sync.config.config_models import FleetSyncConfig

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH: Path = Path('config/fleet_sync.yaml')


def load_config(config_path: Path | str | None = None) -> FleetSyncConfig:
    """Load and validate service configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file (relative or absolute).
            If None, defaults to 'config/fleet_sync.yaml' relative to the
            current working directory.

    Returns:
        Validated FleetSyncConfig instance ready for use.

    Raises:
        FileNotFoundError: If config file does not exist at the specified path.
        yaml.YAMLError: If YAML file is malformed or cannot be parsed.
        ValueError: If configuration fails Pydantic validation or the file
            does not contain a mapping.

    Example:
        >>> config = load_config('config/fleet_sync.yaml')
        >>> print(config.vendor.base_url)
        'https://api.gps51.example'
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        logger.debug('No config path provided, using default: %s', DEFAULT_CONFIG_PATH)
    else:
        config_path = Path(config_path)

    logger.info('Loading fleet sync configuration from: %s', config_path)

    if not config_path.exists():
        error_message: str = f'Configuration file not found: {config_path}'
        logger.error(error_message)
        raise FileNotFoundError(error_message)

    try:
        with Path.open(config_path, encoding='utf-8') as config_file:
            raw_config_data: Any = yaml.safe_load(config_file)
    except yaml.YAMLError as error:
        error_message = f'Failed to parse YAML configuration: {error}'
        logger.error(error_message)
        raise yaml.YAMLError(error_message) from error

    if not isinstance(raw_config_data, dict):
        error_message = (
            f'Configuration root must be a mapping, got {type(raw_config_data).__name__}'
        )
        logger.error(error_message)
        raise ValueError(error_message)

    try:
        validated_config = FleetSyncConfig(**raw_config_data)
    except ValueError as error:
        error_message = f'Configuration validation failed: {error}'
        logger.error(error_message)
        raise ValueError(error_message) from error

    logger.info('Configuration loaded and validated successfully')
    return validated_config
