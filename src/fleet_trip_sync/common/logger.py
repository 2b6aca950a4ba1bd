# fleet_trip_sync/common/logger.py
"""
Logging configuration for the fleet_trip_sync package.

Provides centralized logging setup so that every module (client, stores,
sync engine, reconciliation job) writes through the same handlers and
format. Third-party loggers that are chatty at INFO (httpx logs one line per
request, SQLAlchemy echoes statements) are capped at WARNING unless the
package itself runs at DEBUG.
"""

import logging
import sys
from pathlib import Path
from typing import Final

from fleet_trip_sync.config import LoggingConfig

__all__: list[str] = ['setup_logger']

PACKAGE_LOGGER_NAME: Final[str] = 'fleet_trip_sync'
LOG_FORMAT: Final[str] = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
LOG_DATE_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'

# Libraries whose INFO output drowns out sync progress messages
NOISY_LIBRARY_LOGGERS: Final[tuple[str, ...]] = ('httpx', 'httpcore', 'sqlalchemy.engine')


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Set up logging for the fleet_trip_sync package.

    Configures the package-level logger so that all module loggers inherit
    its handlers. Idempotent: calling it again resets and rebuilds the
    handlers from the provided arguments.

    Args:
        logging_level: Console level (e.g., logging.INFO) used when NO config
            object is provided. Defaults to INFO.
        config: Optional validated configuration object. If provided:
            - Console logging uses config.console_level
            - File logging is enabled if config.file_path is set
            - The 'logging_level' argument is ignored.

    Returns:
        The package-level logger ('fleet_trip_sync').

    Example:
        >>> setup_logger()
        >>> setup_logger(logging_level=logging.DEBUG)
        >>> setup_logger(config=load_config().logging)
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    package_logger.handlers.clear()
    # Handlers live on the package logger; do not duplicate through root
    package_logger.propagate = False

    log_format: logging.Formatter = logging.Formatter(
        fmt=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )

    # --- 1. Console Handler ---
    if config:
        console_level: int = config.get_console_level_int()
    else:
        console_level = logging.INFO if logging_level is None else logging_level

    console_handler: logging.Handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_format)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    # --- 2. File Handler (Config Only) ---
    file_level: int | None = config.get_file_level_int() if config else None

    if config and config.file_path and file_level is not None:
        log_file_path: Path = config.file_path
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler: logging.FileHandler = logging.FileHandler(
            filename=str(log_file_path),
            mode='a',
            encoding='utf-8',
        )
        file_handler.setFormatter(log_format)
        file_handler.setLevel(file_level)
        package_logger.addHandler(file_handler)

        if console_level <= logging.INFO:
            print(f'Logging to file: {log_file_path}', file=sys.stderr)

    # --- 3. Package Logger Level ---
    # Must be the most verbose of the handler levels or DEBUG never reaches a handler
    effective_level: int = console_level
    if file_level is not None:
        effective_level = min(console_level, file_level)

    package_logger.setLevel(effective_level)

    # --- 4. Third-party noise ---
    library_level: int = logging.DEBUG if effective_level <= logging.DEBUG else logging.WARNING
    for library_logger_name in NOISY_LIBRARY_LOGGERS:
        logging.getLogger(library_logger_name).setLevel(library_level)

    return package_logger
