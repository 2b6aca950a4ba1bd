# fleet_trip_sync/config/config_models.py
"""
Configuration models for the fleet trip synchronization service.

This module provides Pydantic models for the master configuration file that
controls vendor access, shared rate limiting, persistence, trip sync,
reconciliation, event detection and the Parquet reading archive.

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- SSL verification supports three modes to handle corporate proxy environments:
  1. `True` - Standard verification using system CA bundle
  2. `False` - Disabled verification (use with caution, required for some proxies)
  3. String path - Custom CA bundle (e.g., exported Zscaler root certificate)

- SecretStr is used for the vendor token to prevent accidental exposure in
  logs, repr(), or error messages. Access it via `.get_secret_value()`.

- Every section except `vendor` has working defaults, so a minimal YAML file
  only needs the vendor block.

Usage:
------
    import yaml
    from fleet_trip_sync.config.config_models import FleetSyncConfig

    with open('config.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = FleetSyncConfig.model_validate(raw_config)
"""

from pathlib import Path
from typing import Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'ArchiveConfig',
    'CompressionType',
    'DatabaseConfig',
    'DisplayConfig',
    'EventConfig',
    'FleetSyncConfig',
    'LogLevelName',
    'LoggingConfig',
    'PositionPolicyConfig',
    'ReconcileConfig',
    'SyncConfig',
    'VendorConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
# Using Literal rather than an Enum because these map directly to stdlib names.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Numeric equivalents of log level names for validation purposes.
LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

# Mapping from level name to numeric value, avoiding import of logging module
# in the model layer.
LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}

# Valid compression algorithms supported by pandas.to_parquet() and pyarrow.
CompressionType = Literal['snappy', 'gzip', 'brotli', 'lz4', 'zstd'] | None


# =============================================================================
# Vendor Configuration
# =============================================================================


class VendorConfig(BaseModel):
    """Connection, retry and shared rate-limit settings for the vendor API.

    Retry Policy:
        Two independent budgets apply to a single call:
          - Transient failures (timeouts, connection errors, HTTP 5xx) retry
            after a short fixed delay, up to `max_transient_retries` times.
          - Vendor throttling retries with exponential backoff
            `rate_limit_base_delay_seconds * 2 ** (n - 1)`, capped at
            `rate_limit_max_delay_seconds`, up to `max_rate_limit_retries`.

        Example with base=1.0, cap=30.0:
          Rate limit 1: 1.0 seconds
          Rate limit 2: 2.0 seconds
          Rate limit 3: 4.0 seconds

    Shared Budget:
        `max_calls_per_window` calls may be issued within any
        `burst_window_seconds` window across every worker sharing the
        database. Waiting for budget is bounded by `acquire_timeout_seconds`.

    Attributes:
        base_url: Root URL of the vendor API, without trailing slash.
        token: Vendor access token (masked in logs and repr).
        server_id: Optional server identifier appended to every call.
        request_timeout: [connect, read] timeouts in seconds.
        verify_ssl: False disables, True uses system CA, or a CA bundle path.
        use_truststore: Build the SSLContext from the OS trust store.
        rate_limit_codes: Vendor status codes that signal throttling.
        vendor_utc_offset_hours: Fixed offset the vendor uses for date strings.
    """

    model_config = ConfigDict(extra='forbid')

    base_url: str = Field(
        description='Root API endpoint URL with scheme, without trailing slash',
    )
    token: SecretStr = Field(
        description='Vendor access token (masked in logs and repr)',
    )
    server_id: str | None = Field(
        default=None,
        description='Optional vendor server identifier',
    )
    request_timeout: tuple[int, int] = Field(
        default=(10, 30),
        description='[connect_timeout, read_timeout] in seconds; both must be positive',
    )
    verify_ssl: bool | str = Field(
        default=True,
        description='False to disable SSL, True for system CA, or path to CA bundle',
    )
    use_truststore: bool = Field(
        default=False,
        description='Use truststore library for OS system CA certificates',
    )
    max_transient_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description='Retries for timeouts, connection errors and 5xx responses',
    )
    transient_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description='Fixed delay before retrying a transient failure',
    )
    max_rate_limit_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description='Retries after vendor throttling before surfacing the error',
    )
    rate_limit_base_delay_seconds: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description='First backoff delay after a throttling response',
    )
    rate_limit_max_delay_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description='Upper bound for the exponential throttling backoff',
    )
    rate_limit_codes: list[int] = Field(
        default_factory=lambda: [8902, 9903, 9904],
        description='Vendor status codes that indicate throttling',
    )
    max_calls_per_window: int = Field(
        default=5,
        gt=0,
        le=100,
        description='Calls allowed per burst window across all workers',
    )
    burst_window_seconds: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description='Length of the shared rate-limit window',
    )
    acquire_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description='Maximum wait for shared call budget before giving up',
    )
    vendor_utc_offset_hours: int = Field(
        default=8,
        ge=-12,
        le=14,
        description='UTC offset of the vendor date strings (GMT+8 by default)',
    )

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, base_url: str) -> str:
        """Validate and normalize the API base URL.

        Args:
            base_url: The API base URL to validate.

        Returns:
            Normalized URL without trailing slash.

        Raises:
            ValueError: If URL is empty or missing http/https scheme.
        """
        if not base_url:
            raise ValueError('base_url cannot be empty')

        if not base_url.startswith(('http://', 'https://')):
            raise ValueError(
                f"base_url must start with 'http://' or 'https://', got: {base_url!r}"
            )

        return base_url.rstrip('/')

    @field_validator('token')
    @classmethod
    def validate_token_not_empty(cls, token: SecretStr) -> SecretStr:
        """Ensure the token is not empty or whitespace-only."""
        secret_value: str = token.get_secret_value()
        if not secret_value or not secret_value.strip():
            raise ValueError('token cannot be empty or whitespace-only')
        return token

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers.

        Args:
            timeout: Tuple of [connect_timeout, read_timeout] in seconds.

        Returns:
            The validated timeout tuple.

        Raises:
            ValueError: If either timeout value is non-positive.
        """
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """Validate that a custom CA bundle path points to an existing file.

        Args:
            verify_ssl: Boolean or path to CA certificate bundle file.

        Returns:
            The validated SSL configuration.

        Raises:
            ValueError: If string path does not exist or is not a file.
        """
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl

    @model_validator(mode='after')
    def validate_backoff_bounds(self) -> Self:
        """Ensure the throttling backoff cap is not below its base delay."""
        if self.rate_limit_max_delay_seconds < self.rate_limit_base_delay_seconds:
            raise ValueError(
                'rate_limit_max_delay_seconds must be >= rate_limit_base_delay_seconds'
            )
        return self


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseModel):
    """Shared persistence settings.

    Attributes:
        url: SQLAlchemy database URL. SQLite by default; PostgreSQL works
            unchanged because writes use dialect-aware insert-or-ignore.
        echo: Log every SQL statement (debugging only).
        busy_timeout_seconds: How long SQLite waits on a locked database
            before failing. Keeps concurrent workers from blocking forever.
    """

    model_config = ConfigDict(extra='forbid')

    url: str = Field(
        default='sqlite:///data/fleet_trip_sync.db',
        description='SQLAlchemy database URL',
    )
    echo: bool = Field(default=False, description='Echo SQL statements')
    busy_timeout_seconds: float = Field(
        default=15.0,
        gt=0.0,
        le=300.0,
        description='SQLite lock wait timeout in seconds',
    )


# =============================================================================
# Position Store Configuration
# =============================================================================


class PositionPolicyConfig(BaseModel):
    """Write policy thresholds for the position store.

    A reading is persisted when the device moved at least the minimum
    distance from the last persisted reading, or when the minimum interval
    elapsed. Once the device is stationary (speed below
    `stationary_speed_kmh`) the looser stationary thresholds apply, so a
    parked vehicle does not flood storage with near-identical samples.
    """

    model_config = ConfigDict(extra='forbid')

    min_distance_meters: float = Field(default=50.0, ge=0.0)
    min_interval_seconds: float = Field(default=300.0, ge=0.0)
    stationary_speed_kmh: float = Field(default=1.0, ge=0.0)
    stationary_min_distance_meters: float = Field(default=200.0, ge=0.0)
    stationary_min_interval_seconds: float = Field(default=900.0, ge=0.0)
    insert_batch_size: int = Field(default=500, gt=0, le=5000)

    @model_validator(mode='after')
    def validate_stationary_thresholds_are_looser(self) -> Self:
        """Stationary thresholds must never be stricter than moving ones."""
        if self.stationary_min_distance_meters < self.min_distance_meters:
            raise ValueError(
                'stationary_min_distance_meters must be >= min_distance_meters'
            )
        if self.stationary_min_interval_seconds < self.min_interval_seconds:
            raise ValueError(
                'stationary_min_interval_seconds must be >= min_interval_seconds'
            )
        return self


# =============================================================================
# Trip Sync Configuration
# =============================================================================


class SyncConfig(BaseModel):
    """Incremental trip sync settings.

    Attributes:
        full_lookback_days: Window used on first sync or forced full resync.
        backfill_window_minutes: Half-width of the nearest-reading search
            used to fill missing trip coordinates.
        stale_run_minutes: A run 'running' longer than this is abandoned.
        segment_when_vendor_empty: Derive trips from stored readings when the
            vendor reports no trips for the window.
        max_workers: Devices synced concurrently in a fleet run.
        segment_moving_speed_kmh: Speed that counts as moving when a reading
            has no usable ignition signal.
        segment_stop_minutes: Inactivity that ends a segmented trip.
        segment_max_gap_minutes: Reporting silence that always ends a trip.
        segment_max_jump_km: Steps longer than this are GPS jumps.
    """

    model_config = ConfigDict(extra='forbid')

    full_lookback_days: int = Field(default=30, ge=1, le=365)
    backfill_window_minutes: float = Field(default=15.0, gt=0.0, le=240.0)
    stale_run_minutes: float = Field(default=30.0, gt=0.0, le=1440.0)
    segment_when_vendor_empty: bool = Field(default=False)
    max_workers: int = Field(default=1, ge=1, le=32)
    segment_moving_speed_kmh: float = Field(default=1.0, ge=0.0)
    segment_stop_minutes: float = Field(default=5.0, gt=0.0, le=240.0)
    segment_max_gap_minutes: float = Field(default=30.0, gt=0.0, le=1440.0)
    segment_max_jump_km: float = Field(default=10.0, gt=0.0)


# =============================================================================
# Event Configuration
# =============================================================================


class EventConfig(BaseModel):
    """Event detection settings.

    `overspeed_kmh` and `low_battery_percent` may be null to disable those
    detectors.
    """

    model_config = ConfigDict(extra='forbid')

    cooldown_minutes: float = Field(default=5.0, ge=0.0, le=1440.0)
    overspeed_kmh: float | None = Field(default=120.0, gt=0.0)
    low_battery_percent: float | None = Field(default=20.0, gt=0.0, le=100.0)
    critical_battery_percent: float = Field(default=10.0, ge=0.0, le=100.0)
    offline_after_minutes: float = Field(default=10.0, gt=0.0, le=1440.0)


# =============================================================================
# Reconciliation Configuration
# =============================================================================


class ReconcileConfig(BaseModel):
    """Reconciliation job settings."""

    model_config = ConfigDict(extra='forbid')

    default_days: int = Field(default=30, ge=1, le=365)
    backfill_window_minutes: float = Field(default=15.0, gt=0.0, le=240.0)
    track_padding_minutes: float = Field(
        default=15.0,
        ge=0.0,
        le=240.0,
        description='Padding around a trip when fetching vendor tracks in gaps mode',
    )


# =============================================================================
# Archive Configuration
# =============================================================================


class ArchiveConfig(BaseModel):
    """Configuration for the date-partitioned Parquet reading archive.

    Compression Trade-offs:
        - snappy: Fast compression/decompression, moderate ratio (default)
        - gzip: Slower but better ratio, good for archival
        - zstd: Best ratio with reasonable speed, good general choice
        - None: No compression, fastest writes, largest files

    Attributes:
        parquet_path: Root directory of the Hive-style partitions.
        parquet_compression: Compression codec for the Parquet writer.
        retention_days: Readings older than this move from the database
            into the archive.
        archive_retention_days: Archive partitions older than this are
            deleted. None keeps them forever.
    """

    model_config = ConfigDict(extra='forbid')

    parquet_path: Path = Field(default=Path('data/readings_archive'))
    parquet_compression: CompressionType = Field(default='snappy')
    retention_days: int = Field(default=90, ge=1, le=3650)
    archive_retention_days: int | None = Field(default=None, ge=1)

    @model_validator(mode='after')
    def validate_archive_outlives_database(self) -> Self:
        """The archive must keep readings at least as long as the database."""
        if (
            self.archive_retention_days is not None
            and self.archive_retention_days < self.retention_days
        ):
            raise ValueError('archive_retention_days must be >= retention_days')
        return self


# =============================================================================
# Display Configuration
# =============================================================================


class DisplayConfig(BaseModel):
    """Local offset used when rendering timestamps for people (GMT+1 default)."""

    model_config = ConfigDict(extra='forbid')

    utc_offset_hours: int = Field(default=1, ge=-12, le=14)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Supports dual-destination logging: console (always enabled) and optional
    file output.

    Attributes:
        file_path: Path to log file. None disables file logging.
            Extension .log is appended automatically if missing.
        console_level: Minimum log level for console output.
        file_level: Minimum log level for file output. Defaults to DEBUG if
            file_path is provided.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(
        default=None,
        description='Log file path (.log extension auto-added). None disables file logging.',
    )
    console_level: LogLevelName | int = Field(
        default='INFO',
        description="Console log level: 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', or int",
    )
    file_level: LogLevelName | int | None = Field(
        default=None,
        description='File log level. None disables file logging.',
    )

    @field_validator('file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Validate numeric log levels are standard Python logging values.

        Args:
            level_value: Log level as name string, integer, or None.

        Returns:
            The validated log level.

        Raises:
            ValueError: If numeric level is not a standard logging value.
        """
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Ensure file_path and file_level are consistently configured.

        Raises:
            ValueError: If file_level is set but file_path is missing.
        """
        has_file_path: bool = self.file_path is not None
        has_file_level: bool = self.file_level is not None

        if has_file_path and not has_file_level:
            self.file_level = 'DEBUG'

        if has_file_level and not has_file_path:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Convert console_level to numeric value for logging module."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """Convert file_level to numeric value, or None if file logging is off."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class FleetSyncConfig(BaseModel):
    """Root configuration model for the fleet trip synchronization service.

    Attributes:
        vendor: Vendor API connection, retry and rate-limit settings.
        database: Shared persistence settings.
        positions: Position store write policy.
        sync: Incremental trip sync settings.
        events: Event detection settings.
        reconcile: Reconciliation job settings.
        archive: Parquet reading archive settings.
        display: Local display offset.
        logging: Application logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    vendor: VendorConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    positions: PositionPolicyConfig = Field(default_factory=PositionPolicyConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    events: EventConfig = Field(default_factory=EventConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    devices: list[str] = Field(
        default_factory=list,
        description='Default fleet device ids used when a run names none',
    )

    @field_validator('devices')
    @classmethod
    def validate_device_ids_unique(cls, devices: list[str]) -> list[str]:
        """Reject blank or duplicated device ids.

        Raises:
            ValueError: If a device id is blank or listed twice.
        """
        seen: set[str] = set()
        for device_id in devices:
            if not device_id.strip():
                raise ValueError('device ids cannot be blank')
            if device_id in seen:
                raise ValueError(f'duplicate device id: {device_id!r}')
            seen.add(device_id)
        return devices
