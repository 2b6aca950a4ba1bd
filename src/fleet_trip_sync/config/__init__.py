"""
Configuration Package for Fleet Trip Sync.

Exposes the configuration models and the loader function.
"""

from fleet_trip_sync.config.config_models import (
    ArchiveConfig,
    CompressionType,
    DatabaseConfig,
    DisplayConfig,
    EventConfig,
    FleetSyncConfig,
    LoggingConfig,
    PositionPolicyConfig,
    ReconcileConfig,
    SyncConfig,
    VendorConfig,
)
from fleet_trip_sync.config.loader import load_config

__all__: list[str] = [
    'ArchiveConfig',
    'CompressionType',
    'DatabaseConfig',
    'DisplayConfig',
    'EventConfig',
    'FleetSyncConfig',
    'LoggingConfig',
    'PositionPolicyConfig',
    'ReconcileConfig',
    'SyncConfig',
    'VendorConfig',
    'load_config',
]
