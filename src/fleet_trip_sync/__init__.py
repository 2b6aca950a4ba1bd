# fleet_trip_sync/__init__.py
"""
Fleet Trip Sync - reconciled trip history and vehicle state from a vendor API.

This package ingests positional telemetry from fleet-tracking devices through
a GPS51-style vendor platform and derives a deduplicated trip history plus
vehicle-state signals (ignition, online/offline, battery, overspeed):

1. **Ingestion**: latest positions are normalized (units, ignition scoring,
   timestamp trust, coordinate validity) and stored under a distance/interval
   write policy. Ignition and connectivity transitions become events.

2. **Trip Sync**: vendor trip summaries are pulled per device from a
   checkpoint, deduplicated on (device, start, end) and backfilled with
   coordinates from stored readings. A compare-and-set state machine keeps
   concurrent workers from syncing the same device twice.

3. **Reconciliation**: stored trips that still lack coordinates are
   revisited and filled in place, never overwriting a set pair.

4. **Retention**: old readings move to a date-partitioned Parquet archive.

Every vendor call goes through one client that shares its call budget and
throttling backoff with every other worker through the database.

Quick Start:
    >>> from fleet_trip_sync import FleetSyncService
    >>>
    >>> with FleetSyncService.from_config('config/fleet_sync.yaml') as service:
    ...     service.ingest_positions()
    ...     result = service.sync_now()
    ...     print(result.trips_created, result.errors)
"""

__version__ = '0.1.0'

from fleet_trip_sync.client import (
    BudgetExhaustedError,
    RateLimitedError,
    TransientError,
    VendorAPIError,
    VendorClient,
    VendorError,
)
from fleet_trip_sync.common import PartitionedParquetHandler, setup_logger
from fleet_trip_sync.config import FleetSyncConfig, load_config
from fleet_trip_sync.event_detector import EventDetector, EventStore
from fleet_trip_sync.ingest import IngestError, PositionIngestor
from fleet_trip_sync.normalizer import NormalizationError, normalize, normalize_batch
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.rate_limiter import SharedRateLimiter
from fleet_trip_sync.reconcile import ReconciliationJob
from fleet_trip_sync.service import DeviceStatus, FleetSyncService
from fleet_trip_sync.storage import DataIntegrityError
from fleet_trip_sync.trip_store import TripStore
from fleet_trip_sync.trip_sync import SyncInProgressError, TripSyncEngine
from fleet_trip_sync.vendor_api import VendorApi

__all__: list[str] = [
    'BudgetExhaustedError',
    'DataIntegrityError',
    'DeviceStatus',
    'EventDetector',
    'EventStore',
    'FleetSyncConfig',
    'FleetSyncService',
    'IngestError',
    'NormalizationError',
    'PartitionedParquetHandler',
    'PositionIngestor',
    'PositionStore',
    'RateLimitedError',
    'ReconciliationJob',
    'SharedRateLimiter',
    'SyncInProgressError',
    'TransientError',
    'TripStore',
    'TripSyncEngine',
    'VendorAPIError',
    'VendorApi',
    'VendorClient',
    'VendorError',
    '__version__',
    'load_config',
    'normalize',
    'normalize_batch',
    'setup_logger',
]
