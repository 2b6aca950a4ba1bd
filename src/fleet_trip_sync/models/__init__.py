# fleet_trip_sync/models/__init__.py

from fleet_trip_sync.models.domain import (
    DataQuality,
    DeviceEvent,
    EventType,
    IgnitionMethod,
    Reading,
    Severity,
    TimestampSource,
    Trip,
    TripSource,
)
from fleet_trip_sync.models.reports import (
    CheckpointSnapshot,
    DeviceSyncResult,
    DeviceSyncStatus,
    FleetSyncResult,
    ReconcileIssue,
    ReconcileMode,
    ReconcileReport,
    SyncStatus,
)
from fleet_trip_sync.models.vendor_models import (
    VendorPositionRecord,
    VendorResponse,
    VendorTripRecord,
)

__all__: list[str] = [
    'CheckpointSnapshot',
    'DataQuality',
    'DeviceEvent',
    'DeviceSyncResult',
    'DeviceSyncStatus',
    'EventType',
    'FleetSyncResult',
    'IgnitionMethod',
    'Reading',
    'ReconcileIssue',
    'ReconcileMode',
    'ReconcileReport',
    'Severity',
    'SyncStatus',
    'TimestampSource',
    'Trip',
    'TripSource',
    'VendorPositionRecord',
    'VendorResponse',
    'VendorTripRecord',
]
