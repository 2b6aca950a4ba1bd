# fleet_trip_sync/storage/__init__.py

from fleet_trip_sync.storage.database import (
    Base,
    DataIntegrityError,
    UTCDateTime,
    build_session_factory,
    create_database_engine,
    init_database,
    insert_ignore,
)
from fleet_trip_sync.storage.tables import (
    DeviceEventRow,
    RateLimitStateRow,
    ReadingRow,
    ReconcileRunRow,
    SyncCheckpointRow,
    TripRow,
)

__all__: list[str] = [
    'Base',
    'DataIntegrityError',
    'DeviceEventRow',
    'RateLimitStateRow',
    'ReadingRow',
    'ReconcileRunRow',
    'SyncCheckpointRow',
    'TripRow',
    'UTCDateTime',
    'build_session_factory',
    'create_database_engine',
    'init_database',
    'insert_ignore',
]
