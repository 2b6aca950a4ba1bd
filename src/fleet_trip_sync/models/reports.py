# fleet_trip_sync/models/reports.py
"""
Run reports and operational snapshots.

These models are what the trigger surface hands back to callers (schedulers,
dashboards, operators). Unlike the domain models they are built up while a
run progresses, so they are mutable.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

__all__: list[str] = [
    'CheckpointSnapshot',
    'DeviceSyncResult',
    'DeviceSyncStatus',
    'FleetSyncResult',
    'ReconcileIssue',
    'ReconcileMode',
    'ReconcileReport',
    'SyncStatus',
]


class SyncStatus(str, Enum):
    """Persisted state of a device's sync checkpoint."""

    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETED = 'completed'
    ERROR = 'error'


class DeviceSyncStatus(str, Enum):
    """Outcome of one sync invocation for one device."""

    COMPLETED = 'completed'
    ERROR = 'error'
    # Vendor throttling outlasted the retry budget; the next run retries
    DEGRADED = 'degraded'
    # Another invocation holds the device
    SKIPPED = 'skipped'


class ReconcileMode(str, Enum):
    COORDINATES = 'coordinates'
    GAPS = 'gaps'
    FULL = 'full'


class CheckpointSnapshot(BaseModel):
    """Read-only view of one device's sync checkpoint."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    status: SyncStatus
    last_synced_at: datetime | None = None
    last_error: str | None = None
    run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    updated_at: datetime | None = None
    trips_synced_total: int = 0


class DeviceSyncResult(BaseModel):
    """Outcome of `TripSyncEngine.sync_device`."""

    device_id: str
    status: DeviceSyncStatus
    sync_type: Literal['full', 'incremental'] = 'incremental'
    window_start: datetime | None = None
    window_end: datetime | None = None
    trips_received: int = 0
    trips_created: int = 0
    trips_skipped: int = 0
    trips_segmented: int = 0
    coordinates_backfilled: int = 0
    checkpoint: datetime | None = None
    error: str | None = None
    duration_seconds: float = 0.0


class FleetSyncResult(BaseModel):
    """Aggregate of a multi-device sync run."""

    started_at: datetime
    finished_at: datetime | None = None
    device_results: list[DeviceSyncResult] = Field(default_factory=list)

    @property
    def devices_processed(self) -> int:
        return len(self.device_results)

    @property
    def trips_created(self) -> int:
        return sum(result.trips_created for result in self.device_results)

    @property
    def trips_skipped(self) -> int:
        return sum(result.trips_skipped for result in self.device_results)

    @property
    def errors(self) -> dict[str, str]:
        """Device id to error message for every device that did not complete."""
        return {
            result.device_id: result.error or result.status.value
            for result in self.device_results
            if result.status is not DeviceSyncStatus.COMPLETED
        }

    @property
    def is_degraded(self) -> bool:
        return any(
            result.status is DeviceSyncStatus.DEGRADED for result in self.device_results
        )


class ReconcileIssue(BaseModel):
    """One per-trip failure collected during reconciliation."""

    device_id: str
    trip_id: int | None = None
    message: str


class ReconcileReport(BaseModel):
    """Counts and per-trip errors for one reconciliation run."""

    run_id: int | None = None
    mode: ReconcileMode = ReconcileMode.COORDINATES
    device_ids: list[str] | None = None
    range_start: datetime
    range_end: datetime
    started_at: datetime
    finished_at: datetime | None = None
    trips_checked: int = 0
    trips_fixed: int = 0
    coordinates_backfilled: int = 0
    readings_fetched: int = 0
    errors: list[ReconcileIssue] = Field(default_factory=list)
