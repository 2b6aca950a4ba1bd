# fleet_trip_sync/trip_sync.py
"""
Incremental per-device trip synchronization.

Each device has one authoritative checkpoint row. A sync invocation moves it
through an explicit state machine:

    idle | completed | error  --(claim)-->  running  --(finish)-->  completed | error

Design Decisions:
-----------------
- Claiming is a compare-and-set:
  `UPDATE sync_checkpoints SET status='running' ... WHERE status != 'running'`.
  Exactly one concurrent invocation per device wins; the others raise
  `SyncInProgressError`. A run stuck in `running` is only released by
  `reset_stale_runs()`.
- Finishing is a compare-and-set guarded by `status='running'` AND the
  run's own `run_started_at`, so a run that was reset as stale cannot
  overwrite the state of the run that replaced it.
- The unit of progress is the whole invocation. `last_synced_at` advances to
  the latest processed vendor trip end only on success; any failure leaves
  it untouched so the next run repeats the same window. It never moves
  backwards and only a forced full resync reads past it.
- Distance prefers the vendor's accumulated path length. The straight-line
  distance between endpoints is a fallback for summaries with no distance.
- Duration is never stored; it is always end minus start.
- Trips are stored unfiltered by displacement; short or zero-displacement
  trips are a presentation concern.
- Missing endpoint coordinates are backfilled from the nearest stored
  reading within +/- `backfill_window_minutes`; otherwise they stay null.

Usage:
------
    engine = TripSyncEngine(session_factory, vendor_api, position_store,
                            trip_store, config.sync)
    result = engine.sync_device('3566...')
    fleet = engine.sync_devices(config.devices)
"""

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Final, Literal, cast

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.common.geo import haversine_meters, is_valid_coordinate
from fleet_trip_sync.common.timeutils import utc_now
from fleet_trip_sync.config import SyncConfig
from fleet_trip_sync.errors import RateLimitedError, VendorAPIError
from fleet_trip_sync.models import (
    CheckpointSnapshot,
    DeviceSyncResult,
    DeviceSyncStatus,
    FleetSyncResult,
    Reading,
    SyncStatus,
    Trip,
    TripSource,
    VendorTripRecord,
)
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.segmentation import SegmentationSettings, segment_trips
from fleet_trip_sync.storage import DataIntegrityError, SyncCheckpointRow, insert_ignore
from fleet_trip_sync.trip_store import TripStore
from fleet_trip_sync.vendor_api import VendorApi

__all__: list[str] = ['SyncInProgressError', 'TripSyncEngine']

logger: logging.Logger = logging.getLogger(__name__)

METERS_PER_KILOMETER: Final[float] = 1000.0
MAX_ERROR_MESSAGE_CHARS: Final[int] = 2000


class SyncInProgressError(Exception):
    """
    Raised when another invocation already holds a device's checkpoint.

    Attributes:
        device_id: The device that is busy.
        run_started_at: When the holding run started, if known.
    """

    def __init__(self, device_id: str, run_started_at: datetime | None = None) -> None:
        started: str = run_started_at.isoformat() if run_started_at else 'unknown time'
        super().__init__(f'Sync already running for device {device_id} (since {started})')
        self.device_id: str = device_id
        self.run_started_at: datetime | None = run_started_at


class _RunCounters:
    """Mutable tallies of one device run."""

    def __init__(self) -> None:
        self.received: int = 0
        self.created: int = 0
        self.skipped: int = 0
        self.segmented: int = 0
        self.backfilled: int = 0
        self.latest_end: datetime | None = None


class TripSyncEngine:
    """
    Synchronizes vendor trip summaries into the trip store, one device at a time.

    Attributes:
        config: Lookback, backfill and concurrency settings.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        vendor_api: VendorApi,
        position_store: PositionStore,
        trip_store: TripStore,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory: sessionmaker[Session] = session_factory
        self._vendor_api: VendorApi = vendor_api
        self._position_store: PositionStore = position_store
        self._trip_store: TripStore = trip_store
        self.config: SyncConfig = config or SyncConfig()
        self._clock: Callable[[], datetime] = clock
        self._backfill_window: timedelta = timedelta(
            minutes=self.config.backfill_window_minutes
        )
        self._segmentation: SegmentationSettings = SegmentationSettings.from_config(self.config)

    # =========================================================================
    # Public API
    # =========================================================================

    def sync_device(
        self,
        device_id: str,
        *,
        force_full: bool = False,
        now: datetime | None = None,
    ) -> DeviceSyncResult:
        """
        Run one incremental (or forced full) sync for a device.

        Args:
            device_id: Vendor device identifier.
            force_full: Ignore the checkpoint and re-read the full lookback.
            now: Window end; defaults to the engine clock.

        Returns:
            The run outcome. Vendor throttling yields status `degraded`,
            other vendor or integrity failures yield `error`; in both cases
            the checkpoint records the error and does not advance.

        Raises:
            SyncInProgressError: Another invocation holds the device.
            Exception: Unexpected failures are recorded on the checkpoint,
                then re-raised.
        """
        run_started_at: datetime = now or self._clock()
        started_perf: float = time.perf_counter()

        last_synced_at: datetime | None = self._claim(device_id, run_started_at)

        sync_type: Literal['full', 'incremental']
        if force_full or last_synced_at is None:
            window_start: datetime = run_started_at - timedelta(
                days=self.config.full_lookback_days
            )
            sync_type = 'full'
        else:
            window_start = last_synced_at
            sync_type = 'incremental'
        window_end: datetime = run_started_at

        logger.info(
            'Syncing device %s (%s): %s to %s',
            device_id,
            sync_type,
            window_start.isoformat(),
            window_end.isoformat(),
        )

        result = DeviceSyncResult(
            device_id=device_id,
            status=DeviceSyncStatus.COMPLETED,
            sync_type=sync_type,
            window_start=window_start,
            window_end=window_end,
            checkpoint=last_synced_at,
        )
        counters = _RunCounters()

        try:
            self._sync_window(device_id, window_start, window_end, counters)
        except RateLimitedError as error:
            self._fail(device_id, run_started_at, error)
            result.status = DeviceSyncStatus.DEGRADED
            result.error = f'degraded, will retry: {error}'
        except (VendorAPIError, DataIntegrityError) as error:
            self._fail(device_id, run_started_at, error)
            result.status = DeviceSyncStatus.ERROR
            result.error = str(error)
        except Exception as error:
            self._fail(device_id, run_started_at, error)
            raise
        else:
            checkpoint: datetime | None = self._advance_to(
                last_synced_at, counters.latest_end, window_end
            )
            if self._complete(device_id, run_started_at, checkpoint, counters.created):
                result.checkpoint = checkpoint
            else:
                result.status = DeviceSyncStatus.ERROR
                result.error = 'run was reset as stale before it finished'

        result.trips_received = counters.received
        result.trips_created = counters.created
        result.trips_skipped = counters.skipped
        result.trips_segmented = counters.segmented
        result.coordinates_backfilled = counters.backfilled
        result.duration_seconds = round(time.perf_counter() - started_perf, 3)

        logger.info(
            'Device %s sync %s: received=%d created=%d skipped=%d segmented=%d '
            'backfilled=%d (%.2fs)',
            device_id,
            result.status.value,
            result.trips_received,
            result.trips_created,
            result.trips_skipped,
            result.trips_segmented,
            result.coordinates_backfilled,
            result.duration_seconds,
        )
        return result

    def sync_devices(
        self,
        device_ids: Sequence[str],
        *,
        force_full: bool = False,
        now: datetime | None = None,
    ) -> FleetSyncResult:
        """
        Sync many devices, isolating each device's failure.

        Devices run concurrently on a thread pool when `max_workers` > 1.

        Returns:
            Aggregate result with one entry per device, in input order.
        """
        fleet = FleetSyncResult(started_at=self._clock())
        unique_ids: list[str] = list(dict.fromkeys(device_ids))

        if self.config.max_workers <= 1 or len(unique_ids) <= 1:
            fleet.device_results = [
                self._sync_isolated(device_id, force_full, now) for device_id in unique_ids
            ]
        else:
            with ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix='trip-sync'
            ) as executor:
                futures: list[Future[DeviceSyncResult]] = [
                    executor.submit(self._sync_isolated, device_id, force_full, now)
                    for device_id in unique_ids
                ]
                fleet.device_results = [future.result() for future in futures]

        fleet.finished_at = self._clock()
        logger.info(
            'Fleet sync finished: devices=%d created=%d skipped=%d failed=%d degraded=%s',
            fleet.devices_processed,
            fleet.trips_created,
            fleet.trips_skipped,
            len(fleet.errors),
            fleet.is_degraded,
        )
        return fleet

    def reset_stale_runs(self, now: datetime | None = None) -> list[str]:
        """
        Release devices whose run has been `running` past the stale threshold.

        Such runs are marked `error` with an "abandoned" message and become
        eligible for a new claim. In-flight vendor calls are not interrupted.

        Returns:
            Device ids that were reset.
        """
        reference: datetime = now or self._clock()
        threshold: datetime = reference - timedelta(minutes=self.config.stale_run_minutes)
        reset: list[str] = []

        with self._session_factory() as session:
            stale: list[tuple[str, datetime | None]] = [
                (row.device_id, row.run_started_at)
                for row in session.scalars(
                    select(SyncCheckpointRow).where(
                        SyncCheckpointRow.status == SyncStatus.RUNNING.value,
                        SyncCheckpointRow.updated_at < threshold,
                    )
                ).all()
            ]

        for device_id, run_started_at in stale:
            message: str = (
                f'abandoned: run started at '
                f'{run_started_at.isoformat() if run_started_at else "unknown time"} '
                f'exceeded {self.config.stale_run_minutes:g} minutes'
            )
            if self._transition(
                device_id,
                run_started_at,
                status=SyncStatus.ERROR.value,
                last_error=message,
                last_run_finished_at=reference,
                updated_at=reference,
            ):
                reset.append(device_id)
                logger.warning('Reset stale sync run for device %s: %s', device_id, message)

        return reset

    def get_checkpoint(self, device_id: str) -> CheckpointSnapshot | None:
        with self._session_factory() as session:
            row: SyncCheckpointRow | None = session.get(SyncCheckpointRow, device_id)
        if row is None:
            return None
        return CheckpointSnapshot(
            device_id=row.device_id,
            status=SyncStatus(row.status),
            last_synced_at=row.last_synced_at,
            last_error=row.last_error,
            run_started_at=row.run_started_at,
            last_run_finished_at=row.last_run_finished_at,
            updated_at=row.updated_at,
            trips_synced_total=row.trips_synced_total,
        )

    # =========================================================================
    # Window processing
    # =========================================================================

    def _sync_window(
        self,
        device_id: str,
        window_start: datetime,
        window_end: datetime,
        counters: _RunCounters,
    ) -> None:
        records: list[VendorTripRecord] = self._vendor_api.query_trips(
            device_id, window_start, window_end
        )
        counters.received = len(records)

        for record in records:
            trip: Trip | None = self._build_trip(device_id, record)
            if trip is None:
                counters.skipped += 1
                continue

            trip, filled = self._backfill(trip)
            if filled:
                trip = trip.model_copy(
                    update={
                        'distance_km': _trip_distance_km(
                            record,
                            trip.start_latitude,
                            trip.start_longitude,
                            trip.end_latitude,
                            trip.end_longitude,
                        )
                    }
                )
            try:
                inserted: bool = self._trip_store.insert(trip)
            except DataIntegrityError as error:
                logger.error(
                    'Device %s: trip %s to %s rejected by storage: %s',
                    device_id,
                    trip.start_time.isoformat(),
                    trip.end_time.isoformat(),
                    error,
                )
                counters.skipped += 1
                continue

            if inserted:
                counters.created += 1
                counters.backfilled += filled
            else:
                counters.skipped += 1

            if counters.latest_end is None or trip.end_time > counters.latest_end:
                counters.latest_end = trip.end_time

        if not records and self.config.segment_when_vendor_empty:
            self._segment_from_readings(device_id, window_start, window_end, counters)

    def _build_trip(self, device_id: str, record: VendorTripRecord) -> Trip | None:
        if record.start_time is None or record.end_time is None:
            logger.warning('Device %s: skipping vendor trip without bounds', device_id)
            return None
        if record.end_time <= record.start_time:
            logger.warning(
                'Device %s: skipping vendor trip with non-positive duration (%s to %s)',
                device_id,
                record.start_time.isoformat(),
                record.end_time.isoformat(),
            )
            return None

        start_lat, start_lon = _valid_pair(record.start_latitude, record.start_longitude)
        end_lat, end_lon = _valid_pair(record.end_latitude, record.end_longitude)

        try:
            return Trip(
                device_id=device_id,
                start_time=record.start_time,
                end_time=record.end_time,
                start_latitude=start_lat,
                start_longitude=start_lon,
                end_latitude=end_lat,
                end_longitude=end_lon,
                distance_km=_trip_distance_km(record, start_lat, start_lon, end_lat, end_lon),
                max_speed_kmh=record.max_speed_kmh,
                avg_speed_kmh=record.avg_speed_kmh,
                source=TripSource.VENDOR,
            )
        except ValidationError as error:
            logger.warning('Device %s: skipping invalid vendor trip: %s', device_id, error)
            return None

    def _backfill(self, trip: Trip) -> tuple[Trip, int]:
        """Fill missing endpoint pairs from the nearest stored readings."""
        updates: dict[str, Any] = {}

        if not trip.has_start_coordinates:
            start_reading: Reading | None = self._position_store.nearest(
                trip.device_id, trip.start_time, self._backfill_window
            )
            if start_reading is not None:
                updates['start_latitude'] = start_reading.latitude
                updates['start_longitude'] = start_reading.longitude

        if not trip.has_end_coordinates:
            end_reading: Reading | None = self._position_store.nearest(
                trip.device_id, trip.end_time, self._backfill_window
            )
            if end_reading is not None:
                updates['end_latitude'] = end_reading.latitude
                updates['end_longitude'] = end_reading.longitude

        if not updates:
            return trip, 0
        return trip.model_copy(update=updates), len(updates) // 2

    def _segment_from_readings(
        self,
        device_id: str,
        window_start: datetime,
        window_end: datetime,
        counters: _RunCounters,
    ) -> None:
        readings: list[Reading] = self._position_store.readings_between(
            device_id, window_start, window_end
        )
        for trip in segment_trips(readings, self._segmentation):
            if self._trip_store.insert(trip):
                counters.created += 1
                counters.segmented += 1
            else:
                counters.skipped += 1

    @staticmethod
    def _advance_to(
        last_synced_at: datetime | None,
        latest_end: datetime | None,
        window_end: datetime,
    ) -> datetime | None:
        if latest_end is None:
            return last_synced_at
        # Vendor clocks can run ahead; never push the cursor past this run
        candidate: datetime = min(latest_end, window_end)
        if last_synced_at is not None and candidate < last_synced_at:
            return last_synced_at
        return candidate

    # =========================================================================
    # Checkpoint state machine
    # =========================================================================

    def _claim(self, device_id: str, run_started_at: datetime) -> datetime | None:
        """
        Move the checkpoint to `running`, creating it on first sync.

        Returns:
            The checkpoint's `last_synced_at` at claim time.

        Raises:
            SyncInProgressError: The checkpoint is already `running`.
        """
        with self._session_factory.begin() as session:
            insert_ignore(
                session,
                SyncCheckpointRow,
                [
                    {
                        'device_id': device_id,
                        'status': SyncStatus.IDLE.value,
                        'trips_synced_total': 0,
                        'updated_at': run_started_at,
                    }
                ],
                conflict_columns=['device_id'],
            )
            result = cast(
                CursorResult[Any],
                session.execute(
                    update(SyncCheckpointRow)
                    .where(
                        SyncCheckpointRow.device_id == device_id,
                        SyncCheckpointRow.status != SyncStatus.RUNNING.value,
                    )
                    .values(
                        status=SyncStatus.RUNNING.value,
                        run_started_at=run_started_at,
                        updated_at=run_started_at,
                    )
                    .execution_options(synchronize_session=False)
                ),
            )
            row: SyncCheckpointRow | None = session.get(
                SyncCheckpointRow, device_id, populate_existing=True
            )

        if result.rowcount != 1:
            holder_started: datetime | None = row.run_started_at if row else None
            logger.info('Device %s is already being synced; skipping', device_id)
            raise SyncInProgressError(device_id, holder_started)

        return row.last_synced_at if row else None

    def _complete(
        self,
        device_id: str,
        run_started_at: datetime,
        checkpoint: datetime | None,
        trips_created: int,
    ) -> bool:
        finished_at: datetime = self._clock()
        completed: bool = self._transition(
            device_id,
            run_started_at,
            status=SyncStatus.COMPLETED.value,
            last_synced_at=checkpoint,
            last_error=None,
            last_run_finished_at=finished_at,
            updated_at=finished_at,
            trips_synced_total=SyncCheckpointRow.trips_synced_total + trips_created,
        )
        if not completed:
            logger.warning(
                'Device %s: checkpoint changed hands before completion; not advancing',
                device_id,
            )
        return completed

    def _fail(self, device_id: str, run_started_at: datetime, error: BaseException) -> None:
        finished_at: datetime = self._clock()
        message: str = f'{type(error).__name__}: {error}'[:MAX_ERROR_MESSAGE_CHARS]
        logger.error('Device %s sync failed: %s', device_id, message)
        self._transition(
            device_id,
            run_started_at,
            status=SyncStatus.ERROR.value,
            last_error=message,
            last_run_finished_at=finished_at,
            updated_at=finished_at,
        )

    def _transition(
        self,
        device_id: str,
        run_started_at: datetime | None,
        **values: Any,
    ) -> bool:
        """Update a running checkpoint only if it still belongs to this run."""
        with self._session_factory.begin() as session:
            result = cast(
                CursorResult[Any],
                session.execute(
                    update(SyncCheckpointRow)
                    .where(
                        SyncCheckpointRow.device_id == device_id,
                        SyncCheckpointRow.status == SyncStatus.RUNNING.value,
                        SyncCheckpointRow.run_started_at == run_started_at,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                ),
            )
            return result.rowcount == 1

    def _sync_isolated(
        self,
        device_id: str,
        force_full: bool,
        now: datetime | None,
    ) -> DeviceSyncResult:
        try:
            return self.sync_device(device_id, force_full=force_full, now=now)
        except SyncInProgressError as error:
            return DeviceSyncResult(
                device_id=device_id,
                status=DeviceSyncStatus.SKIPPED,
                error=str(error),
            )
        except Exception as error:
            logger.exception('Device %s sync crashed', device_id)
            return DeviceSyncResult(
                device_id=device_id,
                status=DeviceSyncStatus.ERROR,
                error=f'{type(error).__name__}: {error}',
            )


# =============================================================================
# Helpers
# =============================================================================


def _valid_pair(
    latitude: float | None,
    longitude: float | None,
) -> tuple[float | None, float | None]:
    if is_valid_coordinate(latitude, longitude):
        return latitude, longitude
    return None, None


def _trip_distance_km(
    record: VendorTripRecord,
    start_lat: float | None,
    start_lon: float | None,
    end_lat: float | None,
    end_lon: float | None,
) -> float:
    """Vendor path length when present, else straight line, else zero."""
    if record.distance_meters is not None and record.distance_meters >= 0:
        return round(record.distance_meters / METERS_PER_KILOMETER, 3)

    if None not in (start_lat, start_lon, end_lat, end_lon):
        straight_meters: float = haversine_meters(
            cast(float, start_lat),
            cast(float, start_lon),
            cast(float, end_lat),
            cast(float, end_lon),
        )
        return round(straight_meters / METERS_PER_KILOMETER, 3)

    return 0.0
