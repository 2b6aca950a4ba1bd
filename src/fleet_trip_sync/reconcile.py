# fleet_trip_sync/reconcile.py
"""
Reconciliation and coordinate backfill over stored trips.

A trip can be stored before the readings around its start or end have
arrived; its coordinate pair then stays null. This job revisits stored trips
in a date range and fills those pairs afterwards.

Modes:
------
- `coordinates`: look up the nearest stored reading within
  +/- `backfill_window_minutes` of each missing endpoint.
- `gaps`: for trips that still lack a pair, fetch the vendor track around
  the trip, append it to the position store, then look again.
- `full`: `coordinates` followed by `gaps`.

Every fill is a conditional update that only touches a pair that is still
null, so overlapping or repeated runs never overwrite each other and a
second run over the same range backfills nothing. The job never reads the
trip API and never touches sync checkpoints. Per-trip failures are collected
in the report and do not abort the batch.
"""

import json
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Final

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.common.timeutils import utc_now
from fleet_trip_sync.config import ReconcileConfig
from fleet_trip_sync.errors import VendorAPIError
from fleet_trip_sync.models import (
    Reading,
    ReconcileIssue,
    ReconcileMode,
    ReconcileReport,
    VendorPositionRecord,
)
from fleet_trip_sync.normalizer import DEFAULT_SETTINGS, NormalizerSettings, normalize_batch
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.storage import ReconcileRunRow
from fleet_trip_sync.trip_store import StoredTrip, TripEndpoint, TripStore
from fleet_trip_sync.vendor_api import VendorApi

__all__: list[str] = ['ReconciliationJob']

logger: logging.Logger = logging.getLogger(__name__)

FLEET_SCOPE: Final[str] = '*'


class ReconciliationJob:
    """
    Backfills missing trip coordinates from the position store.

    Attributes:
        config: Default range and window settings.

    Example:
        >>> job = ReconciliationJob(session_factory, trip_store, position_store,
        ...                         config.reconcile)
        >>> report = job.run(device_ids=['3566...'])
        >>> report.coordinates_backfilled
        4
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        trip_store: TripStore,
        position_store: PositionStore,
        config: ReconcileConfig | None = None,
        vendor_api: VendorApi | None = None,
        normalizer_settings: NormalizerSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory: sessionmaker[Session] = session_factory
        self._trip_store: TripStore = trip_store
        self._position_store: PositionStore = position_store
        self.config: ReconcileConfig = config or ReconcileConfig()
        self._vendor_api: VendorApi | None = vendor_api
        self._normalizer_settings: NormalizerSettings = normalizer_settings
        self._clock: Callable[[], datetime] = clock
        self._window: timedelta = timedelta(minutes=self.config.backfill_window_minutes)
        self._track_padding: timedelta = timedelta(minutes=self.config.track_padding_minutes)

    def run(
        self,
        device_ids: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        mode: ReconcileMode | str = ReconcileMode.COORDINATES,
    ) -> ReconcileReport:
        """
        Reconcile stored trips that start within [start, end].

        Args:
            device_ids: Devices to reconcile; None means the whole fleet.
            start: Range start; defaults to `default_days` before `end`.
            end: Range end; defaults to now.
            mode: `coordinates`, `gaps` or `full`.

        Returns:
            The run report, also persisted to `reconcile_runs`.

        Raises:
            ValueError: Unknown mode, an inverted range, or a gaps/full run
                without a vendor API.
        """
        reconcile_mode = ReconcileMode(mode)
        if reconcile_mode is not ReconcileMode.COORDINATES and self._vendor_api is None:
            raise ValueError(f"mode '{reconcile_mode.value}' requires a vendor API")

        started_at: datetime = self._clock()
        range_end: datetime = end or started_at
        range_start: datetime = start or range_end - timedelta(days=self.config.default_days)
        if range_start > range_end:
            raise ValueError(
                f'start ({range_start.isoformat()}) is after end ({range_end.isoformat()})'
            )

        report = ReconcileReport(
            mode=reconcile_mode,
            device_ids=list(device_ids) if device_ids is not None else None,
            range_start=range_start,
            range_end=range_end,
            started_at=started_at,
        )

        trips: list[StoredTrip] = self._trip_store.trips_between(
            range_start, range_end, device_ids=device_ids, missing_coordinates_only=True
        )
        logger.info(
            'Reconciling %d trips missing coordinates (%s) from %s to %s',
            len(trips),
            reconcile_mode.value,
            range_start.isoformat(),
            range_end.isoformat(),
        )

        for trip in trips:
            report.trips_checked += 1
            try:
                filled: int = self._reconcile_trip(trip, reconcile_mode, report)
            except (SQLAlchemyError, VendorAPIError) as error:
                logger.error('Trip %d (device %s) not reconciled: %s', trip.id, trip.device_id, error)
                report.errors.append(
                    ReconcileIssue(device_id=trip.device_id, trip_id=trip.id, message=str(error))
                )
                continue

            if filled:
                report.trips_fixed += 1
                report.coordinates_backfilled += filled

        report.finished_at = self._clock()
        report.run_id = self._persist(report)

        logger.info(
            'Reconciliation finished: checked=%d fixed=%d backfilled=%d fetched=%d errors=%d',
            report.trips_checked,
            report.trips_fixed,
            report.coordinates_backfilled,
            report.readings_fetched,
            len(report.errors),
        )
        return report

    # -------------------------------------------------------------------------
    # Per-trip work
    # -------------------------------------------------------------------------

    def _reconcile_trip(
        self,
        trip: StoredTrip,
        mode: ReconcileMode,
        report: ReconcileReport,
    ) -> int:
        """Returns the number of coordinate pairs this run filled for the trip."""
        missing: list[TripEndpoint] = self._missing_endpoints(trip)
        filled: int = 0

        if mode is not ReconcileMode.GAPS:
            filled += self._fill_from_store(trip, missing)
            missing = self._still_missing(trip.id)

        if missing and mode is not ReconcileMode.COORDINATES:
            report.readings_fetched += self._fetch_track(trip)
            filled += self._fill_from_store(trip, missing)

        return filled

    def _fill_from_store(self, trip: StoredTrip, endpoints: Sequence[TripEndpoint]) -> int:
        filled: int = 0
        for endpoint in endpoints:
            timestamp: datetime = trip.start_time if endpoint == 'start' else trip.end_time
            reading: Reading | None = self._position_store.nearest(
                trip.device_id, timestamp, self._window
            )
            if reading is None or reading.latitude is None or reading.longitude is None:
                continue
            if self._trip_store.fill_coordinates(
                trip.id, endpoint, reading.latitude, reading.longitude
            ):
                filled += 1
                logger.debug(
                    'Trip %d: filled %s coordinates from reading at %s',
                    trip.id,
                    endpoint,
                    reading.recorded_at.isoformat(),
                )
        return filled

    def _fetch_track(self, trip: StoredTrip) -> int:
        """Pull the vendor track around a trip into the position store."""
        if self._vendor_api is None:
            return 0

        records: list[VendorPositionRecord] = self._vendor_api.query_track(
            trip.device_id,
            trip.start_time - self._track_padding,
            trip.end_time + self._track_padding,
        )
        readings: list[Reading] = normalize_batch(
            records, now=self._clock(), settings=self._normalizer_settings
        )
        stored: int = self._position_store.append(readings)
        logger.debug(
            'Trip %d: fetched %d track points, stored %d readings',
            trip.id,
            len(records),
            stored,
        )
        return stored

    def _still_missing(self, trip_id: int) -> list[TripEndpoint]:
        current: StoredTrip | None = self._trip_store.get(trip_id)
        return self._missing_endpoints(current) if current is not None else []

    @staticmethod
    def _missing_endpoints(trip: StoredTrip) -> list[TripEndpoint]:
        missing: list[TripEndpoint] = []
        if not trip.has_start_coordinates:
            missing.append('start')
        if not trip.has_end_coordinates:
            missing.append('end')
        return missing

    def _persist(self, report: ReconcileReport) -> int:
        row = ReconcileRunRow(
            mode=report.mode.value,
            device_scope=','.join(report.device_ids) if report.device_ids is not None else FLEET_SCOPE,
            range_start=report.range_start,
            range_end=report.range_end,
            started_at=report.started_at,
            finished_at=report.finished_at,
            trips_checked=report.trips_checked,
            trips_fixed=report.trips_fixed,
            coordinates_backfilled=report.coordinates_backfilled,
            errors_json=json.dumps([issue.model_dump() for issue in report.errors]),
        )
        with self._session_factory.begin() as session:
            session.add(row)
            session.flush()
            return row.id
