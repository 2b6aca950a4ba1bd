"""
Tests for fleet_trip_sync.reconcile module.

Tests coordinate backfill over stored trips, vendor track gap filling,
run persistence and idempotency.
"""

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from unittest.mock import Mock, patch

import pytest
from conftest import DEVICE_ID, FakeClock, epoch_ms
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.errors import VendorError
from fleet_trip_sync.models import (
    Reading,
    ReconcileMode,
    ReconcileReport,
    Trip,
    VendorPositionRecord,
)
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.reconcile import ReconciliationJob
from fleet_trip_sync.storage import ReconcileRunRow
from fleet_trip_sync.trip_store import TripStore
from fleet_trip_sync.vendor_api import VendorApi

ReadingFactory = Callable[..., Reading]


@pytest.fixture
def vendor_api() -> Mock:
    api = Mock(spec=VendorApi)
    api.query_track.return_value = []
    return api


@pytest.fixture
def job(
    session_factory: sessionmaker[Session],
    trip_store: TripStore,
    position_store: PositionStore,
    vendor_api: Mock,
    fake_clock: FakeClock,
) -> ReconciliationJob:
    return ReconciliationJob(
        session_factory,
        trip_store,
        position_store,
        vendor_api=vendor_api,
        clock=fake_clock,
    )


def _store_trip(
    trip_store: TripStore,
    start: datetime,
    device_id: str = DEVICE_ID,
    **fields: Any,
) -> None:
    trip_store.insert(
        Trip(
            device_id=device_id,
            start_time=start,
            end_time=start + timedelta(minutes=20),
            **fields,
        )
    )


class TestCoordinateBackfill:
    """Test the default coordinates mode."""

    def test_backfills_then_second_run_is_noop(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        """A repeat run over the same range backfills nothing."""
        trip_start: datetime = sample_timestamp - timedelta(hours=5)
        _store_trip(trip_store, trip_start)
        position_store.append(
            [
                make_reading(-301, latitude=48.1, longitude=11.5),
                make_reading(-279, latitude=48.2, longitude=11.6),
            ]
        )

        first: ReconcileReport = job.run()
        second: ReconcileReport = job.run()

        trip = trip_store.trips_between(trip_start, trip_start)[0]
        assert first.trips_checked == 1
        assert first.trips_fixed == 1
        assert first.coordinates_backfilled == 2  # noqa: PLR2004
        assert (trip.start_latitude, trip.end_latitude) == (48.1, 48.2)
        assert second.trips_checked == 0
        assert second.coordinates_backfilled == 0

    def test_existing_pair_is_not_overwritten(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        trip_start: datetime = sample_timestamp - timedelta(hours=5)
        _store_trip(trip_store, trip_start, start_latitude=40.0, start_longitude=10.0)
        position_store.append([make_reading(-282, latitude=48.1, longitude=11.5)])

        report: ReconcileReport = job.run()

        trip = trip_store.trips_between(trip_start, trip_start)[0]
        assert report.coordinates_backfilled == 1
        assert trip.start_latitude == 40.0  # noqa: PLR2004
        assert trip.end_latitude == 48.1  # noqa: PLR2004

    def test_filters_by_device_and_range(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        sample_timestamp: datetime,
    ) -> None:
        _store_trip(trip_store, sample_timestamp - timedelta(days=2))
        _store_trip(trip_store, sample_timestamp - timedelta(days=2), device_id='other')
        _store_trip(trip_store, sample_timestamp - timedelta(days=45))

        report: ReconcileReport = job.run(
            device_ids=[DEVICE_ID],
            start=sample_timestamp - timedelta(days=7),
            end=sample_timestamp,
        )

        assert report.trips_checked == 1
        assert report.trips_fixed == 0

    def test_default_range_is_default_days(
        self,
        job: ReconciliationJob,
        sample_timestamp: datetime,
    ) -> None:
        report: ReconcileReport = job.run()

        assert report.range_end == sample_timestamp
        assert report.range_start == sample_timestamp - timedelta(days=30)

    def test_coordinates_mode_never_calls_vendor(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        vendor_api: Mock,
        sample_timestamp: datetime,
    ) -> None:
        _store_trip(trip_store, sample_timestamp - timedelta(hours=5))

        job.run()

        vendor_api.query_track.assert_not_called()
        vendor_api.query_trips.assert_not_called()


class TestGapFilling:
    """Test modes that fetch vendor tracks."""

    def test_gaps_mode_fetches_track_and_fills(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        vendor_api: Mock,
        sample_timestamp: datetime,
    ) -> None:
        trip_start: datetime = sample_timestamp - timedelta(hours=5)
        _store_trip(trip_store, trip_start)
        vendor_api.query_track.return_value = [
            VendorPositionRecord.model_validate(
                {
                    'deviceid': DEVICE_ID,
                    'callat': latitude,
                    'callon': 8.0,
                    'gpstime': epoch_ms(trip_start + timedelta(minutes=index * 10)),
                    'updatetime': epoch_ms(trip_start + timedelta(minutes=index * 10)),
                }
            )
            for index, latitude in enumerate([47.0, 47.01, 47.02])
        ]

        report: ReconcileReport = job.run(mode=ReconcileMode.GAPS)

        trip = trip_store.trips_between(trip_start, trip_start)[0]
        vendor_api.query_track.assert_called_once_with(
            DEVICE_ID,
            trip_start - timedelta(minutes=15),
            trip_start + timedelta(minutes=35),
        )
        assert report.readings_fetched == 3  # noqa: PLR2004
        assert report.coordinates_backfilled == 2  # noqa: PLR2004
        assert trip.start_latitude == 47.0  # noqa: PLR2004
        assert trip.end_latitude == 47.02  # noqa: PLR2004

    def test_full_mode_skips_vendor_when_store_suffices(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        position_store: PositionStore,
        vendor_api: Mock,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        _store_trip(trip_store, sample_timestamp - timedelta(hours=5))
        position_store.append([make_reading(-300), make_reading(-280)])

        report: ReconcileReport = job.run(mode='full')

        vendor_api.query_track.assert_not_called()
        assert report.coordinates_backfilled == 2  # noqa: PLR2004

    def test_gaps_mode_requires_vendor_api(
        self,
        session_factory: sessionmaker[Session],
        trip_store: TripStore,
        position_store: PositionStore,
    ) -> None:
        job = ReconciliationJob(session_factory, trip_store, position_store)

        with pytest.raises(ValueError, match='requires a vendor API'):
            job.run(mode=ReconcileMode.GAPS)

    def test_unknown_mode_rejected(self, job: ReconciliationJob) -> None:
        with pytest.raises(ValueError):
            job.run(mode='everything')


class TestErrorsAndPersistence:
    """Test per-trip failure collection and run records."""

    def test_vendor_failure_is_collected(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        vendor_api: Mock,
        sample_timestamp: datetime,
    ) -> None:
        _store_trip(trip_store, sample_timestamp - timedelta(hours=5))
        _store_trip(trip_store, sample_timestamp - timedelta(hours=3))
        vendor_api.query_track.side_effect = [VendorError('track unavailable'), []]

        report: ReconcileReport = job.run(mode=ReconcileMode.GAPS)

        assert report.trips_checked == 2  # noqa: PLR2004
        assert len(report.errors) == 1
        assert report.errors[0].device_id == DEVICE_ID
        assert 'track unavailable' in report.errors[0].message

    def test_storage_failure_is_collected(
        self,
        job: ReconciliationJob,
        trip_store: TripStore,
        position_store: PositionStore,
        sample_timestamp: datetime,
    ) -> None:
        _store_trip(trip_store, sample_timestamp - timedelta(hours=5))

        with patch.object(
            position_store,
            'nearest',
            side_effect=OperationalError('SELECT', {}, Exception('database is locked')),
        ):
            report: ReconcileReport = job.run()

        assert len(report.errors) == 1
        assert report.finished_at is not None

    def test_inverted_range_rejected(
        self,
        job: ReconciliationJob,
        sample_timestamp: datetime,
    ) -> None:
        with pytest.raises(ValueError, match='after end'):
            job.run(start=sample_timestamp, end=sample_timestamp - timedelta(days=1))

    def test_run_is_persisted(
        self,
        job: ReconciliationJob,
        session_factory: sessionmaker[Session],
        trip_store: TripStore,
        vendor_api: Mock,
        sample_timestamp: datetime,
    ) -> None:
        _store_trip(trip_store, sample_timestamp - timedelta(hours=5))
        vendor_api.query_track.side_effect = VendorError('track unavailable')

        report: ReconcileReport = job.run(device_ids=[DEVICE_ID, 'other'], mode='gaps')

        assert report.run_id is not None
        with session_factory() as session:
            row = session.get(ReconcileRunRow, report.run_id)
            assert row is not None
            assert row.mode == 'gaps'
            assert row.device_scope == f'{DEVICE_ID},other'
            assert row.trips_checked == 1
            assert json.loads(row.errors_json)[0]['message'] == 'track unavailable'

    def test_fleet_scope_is_star(
        self,
        job: ReconciliationJob,
        session_factory: sessionmaker[Session],
    ) -> None:
        report: ReconcileReport = job.run()

        with session_factory() as session:
            row = session.get(ReconcileRunRow, report.run_id)
            assert row is not None
            assert row.device_scope == '*'
