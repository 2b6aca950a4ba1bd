"""
Tests for fleet_trip_sync.ingest module.
"""

from datetime import datetime, timedelta
from typing import Any
from unittest.mock import Mock

import pytest
from conftest import DEVICE_ID, FakeClock, epoch_ms
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.errors import TransientError
from fleet_trip_sync.event_detector import EventDetector, EventStore
from fleet_trip_sync.ingest import IngestError, IngestResult, PositionIngestor
from fleet_trip_sync.models import EventType, VendorPositionRecord
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.vendor_api import VendorApi


def _position(
    device_id: str,
    recorded_at: datetime,
    acc_on: bool,
    **fields: Any,
) -> VendorPositionRecord:
    return VendorPositionRecord.model_validate(
        {
            'deviceid': device_id,
            'callat': 52.52,
            'callon': 13.405,
            'status': 0x1 if acc_on else 0x0,
            'speed': 0,
            'gpstime': epoch_ms(recorded_at),
            'updatetime': epoch_ms(recorded_at),
            **fields,
        }
    )


@pytest.fixture
def vendor_api() -> Mock:
    return Mock(spec=VendorApi)


@pytest.fixture
def event_store(session_factory: sessionmaker[Session]) -> EventStore:
    return EventStore(session_factory)


@pytest.fixture
def ingestor(
    vendor_api: Mock,
    position_store: PositionStore,
    event_store: EventStore,
    fake_clock: FakeClock,
) -> PositionIngestor:
    detector = EventDetector(event_store, position_store)
    return PositionIngestor(vendor_api, position_store, detector, clock=fake_clock)


class TestPositionIngestor:
    """Test the poll, store and detect flow."""

    def test_positions_stored_and_events_detected(
        self,
        ingestor: PositionIngestor,
        vendor_api: Mock,
        position_store: PositionStore,
        event_store: EventStore,
        fake_clock: FakeClock,
    ) -> None:
        """An ignition change across two polls produces one ignition-on event."""
        vendor_api.last_positions.return_value = [
            _position(DEVICE_ID, fake_clock() - timedelta(seconds=30), acc_on=False)
        ]
        ingestor.run([DEVICE_ID])

        fake_clock.advance(minutes=1)
        vendor_api.last_positions.return_value = [
            _position(DEVICE_ID, fake_clock() - timedelta(seconds=10), acc_on=True)
        ]
        result: IngestResult = ingestor.run([DEVICE_ID])

        events = event_store.recent(DEVICE_ID)
        assert result.readings_stored == 1
        assert result.events_emitted == 1
        assert [event.event_type for event in events] == [EventType.IGNITION_ON]
        assert position_store.count(DEVICE_ID) == 2  # noqa: PLR2004

    def test_repolled_position_is_not_reprocessed(
        self,
        ingestor: PositionIngestor,
        vendor_api: Mock,
        position_store: PositionStore,
        fake_clock: FakeClock,
    ) -> None:
        """The vendor repeats the last position until the device reports again."""
        vendor_api.last_positions.return_value = [
            _position(DEVICE_ID, fake_clock() - timedelta(seconds=30), acc_on=True)
        ]

        ingestor.run([DEVICE_ID])
        repeat: IngestResult = ingestor.run([DEVICE_ID])

        assert repeat.readings_stored == 0
        assert repeat.events_emitted == 0
        assert position_store.count() == 1

    def test_devices_are_batched(
        self,
        ingestor: PositionIngestor,
        vendor_api: Mock,
    ) -> None:
        vendor_api.last_positions.return_value = []

        result: IngestResult = ingestor.run(['a', 'b', 'c', 'a', 'd', 'e'], batch_size=2)

        assert result.devices_requested == 5  # noqa: PLR2004
        assert [call.args[0] for call in vendor_api.last_positions.call_args_list] == [
            ['a', 'b'],
            ['c', 'd'],
            ['e'],
        ]

    def test_failed_batch_does_not_stop_the_run(
        self,
        ingestor: PositionIngestor,
        vendor_api: Mock,
        fake_clock: FakeClock,
    ) -> None:
        vendor_api.last_positions.side_effect = [
            TransientError('timed out'),
            [_position('b', fake_clock() - timedelta(seconds=5), acc_on=False)],
        ]

        result: IngestResult = ingestor.run(['a', 'b'], batch_size=1)

        assert result.failed_batches == 1
        assert result.readings_stored == 1
        assert 'timed out' in result.errors[0]

    def test_all_batches_failing_raises(
        self,
        ingestor: PositionIngestor,
        vendor_api: Mock,
    ) -> None:
        vendor_api.last_positions.side_effect = TransientError('timed out')

        with pytest.raises(IngestError) as exc_info:
            ingestor.run(['a', 'b'], batch_size=1)

        assert exc_info.value.failed_batches == 2  # noqa: PLR2004

    def test_malformed_records_are_skipped(
        self,
        ingestor: PositionIngestor,
        vendor_api: Mock,
        fake_clock: FakeClock,
    ) -> None:
        vendor_api.last_positions.return_value = [
            _position(DEVICE_ID, fake_clock(), acc_on=True),
            VendorPositionRecord.model_validate({'deviceid': 'x'}),
        ]

        result: IngestResult = ingestor.run([DEVICE_ID, 'x'])

        assert result.records_received == 2  # noqa: PLR2004
        assert result.readings_normalized == 1

    def test_empty_device_list(self, ingestor: PositionIngestor, vendor_api: Mock) -> None:
        result: IngestResult = ingestor.run([])

        assert result.devices_requested == 0
        vendor_api.last_positions.assert_not_called()

    def test_invalid_batch_size(self, ingestor: PositionIngestor) -> None:
        with pytest.raises(ValueError, match='batch_size'):
            ingestor.run([DEVICE_ID], batch_size=0)
