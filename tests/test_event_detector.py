"""
Tests for fleet_trip_sync.event_detector module.

Tests transition rules, timestamp ordering and cooldown deduplication.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

import pytest
from conftest import DEVICE_ID
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.config import EventConfig
from fleet_trip_sync.event_detector import EventDetector, EventStore
from fleet_trip_sync.models import DeviceEvent, EventType, IgnitionMethod, Reading, Severity
from fleet_trip_sync.position_store import PositionStore

ReadingFactory = Callable[..., Reading]


@pytest.fixture
def event_store(session_factory: sessionmaker[Session]) -> EventStore:
    return EventStore(session_factory)


@pytest.fixture
def detector(event_store: EventStore, position_store: PositionStore) -> EventDetector:
    return EventDetector(event_store, position_store, EventConfig(cooldown_minutes=5))


def _types(events: list[DeviceEvent]) -> list[EventType]:
    return [event.event_type for event in events]


class TestTransitions:
    """Test which transitions produce events."""

    def test_ignition_on_and_off(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        events = detector.process(
            DEVICE_ID,
            [make_reading(1, ignition=True), make_reading(30, ignition=False)],
            previous=make_reading(0),
        )

        assert _types(events) == [EventType.IGNITION_ON, EventType.IGNITION_OFF]
        assert events[0].severity is Severity.INFO
        assert events[0].metadata['method'] == 'bit-field'

    def test_offline_then_online(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        events = detector.process(
            DEVICE_ID,
            [make_reading(1, is_online=False), make_reading(20, is_online=True)],
            previous=make_reading(0),
        )

        assert _types(events) == [EventType.OFFLINE, EventType.ONLINE]
        assert events[0].severity is Severity.WARNING

    def test_overspeed_fires_on_crossing_only(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        """Staying above the limit should not re-fire."""
        events = detector.process(
            DEVICE_ID,
            [
                make_reading(1, speed_kmh=130.0),
                make_reading(2, speed_kmh=140.0),
            ],
            previous=make_reading(0, speed_kmh=100.0),
        )

        assert _types(events) == [EventType.OVERSPEED]
        assert events[0].metadata['limit_kmh'] == 120.0  # noqa: PLR2004

    def test_low_battery_severity(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        warning = detector.process(
            DEVICE_ID,
            [make_reading(1, battery_percent=15.0)],
            previous=make_reading(0, battery_percent=25.0),
        )
        critical = detector.process(
            'other-device',
            [make_reading(1, device_id='other-device', battery_percent=5.0)],
            previous=make_reading(0, device_id='other-device', battery_percent=25.0),
        )

        assert warning[0].severity is Severity.WARNING
        assert critical[0].severity is Severity.CRITICAL

    def test_unknown_ignition_is_not_a_transition(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        events = detector.process(
            DEVICE_ID,
            [
                make_reading(
                    1,
                    ignition=None,
                    ignition_method=IgnitionMethod.UNKNOWN,
                    ignition_confidence=0.0,
                )
            ],
            previous=make_reading(0, ignition=True),
        )

        assert events == []


class TestOrderingAndCooldown:
    """Test timestamp ordering and deduplication."""

    def test_readings_evaluated_in_timestamp_order(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        """Arrival order must not invert the transition."""
        events = detector.process(
            DEVICE_ID,
            [make_reading(20, ignition=False), make_reading(1, ignition=True)],
            previous=make_reading(0),
        )

        assert _types(events) == [EventType.IGNITION_ON, EventType.IGNITION_OFF]

    def test_flapping_ignition_is_suppressed(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        """Toggles inside the cooldown produce one event per type."""
        events = detector.process(
            DEVICE_ID,
            [
                make_reading(1, ignition=False),
                make_reading(2, ignition=True),
                make_reading(3, ignition=False),
                make_reading(4, ignition=True),
            ],
            previous=make_reading(0, ignition=True),
        )

        assert _types(events) == [EventType.IGNITION_OFF, EventType.IGNITION_ON]

    def test_cooldown_spans_batches(
        self,
        detector: EventDetector,
        event_store: EventStore,
        make_reading: ReadingFactory,
    ) -> None:
        """An event already persisted suppresses a repeat in a later batch."""
        detector.process(DEVICE_ID, [make_reading(1, ignition=True)], previous=make_reading(0))
        detector.process(
            DEVICE_ID,
            [make_reading(2, ignition=False), make_reading(3, ignition=True)],
            previous=make_reading(1, ignition=True),
        )

        stored = event_store.recent(DEVICE_ID)
        assert sorted(_types(stored)) == sorted([EventType.IGNITION_ON, EventType.IGNITION_OFF])

    def test_repeat_after_cooldown_is_emitted(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        events = detector.process(
            DEVICE_ID,
            [
                make_reading(1, ignition=True),
                make_reading(2, ignition=False),
                make_reading(10, ignition=True),
            ],
            previous=make_reading(0),
        )

        assert _types(events).count(EventType.IGNITION_ON) == 2  # noqa: PLR2004

    def test_late_batch_inside_older_cooldown_is_suppressed(
        self,
        detector: EventDetector,
        event_store: EventStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        """A late batch is checked against every stored event, not just the newest."""
        detector.process(DEVICE_ID, [make_reading(0, ignition=True)], previous=make_reading(-1))
        detector.process(DEVICE_ID, [make_reading(60, ignition=True)], previous=make_reading(59))

        late = detector.process(
            DEVICE_ID, [make_reading(2, ignition=True)], previous=make_reading(1)
        )

        stored = event_store.recent(DEVICE_ID, event_type=EventType.IGNITION_ON)
        assert late == []
        assert [event.occurred_at for event in stored] == [
            sample_timestamp + timedelta(minutes=60),
            sample_timestamp,
        ]

    def test_late_batch_between_cooldowns_is_emitted(
        self,
        detector: EventDetector,
        event_store: EventStore,
        make_reading: ReadingFactory,
    ) -> None:
        detector.process(DEVICE_ID, [make_reading(0, ignition=True)], previous=make_reading(-1))
        detector.process(DEVICE_ID, [make_reading(60, ignition=True)], previous=make_reading(59))

        late = detector.process(
            DEVICE_ID, [make_reading(30, ignition=True)], previous=make_reading(29)
        )

        assert _types(late) == [EventType.IGNITION_ON]
        assert len(event_store.recent(DEVICE_ID)) == 3  # noqa: PLR2004

    def test_previous_reading_looked_up_from_store(
        self,
        detector: EventDetector,
        position_store: PositionStore,
        make_reading: ReadingFactory,
    ) -> None:
        position_store.append([make_reading(0, ignition=True)])

        events = detector.process(DEVICE_ID, [make_reading(5, ignition=False)])

        assert _types(events) == [EventType.IGNITION_OFF]

    def test_other_devices_are_ignored(
        self,
        detector: EventDetector,
        make_reading: ReadingFactory,
    ) -> None:
        events = detector.process(
            DEVICE_ID,
            [make_reading(1, device_id='other', ignition=True)],
            previous=make_reading(0),
        )

        assert events == []


class TestEventStore:
    """Test event persistence."""

    def test_recent_filters_and_orders(
        self,
        event_store: EventStore,
        sample_timestamp: datetime,
    ) -> None:
        event_store.record(
            DeviceEvent(
                device_id=DEVICE_ID,
                event_type=event_type,
                severity=Severity.INFO,
                occurred_at=sample_timestamp + timedelta(minutes=offset),
                metadata={'offset': offset},
            )
            for offset, event_type in [
                (0, EventType.IGNITION_ON),
                (10, EventType.IGNITION_OFF),
                (20, EventType.IGNITION_ON),
            ]
        )

        recent = event_store.recent(DEVICE_ID, event_type=EventType.IGNITION_ON)

        assert [event.metadata['offset'] for event in recent] == [20, 0]
        assert event_store.last_occurrence(
            DEVICE_ID, EventType.IGNITION_OFF
        ) == sample_timestamp + timedelta(minutes=10)

    def test_exists_within_is_exclusive(
        self,
        event_store: EventStore,
        sample_timestamp: datetime,
    ) -> None:
        event_store.record(
            [
                DeviceEvent(
                    device_id=DEVICE_ID,
                    event_type=EventType.OFFLINE,
                    severity=Severity.WARNING,
                    occurred_at=sample_timestamp,
                )
            ]
        )
        before: datetime = sample_timestamp - timedelta(minutes=5)
        after: datetime = sample_timestamp + timedelta(minutes=5)

        assert event_store.exists_within(DEVICE_ID, EventType.OFFLINE, before, after)
        assert not event_store.exists_within(DEVICE_ID, EventType.OFFLINE, sample_timestamp, after)
        assert not event_store.exists_within(DEVICE_ID, EventType.ONLINE, before, after)
