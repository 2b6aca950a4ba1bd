"""
Tests for fleet_trip_sync.position_store module.

Tests idempotent appends, the write policy and backfill lookups.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from conftest import DEVICE_ID
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.config import PositionPolicyConfig
from fleet_trip_sync.models import Reading
from fleet_trip_sync.position_store import PositionStore, should_persist

ReadingFactory = Callable[..., Reading]


class TestShouldPersist:
    """Test the write policy."""

    policy = PositionPolicyConfig(
        min_distance_meters=50.0,
        min_interval_seconds=300.0,
        stationary_speed_kmh=1.0,
        stationary_min_distance_meters=200.0,
        stationary_min_interval_seconds=900.0,
    )

    def test_first_reading_is_kept(self, make_reading: ReadingFactory) -> None:
        assert should_persist(None, make_reading(), self.policy)

    def test_ignition_change_is_kept(self, make_reading: ReadingFactory) -> None:
        """State changes are stored regardless of distance or time."""
        previous = make_reading(0)
        candidate = make_reading(0.1, ignition=True)

        assert should_persist(previous, candidate, self.policy)

    def test_online_change_is_kept(self, make_reading: ReadingFactory) -> None:
        previous = make_reading(0)
        candidate = make_reading(0.1, is_online=False)

        assert should_persist(previous, candidate, self.policy)

    def test_parked_vehicle_is_throttled(self, make_reading: ReadingFactory) -> None:
        """A stationary device needs the looser stationary thresholds."""
        previous = make_reading(0)

        assert not should_persist(previous, make_reading(6), self.policy)
        assert should_persist(previous, make_reading(15), self.policy)

    def test_moving_vehicle_uses_distance(self, make_reading: ReadingFactory) -> None:
        previous = make_reading(0, speed_kmh=50.0, ignition=True)
        near = make_reading(0.5, speed_kmh=50.0, ignition=True, latitude=52.5201)
        far = make_reading(0.5, speed_kmh=50.0, ignition=True, latitude=52.5210)

        assert not should_persist(previous, near, self.policy)
        assert should_persist(previous, far, self.policy)

    def test_first_fix_after_no_position_is_kept(self, make_reading: ReadingFactory) -> None:
        previous = make_reading(0, latitude=None, longitude=None)

        assert should_persist(previous, make_reading(0.1), self.policy)


class TestPositionStoreAppend:
    """Test append semantics."""

    def test_duplicate_reading_stored_once(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
    ) -> None:
        """Submitting the same (device, recorded_at) twice yields one row."""
        reading = make_reading(0)

        assert position_store.append([reading]) == 1
        assert position_store.append([reading]) == 0
        assert position_store.count(DEVICE_ID) == 1

    def test_duplicate_within_batch_stored_once(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
    ) -> None:
        reading = make_reading(0)

        position_store.append([reading, reading])

        assert position_store.count() == 1

    def test_policy_applied_against_stored_anchor(
        self,
        session_factory: sessionmaker[Session],
        make_reading: ReadingFactory,
    ) -> None:
        """Readings too close to the last stored one are filtered."""
        store = PositionStore(session_factory, PositionPolicyConfig())
        store.append([make_reading(0)])

        inserted: int = store.append([make_reading(1), make_reading(2), make_reading(16)])

        assert inserted == 1
        assert store.count() == 2  # noqa: PLR2004

    def test_readings_grouped_per_device(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
    ) -> None:
        position_store.append(
            [make_reading(0), make_reading(0, device_id='other'), make_reading(1)]
        )

        assert position_store.count(DEVICE_ID) == 2  # noqa: PLR2004
        assert position_store.device_ids() == [DEVICE_ID, 'other']

    def test_empty_append(self, position_store: PositionStore) -> None:
        assert position_store.append([]) == 0


class TestPositionStoreQueries:
    """Test lookups."""

    def test_nearest_picks_closest_in_time(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        position_store.append(
            [make_reading(-10, latitude=1.0, longitude=1.0), make_reading(4, latitude=2.0, longitude=2.0)]
        )

        nearest = position_store.nearest(DEVICE_ID, sample_timestamp, timedelta(minutes=15))

        assert nearest is not None
        assert nearest.latitude == 2.0  # noqa: PLR2004

    def test_nearest_tie_goes_to_earlier(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        position_store.append(
            [make_reading(-5, latitude=1.0, longitude=1.0), make_reading(5, latitude=2.0, longitude=2.0)]
        )

        nearest = position_store.nearest(DEVICE_ID, sample_timestamp, timedelta(minutes=15))

        assert nearest is not None
        assert nearest.latitude == 1.0

    def test_nearest_respects_window(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        position_store.append([make_reading(-20)])

        assert (
            position_store.nearest(DEVICE_ID, sample_timestamp, timedelta(minutes=15)) is None
        )

    def test_nearest_ignores_readings_without_position(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        position_store.append(
            [make_reading(1, latitude=None, longitude=None), make_reading(8)]
        )

        nearest = position_store.nearest(DEVICE_ID, sample_timestamp, timedelta(minutes=15))

        assert nearest is not None
        assert nearest.recorded_at == sample_timestamp + timedelta(minutes=8)

    def test_latest_and_readings_between(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        position_store.append([make_reading(minute) for minute in (0, 5, 10)])

        latest = position_store.latest(DEVICE_ID)
        before = position_store.latest(DEVICE_ID, before=sample_timestamp + timedelta(minutes=10))
        between = position_store.readings_between(
            DEVICE_ID, sample_timestamp, sample_timestamp + timedelta(minutes=5)
        )

        assert latest is not None
        assert latest.recorded_at == sample_timestamp + timedelta(minutes=10)
        assert before is not None
        assert before.recorded_at == sample_timestamp + timedelta(minutes=5)
        assert len(between) == 2  # noqa: PLR2004

    def test_round_trip_keeps_utc_and_enums(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
    ) -> None:
        reading = make_reading(0, battery_percent=55.0)
        position_store.append([reading])

        stored = position_store.latest(DEVICE_ID)

        assert stored == reading

    def test_delete_and_iterate_before(
        self,
        position_store: PositionStore,
        make_reading: ReadingFactory,
        sample_timestamp: datetime,
    ) -> None:
        position_store.append([make_reading(minute) for minute in range(0, 50, 10)])
        cutoff = sample_timestamp + timedelta(minutes=25)

        batches = list(position_store.iter_readings_before(cutoff, batch_size=2))
        deleted = position_store.delete_before(cutoff)

        assert [len(batch) for batch in batches] == [2, 1]
        assert deleted == 3  # noqa: PLR2004
        assert position_store.count() == 2  # noqa: PLR2004
