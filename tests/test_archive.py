"""
Tests for fleet_trip_sync.archive module.
"""

from collections.abc import Callable
from datetime import date, datetime, timedelta
from unittest.mock import patch

import pandas as pd
import pytest
from conftest import DEVICE_ID, FakeClock

from fleet_trip_sync.archive import ArchiveResult, ReadingArchiver
from fleet_trip_sync.config import ArchiveConfig
from fleet_trip_sync.models import Reading
from fleet_trip_sync.position_store import PositionStore

ReadingFactory = Callable[..., Reading]


@pytest.fixture
def archiver(
    position_store: PositionStore,
    archive_config: ArchiveConfig,
    fake_clock: FakeClock,
) -> ReadingArchiver:
    return ReadingArchiver(position_store, archive_config, clock=fake_clock)


class TestReadingArchiver:
    """Test archive passes."""

    def test_old_readings_move_to_parquet(
        self,
        archiver: ReadingArchiver,
        position_store: PositionStore,
        make_reading: ReadingFactory,
    ) -> None:
        """Readings past retention are written, then deleted from the database."""
        day: float = 24 * 60
        position_store.append(
            [
                make_reading(-40 * day),
                make_reading(-35 * day),
                make_reading(-35 * day + 5),
                make_reading(-1 * day),
            ]
        )

        result: ArchiveResult = archiver.run(batch_size=2)

        assert result.readings_archived == 3  # noqa: PLR2004
        assert result.readings_deleted == 3  # noqa: PLR2004
        assert result.partitions_written == [date(2025, 4, 23), date(2025, 4, 28)]
        assert position_store.count(DEVICE_ID) == 1

        archived = archiver.file_handler.load_date_range(date(2025, 4, 1), date(2025, 5, 31))
        assert archived is not None
        assert len(archived) == 3  # noqa: PLR2004
        assert set(archived['device_id']) == {DEVICE_ID}

    def test_nothing_to_archive(self, archiver: ReadingArchiver) -> None:
        result: ArchiveResult = archiver.run()

        assert result.readings_archived == 0
        assert result.readings_deleted == 0
        assert result.partitions_written == []

    def test_cutoff_uses_retention_days(
        self,
        archiver: ReadingArchiver,
        sample_timestamp: datetime,
    ) -> None:
        result: ArchiveResult = archiver.run()

        assert result.cutoff == sample_timestamp - timedelta(days=30)

    def test_write_failure_keeps_database_rows(
        self,
        archiver: ReadingArchiver,
        position_store: PositionStore,
        make_reading: ReadingFactory,
    ) -> None:
        position_store.append([make_reading(-40 * 24 * 60)])

        with (
            patch.object(pd.DataFrame, 'to_parquet', side_effect=OSError('disk full')),
            pytest.raises(OSError),
        ):
            archiver.run()

        assert position_store.count() == 1

    def test_prunes_old_partitions(
        self,
        position_store: PositionStore,
        archive_config: ArchiveConfig,
        make_reading: ReadingFactory,
        fake_clock: FakeClock,
    ) -> None:
        config: ArchiveConfig = archive_config.model_copy(update={'archive_retention_days': 60})
        archiver = ReadingArchiver(position_store, config, clock=fake_clock)
        day: float = 24 * 60
        position_store.append([make_reading(-90 * day), make_reading(-40 * day)])

        result: ArchiveResult = archiver.run()

        assert result.partitions_pruned == 1
        assert archiver.file_handler.list_partition_dates() == [date(2025, 4, 23)]
