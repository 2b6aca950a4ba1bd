# fleet_trip_sync/archive.py
"""
Reading retention: move old readings from the database into Parquet.

Readings older than `retention_days` are exported in id-ordered batches to
the date-partitioned archive, then deleted from the database. Archive
partitions older than `archive_retention_days` (when set) are pruned.

Partition Strategy:
    A reading goes into the partition of its UTC `recorded_at` date. A
    reading at 2024-01-15T23:59:59Z lands in 2024-01-15, one at
    2024-01-16T00:00:01Z in 2024-01-16.

Failure Behavior:
    Database rows are deleted only after every batch has been written. A
    failed export leaves the database untouched, and re-running merges with
    the partitions already written (deduplicated on the reading key).
"""

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from pydantic import BaseModel, Field

from fleet_trip_sync.common.partitioned_file_io import PartitionedParquetHandler
from fleet_trip_sync.common.timeutils import utc_now
from fleet_trip_sync.config import ArchiveConfig
from fleet_trip_sync.position_store import PositionStore
from fleet_trip_sync.schema import DEDUP_COLUMNS, PARTITION_COLUMN, readings_to_dataframe

__all__: list[str] = ['ArchiveResult', 'ReadingArchiver']

logger: logging.Logger = logging.getLogger(__name__)


class ArchiveResult(BaseModel):
    """Outcome of one archive pass."""

    cutoff: datetime
    readings_archived: int = 0
    readings_deleted: int = 0
    partitions_written: list[date] = Field(default_factory=list)
    partitions_pruned: int = 0


class ReadingArchiver:
    """
    Exports aged readings to Parquet and trims the database.

    Attributes:
        config: Retention and storage settings.
        file_handler: The partitioned Parquet handler.
    """

    def __init__(
        self,
        position_store: PositionStore,
        config: ArchiveConfig,
        file_handler: PartitionedParquetHandler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._position_store: PositionStore = position_store
        self.config: ArchiveConfig = config
        self.file_handler: PartitionedParquetHandler = file_handler or PartitionedParquetHandler(
            config
        )
        self._clock: Callable[[], datetime] = clock

    def run(self, now: datetime | None = None, batch_size: int = 5000) -> ArchiveResult:
        """
        Archive readings recorded before `now - retention_days`.

        Args:
            now: Reference time; defaults to the clock.
            batch_size: Readings exported per batch.

        Returns:
            Counts of archived and deleted readings and touched partitions.
        """
        reference: datetime = now or self._clock()
        cutoff: datetime = reference - timedelta(days=self.config.retention_days)
        result = ArchiveResult(cutoff=cutoff)
        written: set[date] = set()

        logger.info('Archiving readings recorded before %s', cutoff.isoformat())

        for batch_index, batch in enumerate(
            self._position_store.iter_readings_before(cutoff, batch_size=batch_size), start=1
        ):
            dataframe = readings_to_dataframe(batch)
            partitions: dict[date, int] = self.file_handler.save_partitioned(
                dataframe,
                date_column=PARTITION_COLUMN,
                dedup_columns=DEDUP_COLUMNS,
            )
            written.update(partitions)
            result.readings_archived += len(batch)
            logger.debug('Archived batch %d (%d readings)', batch_index, len(batch))

        if result.readings_archived:
            result.readings_deleted = self._position_store.delete_before(cutoff)

        if self.config.archive_retention_days is not None:
            prune_before: date = (
                reference - timedelta(days=self.config.archive_retention_days)
            ).date()
            result.partitions_pruned = self.file_handler.delete_partitions_before(prune_before)

        result.partitions_written = sorted(written)
        logger.info(
            'Archive pass complete: archived=%d deleted=%d partitions=%d pruned=%d',
            result.readings_archived,
            result.readings_deleted,
            len(result.partitions_written),
            result.partitions_pruned,
        )
        return result
