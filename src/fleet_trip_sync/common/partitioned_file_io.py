# fleet_trip_sync/common/partitioned_file_io.py
"""
Date-partitioned Parquet storage for archived readings.

Readings older than the database retention window are moved into a
Hive-style directory tree so the hot SQL tables stay small while the full
history stays queryable from pandas, DuckDB or BigQuery external tables.

Directory Structure:
--------------------
    base_path/
    ├── date=2024-01-15/
    │   └── data.parquet
    └── date=2024-01-16/
        └── data.parquet

Design Decisions:
-----------------
- One file per UTC day. Archiving a day that already has a partition merges
  with it and drops duplicates on the reading key, so re-running an archive
  pass after a crash cannot double-count readings.
- Writes are atomic per partition (temp file in the same directory, then
  rename). A crash leaves the previous file intact.
- NOT safe for two writers on the same partition. The archive job runs from
  a single scheduled worker.

Usage:
------
    from fleet_trip_sync.config import ArchiveConfig
    from fleet_trip_sync.common.partitioned_file_io import PartitionedParquetHandler

    handler = PartitionedParquetHandler(ArchiveConfig(parquet_path='archive/'))
    handler.save_partitioned(readings_df, date_column='partition_date',
                             dedup_columns=['device_id', 'recorded_at'])
    january = handler.load_date_range(date(2024, 1, 1), date(2024, 1, 31))
"""

import logging
import tempfile
from contextlib import suppress
from datetime import date
from pathlib import Path
from typing import Final, cast

import pandas as pd
from pyarrow import (
    ArrowInvalid as _ArrowInvalid,  # pyright: ignore[reportUnknownVariableType]
    ArrowIOError as _ArrowIOError,  # pyright: ignore[reportUnknownVariableType]
)

from fleet_trip_sync.config import ArchiveConfig

# The pyarrow stubs do not type these as exceptions
ArrowInvalid: type[Exception] = cast(type[Exception], _ArrowInvalid)
ArrowIOError: type[Exception] = cast(type[Exception], _ArrowIOError)

__all__: list[str] = ['PartitionedParquetHandler']

logger: logging.Logger = logging.getLogger(__name__)

PARTITION_PREFIX: Final[str] = 'date='
PARTITION_FILE_NAME: Final[str] = 'data.parquet'


class PartitionedParquetHandler:
    """
    Reads and writes a directory of `date=YYYY-MM-DD/data.parquet` partitions.

    Attributes:
        base_path: Root directory containing all partitions (read-only).
    """

    def __init__(self, archive_config: ArchiveConfig) -> None:
        """
        Initialize the handler, creating the base directory if needed.

        Args:
            archive_config: Archive settings (path and compression).

        Raises:
            OSError: If the base directory cannot be created.
        """
        self._config: ArchiveConfig = archive_config
        self._config.parquet_path.mkdir(parents=True, exist_ok=True)

        logger.debug(
            'Initialized PartitionedParquetHandler: base_path=%r, compression=%r',
            self._config.parquet_path,
            self._config.parquet_compression,
        )

    @property
    def base_path(self) -> Path:
        """Root directory containing all partition directories."""
        return self._config.parquet_path

    def _partition_file(self, partition_date: date) -> Path:
        return (
            self._config.parquet_path
            / f'{PARTITION_PREFIX}{partition_date.isoformat()}'
            / PARTITION_FILE_NAME
        )

    def list_partition_dates(self) -> list[date]:
        """
        List partition dates in ascending order.

        Directories whose name does not parse as a date are skipped with a
        warning.
        """
        if not self._config.parquet_path.exists():
            return []

        dates: list[date] = []
        for child in self._config.parquet_path.iterdir():
            if not child.is_dir() or not child.name.startswith(PARTITION_PREFIX):
                continue
            try:
                dates.append(date.fromisoformat(child.name[len(PARTITION_PREFIX) :]))
            except ValueError:
                logger.warning('Ignoring malformed partition directory: %r', child)

        return sorted(dates)

    def load_partition(self, partition_date: date) -> pd.DataFrame | None:
        """
        Load one partition.

        Returns:
            The partition's DataFrame, or None when it is missing or
            unreadable (the error is logged).
        """
        partition_path: Path = self._partition_file(partition_date)
        if not partition_path.exists():
            return None

        try:
            return pd.read_parquet(partition_path)
        except (OSError, ArrowInvalid, ArrowIOError):
            logger.exception(
                'Failed to read archive partition %s from %r',
                partition_date.isoformat(),
                partition_path,
            )
            return None

    def load_date_range(self, start_date: date, end_date: date) -> pd.DataFrame | None:
        """
        Load and concatenate every partition between two dates (inclusive).

        Returns:
            Combined DataFrame, or None when no partition in the range has data.
        """
        if start_date > end_date:
            logger.warning(
                'start_date %s is after end_date %s; nothing to load',
                start_date.isoformat(),
                end_date.isoformat(),
            )
            return None

        frames: list[pd.DataFrame] = []
        for partition_date in self.list_partition_dates():
            if not start_date <= partition_date <= end_date:
                continue
            frame: pd.DataFrame | None = self.load_partition(partition_date)
            if frame is not None and not frame.empty:
                frames.append(frame)

        if not frames:
            return None

        combined: pd.DataFrame = pd.concat(frames, ignore_index=True)
        logger.info(
            'Loaded %d archive partitions (%d readings) from %s to %s',
            len(frames),
            len(combined),
            start_date.isoformat(),
            end_date.isoformat(),
        )
        return combined

    def save_partition(self, dataframe: pd.DataFrame, partition_date: date) -> None:
        """
        Write one partition atomically, replacing any existing file.

        Raises:
            OSError: File system errors.
            ArrowInvalid: DataFrame contains unserializable values.
        """
        partition_path: Path = self._partition_file(partition_date)
        partition_path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            mode='wb',
            suffix='.parquet.tmp',
            dir=partition_path.parent,
            delete=False,
        ) as temp_file:
            temp_path = Path(temp_file.name)

        try:
            dataframe.to_parquet(
                temp_path,
                index=False,
                compression=self._config.parquet_compression,
            )
            temp_path.replace(partition_path)
        except (OSError, ArrowInvalid, ArrowIOError):
            logger.exception(
                'Failed to write archive partition %s (%d readings)',
                partition_date.isoformat(),
                len(dataframe),
            )
            with suppress(OSError):
                temp_path.unlink()
            raise

        logger.debug(
            'Saved archive partition %s: %d readings',
            partition_date.isoformat(),
            len(dataframe),
        )

    def save_partitioned(
        self,
        dataframe: pd.DataFrame,
        date_column: str = 'partition_date',
        dedup_columns: list[str] | None = None,
    ) -> dict[date, int]:
        """
        Split a DataFrame by a date column and merge each group into its partition.

        Existing partition data is loaded, concatenated with the new rows and
        deduplicated on `dedup_columns` (keeping the newest copy).

        Args:
            dataframe: Rows to archive; must contain `date_column`.
            date_column: Column holding the partition date (dates or datetimes).
                It is dropped before writing since the directory encodes it.
            dedup_columns: Columns identifying a row. None uses all columns.

        Returns:
            Mapping of partition date to the row count written for it.

        Raises:
            ValueError: If `date_column` is missing.
        """
        if date_column not in dataframe.columns:
            raise ValueError(f'DataFrame missing required date column: {date_column!r}')

        working: pd.DataFrame = dataframe.copy()
        working[date_column] = pd.to_datetime(working[date_column]).dt.date

        rows_written: dict[date, int] = {}

        for partition_date, group in working.groupby(date_column, sort=True):
            partition_day: date = cast(date, partition_date)
            partition_df: pd.DataFrame = group.drop(columns=[date_column])

            existing: pd.DataFrame | None = self.load_partition(partition_day)
            if existing is not None and not existing.empty:
                partition_df = pd.concat([existing, partition_df], ignore_index=True)
                partition_df = partition_df.drop_duplicates(
                    subset=dedup_columns,
                    keep='last',
                )

            self.save_partition(partition_df, partition_day)
            rows_written[partition_day] = len(partition_df)

        logger.info(
            'Archived into %d partitions (%d rows after merge)',
            len(rows_written),
            sum(rows_written.values()),
        )
        return rows_written

    def delete_partitions_before(self, cutoff_date: date) -> int:
        """
        Delete every partition strictly older than `cutoff_date`.

        Returns:
            Number of partitions removed.
        """
        deleted_count: int = 0

        for partition_date in self.list_partition_dates():
            if partition_date >= cutoff_date:
                break
            partition_path: Path = self._partition_file(partition_date)
            if partition_path.exists():
                partition_path.unlink()
            partition_dir: Path = partition_path.parent
            if partition_dir.exists() and not any(partition_dir.iterdir()):
                partition_dir.rmdir()
            deleted_count += 1

        if deleted_count:
            logger.info(
                'Deleted %d archive partitions before %s',
                deleted_count,
                cutoff_date.isoformat(),
            )
        return deleted_count

    def get_statistics(self) -> dict[str, int | str | None]:
        """Partition count and covered date range."""
        partition_dates: list[date] = self.list_partition_dates()
        return {
            'partition_count': len(partition_dates),
            'earliest_date': partition_dates[0].isoformat() if partition_dates else None,
            'latest_date': partition_dates[-1].isoformat() if partition_dates else None,
        }
