# fleet_trip_sync/schema.py
"""
Tabular schema for archived readings.

This module provides the canonical column definitions and DataFrame schema
enforcement for readings leaving the database for the Parquet archive. The
archive writer and any downstream analysis should use these definitions so
every partition has identical columns and dtypes.

Design Rationale:
-----------------
The schema is flat (no nested structures) to optimize for:
- Parquet columnar storage efficiency
- Direct querying without JSON parsing
- Compatibility with BI tools

Timestamps are stored in UTC. Conversion to the display offset happens at
presentation time, never in storage.
"""

import logging
from collections.abc import Iterable
from typing import Final

import numpy as np
import pandas as pd

from fleet_trip_sync.models import Reading

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'DEDUP_COLUMNS',
    'PARTITION_COLUMN',
    'READING_COLUMNS',
    'SORT_COLUMNS',
    'enforce_reading_schema',
    'readings_to_dataframe',
]

# =============================================================================
# Schema Constants
# =============================================================================

# Canonical column order for archived readings.
READING_COLUMNS: Final[list[str]] = [
    'device_id',  # Vendor device identifier
    'recorded_at',  # Sample time (UTC, timezone-aware)
    'latitude',  # WGS84 latitude, NaN without a valid fix
    'longitude',  # WGS84 longitude, NaN without a valid fix
    'speed_kmh',  # Speed in km/h
    'heading',  # Compass heading (0-360, 0=North)
    'ignition',  # Derived ignition state, <NA> when unknown
    'ignition_confidence',  # 0.0-1.0
    'ignition_method',  # bit-field, string-pattern, speed-inferred, multi-signal, unknown
    'battery_percent',  # 0-100
    'signal_percent',  # 0-100
    'is_online',  # Online at sample time
    'timestamp_source',  # gps or server
    'data_quality',  # high, medium, low
]

# A reading is unique per device and instant, matching the database key.
DEDUP_COLUMNS: Final[list[str]] = ['device_id', 'recorded_at']

SORT_COLUMNS: Final[list[str]] = ['device_id', 'recorded_at']

# Derived column the partitioned writer splits on; not part of the schema.
PARTITION_COLUMN: Final[str] = 'partition_date'

_FLOAT_COLUMNS: Final[list[str]] = [
    'latitude',
    'longitude',
    'speed_kmh',
    'heading',
    'ignition_confidence',
    'battery_percent',
    'signal_percent',
]

_CATEGORICAL_COLUMNS: Final[list[str]] = ['ignition_method', 'timestamp_source', 'data_quality']


# =============================================================================
# Schema Functions
# =============================================================================


def enforce_reading_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce correct column types on a readings DataFrame.

    This function is idempotent: calling it multiple times on the same
    DataFrame produces the same result.

    Args:
        dataframe: DataFrame with reading columns. May have incorrect types
            (e.g., timestamps as strings, coordinates as object).

    Returns:
        DataFrame with enforced types and schema column order:
            - recorded_at: datetime64[ns, UTC]
            - numeric columns: float64 (nullable via NaN)
            - ignition: pandas nullable boolean
            - is_online: bool
            - enum columns: category
            - device_id: object (string)

    Raises:
        ValueError: If required columns are missing from the input DataFrame.
    """
    missing_columns: set[str] = set(READING_COLUMNS) - set(dataframe.columns)
    if missing_columns:
        raise ValueError(f'DataFrame missing required columns: {sorted(missing_columns)}')

    result: pd.DataFrame = dataframe.copy()

    result['recorded_at'] = pd.to_datetime(result['recorded_at'], utc=True, errors='coerce')

    for column_name in _FLOAT_COLUMNS:
        result[column_name] = pd.to_numeric(result[column_name], errors='coerce').astype(
            np.float64
        )

    result['ignition'] = result['ignition'].astype('boolean')
    result['is_online'] = result['is_online'].fillna(False).astype(bool)

    for column_name in _CATEGORICAL_COLUMNS:
        result[column_name] = result[column_name].astype('category')

    # Force string ids so "101" (int) and "101" (str) never diverge
    result['device_id'] = result['device_id'].astype(str)

    extra_columns: list[str] = [
        column for column in result.columns if column not in READING_COLUMNS
    ]
    result = result[READING_COLUMNS + extra_columns]

    unparsed_count: int = int(result['recorded_at'].isna().sum())
    if unparsed_count > 0:
        logger.warning('Found %d readings with unparseable recorded_at', unparsed_count)

    return result


def readings_to_dataframe(readings: Iterable[Reading]) -> pd.DataFrame:
    """
    Build a schema-conforming DataFrame from readings.

    Adds a `partition_date` column (UTC calendar date of `recorded_at`) for
    the partitioned archive writer.
    """
    records: list[dict[str, object]] = [reading.model_dump(mode='json') for reading in readings]
    if not records:
        empty: pd.DataFrame = pd.DataFrame(columns=READING_COLUMNS)
        empty[PARTITION_COLUMN] = pd.Series(dtype=object)
        return empty

    dataframe: pd.DataFrame = enforce_reading_schema(pd.DataFrame.from_records(records))
    dataframe[PARTITION_COLUMN] = dataframe['recorded_at'].dt.date
    return dataframe.sort_values(SORT_COLUMNS).reset_index(drop=True)
