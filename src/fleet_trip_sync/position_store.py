# fleet_trip_sync/position_store.py
"""
Persistence of normalized readings.

Append Semantics:
-----------------
`append()` is safe under concurrent writers. Uniqueness on
(device_id, recorded_at) is enforced by the database through
insert-or-ignore, so a duplicate submission is absorbed rather than raised.

Before insert, each device's readings pass a write policy evaluated in
timestamp order against the last persisted reading:

- the first reading of a device is always kept;
- ignition or online state changes are always kept;
- otherwise a reading is kept when the device moved at least
  `min_distance_meters` OR at least `min_interval_seconds` elapsed;
- while stationary (speed below `stationary_speed_kmh`) the looser
  stationary thresholds apply, so a parked vehicle does not flood storage
  with near-identical samples.

Queries:
--------
`nearest()` serves coordinate backfill: the closest-in-time reading with a
valid position inside a bounded window. It issues two index-friendly
lookups (closest before, closest after) instead of ordering by a computed
distance, which SQLite and PostgreSQL express differently.
"""

import logging
from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime, timedelta
from itertools import groupby
from typing import Any, Final, cast

from sqlalchemy import delete, func, select
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.common.geo import haversine_meters
from fleet_trip_sync.common.timeutils import ensure_utc, utc_now
from fleet_trip_sync.config import PositionPolicyConfig
from fleet_trip_sync.models import Reading
from fleet_trip_sync.storage import ReadingRow, insert_ignore

__all__: list[str] = ['PositionStore', 'should_persist']

logger: logging.Logger = logging.getLogger(__name__)

READING_CONFLICT_COLUMNS: Final[list[str]] = ['device_id', 'recorded_at']
DEFAULT_EXPORT_BATCH_SIZE: Final[int] = 5000


# =============================================================================
# Write Policy
# =============================================================================


def should_persist(
    previous: Reading | None,
    candidate: Reading,
    policy: PositionPolicyConfig,
) -> bool:
    """
    Decide whether `candidate` is worth storing after `previous`.

    Args:
        previous: Last persisted (or accepted) reading for the device.
        candidate: Reading under consideration; not older than `previous`.
        policy: Distance/interval thresholds.

    Returns:
        True if the reading should be written.
    """
    if previous is None:
        return True
    if candidate.ignition != previous.ignition or candidate.is_online != previous.is_online:
        return True
    if candidate.has_position and not previous.has_position:
        return True

    elapsed_seconds: float = (candidate.recorded_at - previous.recorded_at).total_seconds()
    distance_meters: float = 0.0
    if candidate.has_position and previous.has_position:
        distance_meters = haversine_meters(
            cast(float, previous.latitude),
            cast(float, previous.longitude),
            cast(float, candidate.latitude),
            cast(float, candidate.longitude),
        )

    if candidate.speed_kmh < policy.stationary_speed_kmh:
        min_distance: float = policy.stationary_min_distance_meters
        min_interval: float = policy.stationary_min_interval_seconds
    else:
        min_distance = policy.min_distance_meters
        min_interval = policy.min_interval_seconds

    return distance_meters >= min_distance or elapsed_seconds >= min_interval


def _reading_to_row(reading: Reading, created_at: datetime) -> dict[str, Any]:
    row: dict[str, Any] = reading.model_dump(mode='python')
    row['ignition_method'] = reading.ignition_method.value
    row['timestamp_source'] = reading.timestamp_source.value
    row['data_quality'] = reading.data_quality.value
    row['created_at'] = created_at
    return row


def _row_to_reading(row: ReadingRow) -> Reading:
    return Reading.model_validate(row, from_attributes=True)


# =============================================================================
# Store
# =============================================================================


class PositionStore:
    """
    Reading persistence with a write policy and backfill queries.

    Each public method runs in its own transaction.

    Example:
        >>> store = PositionStore(session_factory, config.positions)
        >>> store.append(normalize_batch(records))
        12
        >>> store.nearest('3566...', trip.start_time, timedelta(minutes=15))
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        policy: PositionPolicyConfig | None = None,
    ) -> None:
        self._session_factory: sessionmaker[Session] = session_factory
        self.policy: PositionPolicyConfig = policy or PositionPolicyConfig()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def append(self, readings: Iterable[Reading]) -> int:
        """
        Store readings that pass the write policy.

        Args:
            readings: Readings for any number of devices, in any order.

        Returns:
            Number of rows actually inserted (duplicates and policy-filtered
            readings are not counted).
        """
        ordered: list[Reading] = sorted(
            readings, key=lambda reading: (reading.device_id, reading.recorded_at)
        )
        if not ordered:
            return 0

        created_at: datetime = utc_now()
        rows: list[dict[str, Any]] = []
        filtered: int = 0

        with self._session_factory.begin() as session:
            for device_id, device_group in groupby(ordered, key=lambda r: r.device_id):
                device_readings: list[Reading] = list(device_group)
                anchor: Reading | None = self._latest_at_or_before(
                    session, device_id, device_readings[0].recorded_at
                )
                for reading in device_readings:
                    if should_persist(anchor, reading, self.policy):
                        rows.append(_reading_to_row(reading, created_at))
                        anchor = reading
                    else:
                        filtered += 1

            inserted: int = insert_ignore(
                session,
                ReadingRow,
                rows,
                conflict_columns=READING_CONFLICT_COLUMNS,
                batch_size=self.policy.insert_batch_size,
            )

        logger.debug(
            'Appended readings: received=%d, policy_filtered=%d, inserted=%d, duplicates=%d',
            len(ordered),
            filtered,
            inserted,
            len(rows) - inserted,
        )
        return inserted

    def delete_before(self, cutoff: datetime) -> int:
        """Delete every reading recorded before `cutoff`. Returns rows deleted."""
        with self._session_factory.begin() as session:
            result = cast(
                CursorResult[Any],
                session.execute(
                    delete(ReadingRow).where(ReadingRow.recorded_at < ensure_utc(cutoff))
                ),
            )
            deleted: int = max(result.rowcount, 0)

        logger.info('Deleted %d readings recorded before %s', deleted, cutoff.isoformat())
        return deleted

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def nearest(
        self,
        device_id: str,
        timestamp: datetime,
        window: timedelta,
    ) -> Reading | None:
        """
        Closest-in-time reading with a valid position within +/- `window`.

        Ties go to the earlier reading.

        Returns:
            The reading, or None when nothing with a position is in the window.
        """
        target: datetime = ensure_utc(timestamp)

        with self._session_factory() as session:
            positioned = (
                select(ReadingRow)
                .where(
                    ReadingRow.device_id == device_id,
                    ReadingRow.latitude.is_not(None),
                    ReadingRow.longitude.is_not(None),
                )
            )
            before: ReadingRow | None = session.scalars(
                positioned.where(
                    ReadingRow.recorded_at <= target,
                    ReadingRow.recorded_at >= target - window,
                ).order_by(ReadingRow.recorded_at.desc()).limit(1)
            ).first()
            after: ReadingRow | None = session.scalars(
                positioned.where(
                    ReadingRow.recorded_at > target,
                    ReadingRow.recorded_at <= target + window,
                ).order_by(ReadingRow.recorded_at.asc()).limit(1)
            ).first()

        if before is None and after is None:
            return None
        if after is None:
            return _row_to_reading(cast(ReadingRow, before))
        if before is None:
            return _row_to_reading(after)

        if target - before.recorded_at <= after.recorded_at - target:
            return _row_to_reading(before)
        return _row_to_reading(after)

    def latest(self, device_id: str, before: datetime | None = None) -> Reading | None:
        """Most recent stored reading of a device, optionally strictly before `before`."""
        statement = select(ReadingRow).where(ReadingRow.device_id == device_id)
        if before is not None:
            statement = statement.where(ReadingRow.recorded_at < ensure_utc(before))

        with self._session_factory() as session:
            row: ReadingRow | None = session.scalars(
                statement.order_by(ReadingRow.recorded_at.desc()).limit(1)
            ).first()
        return _row_to_reading(row) if row is not None else None

    def readings_between(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Reading]:
        """All readings of a device with start <= recorded_at <= end, oldest first."""
        with self._session_factory() as session:
            rows: Sequence[ReadingRow] = session.scalars(
                select(ReadingRow)
                .where(
                    ReadingRow.device_id == device_id,
                    ReadingRow.recorded_at >= ensure_utc(start),
                    ReadingRow.recorded_at <= ensure_utc(end),
                )
                .order_by(ReadingRow.recorded_at.asc())
            ).all()
        return [_row_to_reading(row) for row in rows]

    def iter_readings_before(
        self,
        cutoff: datetime,
        batch_size: int = DEFAULT_EXPORT_BATCH_SIZE,
    ) -> Iterator[list[Reading]]:
        """
        Yield batches of readings recorded before `cutoff`, by ascending row id.

        Keyset pagination keeps memory bounded regardless of table size.
        """
        last_id: int = 0
        boundary: datetime = ensure_utc(cutoff)

        while True:
            with self._session_factory() as session:
                rows: Sequence[ReadingRow] = session.scalars(
                    select(ReadingRow)
                    .where(ReadingRow.recorded_at < boundary, ReadingRow.id > last_id)
                    .order_by(ReadingRow.id.asc())
                    .limit(batch_size)
                ).all()

            if not rows:
                return

            last_id = rows[-1].id
            yield [_row_to_reading(row) for row in rows]

    def count(self, device_id: str | None = None) -> int:
        statement = select(func.count()).select_from(ReadingRow)
        if device_id is not None:
            statement = statement.where(ReadingRow.device_id == device_id)
        with self._session_factory() as session:
            return int(session.scalar(statement) or 0)

    def device_ids(self) -> list[str]:
        """Distinct device ids with at least one stored reading."""
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(ReadingRow.device_id).distinct().order_by(ReadingRow.device_id)
                ).all()
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _latest_at_or_before(
        self,
        session: Session,
        device_id: str,
        timestamp: datetime,
    ) -> Reading | None:
        row: ReadingRow | None = session.scalars(
            select(ReadingRow)
            .where(ReadingRow.device_id == device_id, ReadingRow.recorded_at <= timestamp)
            .order_by(ReadingRow.recorded_at.desc())
            .limit(1)
        ).first()
        return _row_to_reading(row) if row is not None else None
