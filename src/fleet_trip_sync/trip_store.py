# fleet_trip_sync/trip_store.py
"""
Trip persistence.

Trips are append-only except for one repair path: a missing start or end
coordinate pair may be filled, once, by a conditional
`UPDATE ... WHERE <pair> IS NULL`. Concurrent or repeated repairs of the same
trip therefore cannot overwrite each other, and a second pass is a no-op.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Final, Literal, cast

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session, sessionmaker

from fleet_trip_sync.common.timeutils import ensure_utc, utc_now
from fleet_trip_sync.models import Trip
from fleet_trip_sync.storage import TripRow, insert_ignore

__all__: list[str] = ['StoredTrip', 'TripEndpoint', 'TripStore']

logger: logging.Logger = logging.getLogger(__name__)

TRIP_CONFLICT_COLUMNS: Final[list[str]] = ['device_id', 'start_time', 'end_time']

TripEndpoint = Literal['start', 'end']


class StoredTrip(Trip):
    """A trip as read back from storage, carrying its row id."""

    id: int


def _row_to_trip(row: TripRow) -> StoredTrip:
    return StoredTrip.model_validate(row, from_attributes=True)


class TripStore:
    """Reads and writes the `trips` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory: sessionmaker[Session] = session_factory

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def exists(
        self,
        device_id: str,
        start_time: datetime,
        end_time: datetime,
        session: Session | None = None,
    ) -> bool:
        """True when a trip with exactly these bounds is already stored."""
        statement = select(
            exists().where(
                TripRow.device_id == device_id,
                TripRow.start_time == ensure_utc(start_time),
                TripRow.end_time == ensure_utc(end_time),
            )
        )
        if session is not None:
            return bool(session.scalar(statement))
        with self._session_factory() as own_session:
            return bool(own_session.scalar(statement))

    def insert(self, trip: Trip) -> bool:
        """
        Insert a trip unless one with the same (device, start, end) exists.

        Existing trips are never overwritten.

        Returns:
            True if the trip was inserted, False if it was a duplicate.

        Raises:
            DataIntegrityError: The row violates a constraint other than the
                (device, start, end) key.
        """
        now: datetime = utc_now()
        row: dict[str, Any] = trip.model_dump(mode='python')
        row['source'] = trip.source.value
        row['created_at'] = now
        row['updated_at'] = now

        with self._session_factory.begin() as session:
            if self.exists(trip.device_id, trip.start_time, trip.end_time, session):
                return False
            inserted: int = insert_ignore(
                session, TripRow, [row], conflict_columns=TRIP_CONFLICT_COLUMNS
            )
        return inserted == 1

    def fill_coordinates(
        self,
        trip_id: int,
        endpoint: TripEndpoint,
        latitude: float,
        longitude: float,
    ) -> bool:
        """
        Set one endpoint's coordinates only if that pair is still null.

        Returns:
            True if this call filled the pair, False if it was already set.
        """
        if endpoint == 'start':
            lat_column: Any = TripRow.start_latitude
            lon_column: Any = TripRow.start_longitude
            values: dict[str, Any] = {'start_latitude': latitude, 'start_longitude': longitude}
        else:
            lat_column = TripRow.end_latitude
            lon_column = TripRow.end_longitude
            values = {'end_latitude': latitude, 'end_longitude': longitude}

        with self._session_factory.begin() as session:
            result = cast(
                CursorResult[Any],
                session.execute(
                    update(TripRow)
                    .where(
                        TripRow.id == trip_id,
                        lat_column.is_(None),
                        lon_column.is_(None),
                    )
                    .values(updated_at=utc_now(), **values)
                    .execution_options(synchronize_session=False)
                ),
            )
            return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, trip_id: int) -> StoredTrip | None:
        with self._session_factory() as session:
            row: TripRow | None = session.get(TripRow, trip_id)
        return _row_to_trip(row) if row is not None else None

    def trips_between(
        self,
        start: datetime,
        end: datetime,
        device_ids: Sequence[str] | None = None,
        missing_coordinates_only: bool = False,
    ) -> list[StoredTrip]:
        """
        Stored trips that start inside [start, end], oldest first.

        Args:
            start: Range start (inclusive).
            end: Range end (inclusive).
            device_ids: Restrict to these devices; None means every device.
            missing_coordinates_only: Only trips lacking a start or end pair.
        """
        statement = select(TripRow).where(
            TripRow.start_time >= ensure_utc(start),
            TripRow.start_time <= ensure_utc(end),
        )
        if device_ids is not None:
            statement = statement.where(TripRow.device_id.in_(list(device_ids)))
        if missing_coordinates_only:
            statement = statement.where(
                or_(
                    and_(TripRow.start_latitude.is_(None), TripRow.start_longitude.is_(None)),
                    and_(TripRow.end_latitude.is_(None), TripRow.end_longitude.is_(None)),
                )
            )

        with self._session_factory() as session:
            rows: Sequence[TripRow] = session.scalars(
                statement.order_by(TripRow.device_id, TripRow.start_time)
            ).all()
        return [_row_to_trip(row) for row in rows]

    def latest_end_time(self, device_id: str) -> datetime | None:
        with self._session_factory() as session:
            return session.scalar(
                select(func.max(TripRow.end_time)).where(TripRow.device_id == device_id)
            )

    def count(self, device_id: str | None = None) -> int:
        statement = select(func.count()).select_from(TripRow)
        if device_id is not None:
            statement = statement.where(TripRow.device_id == device_id)
        with self._session_factory() as session:
            return int(session.scalar(statement) or 0)
