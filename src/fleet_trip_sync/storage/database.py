# fleet_trip_sync/storage/database.py
"""
Database engine, session factory and dialect-aware write helpers.

All shared mutable state (readings, trips, checkpoints, events, rate-limit
state, reconciliation reports) lives in one SQL database so that independent
worker processes coordinate through it instead of through in-process
objects.

Design Decisions:
-----------------
- SQLite by default, PostgreSQL compatible. Both support
  `INSERT ... ON CONFLICT DO NOTHING`, which is how duplicate readings and
  trips are absorbed without application-level locking.
- Timestamps are stored as naive UTC and handed back as aware UTC by the
  `UTCDateTime` type, so SQLite (which has no timezone support) and
  PostgreSQL behave identically.
- Sessions are created with `expire_on_commit=False`; rows read inside a
  transaction stay usable after it commits.
- SQLite waits `busy_timeout_seconds` on a locked database instead of
  blocking indefinitely.

Usage:
------
    from fleet_trip_sync.config import DatabaseConfig
    from fleet_trip_sync.storage import create_database_engine, build_session_factory

    engine = create_database_engine(DatabaseConfig(url='sqlite:///fleet.db'))
    init_database(engine)
    session_factory = build_session_factory(engine)

    with session_factory.begin() as session:
        ...
"""

import logging
from collections.abc import Iterator, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, cast

from sqlalchemy import DateTime, Engine, create_engine, insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import CursorResult, Dialect, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from fleet_trip_sync.common.timeutils import ensure_utc
from fleet_trip_sync.config import DatabaseConfig

__all__: list[str] = [
    'Base',
    'DataIntegrityError',
    'UTCDateTime',
    'build_session_factory',
    'create_database_engine',
    'init_database',
    'insert_ignore',
]

logger: logging.Logger = logging.getLogger(__name__)

# Stay well below SQLite's bound-parameter limit for multi-row inserts
DEFAULT_INSERT_BATCH_SIZE: Final[int] = 500


class DataIntegrityError(Exception):
    """
    Raised when a write violates a constraint outside the expected
    insert-or-ignore path (e.g. a check constraint, or a conflict the caller
    did not anticipate).

    Attributes:
        table_name: Table the failed write targeted.
    """

    def __init__(self, message: str, table_name: str | None = None) -> None:
        super().__init__(message)
        self.table_name: str | None = table_name


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime column that always binds naive UTC and returns aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# =============================================================================
# Engine / Session
# =============================================================================


def create_database_engine(config: DatabaseConfig) -> Engine:
    """
    Build the SQLAlchemy engine for the configured URL.

    For file-based SQLite the parent directory is created. In-memory SQLite
    uses a single shared connection so every session sees the same data.

    Args:
        config: Database settings.

    Returns:
        Configured Engine.
    """
    url = make_url(config.url)
    engine_kwargs: dict[str, Any] = {'echo': config.echo}

    if url.get_backend_name() == 'sqlite':
        engine_kwargs['connect_args'] = {
            'check_same_thread': False,
            'timeout': config.busy_timeout_seconds,
        }
        database: str | None = url.database
        if not database or database == ':memory:':
            engine_kwargs['poolclass'] = StaticPool
        else:
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    engine: Engine = create_engine(url, **engine_kwargs)
    logger.info('Database engine created: %s', url.render_as_string(hide_password=True))
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_database(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    # Table classes register themselves on Base.metadata at import time
    from fleet_trip_sync.storage import tables  # noqa: F401, PLC0415

    Base.metadata.create_all(engine)
    logger.debug('Database schema ensured (%d tables)', len(Base.metadata.tables))


# =============================================================================
# Insert-or-ignore
# =============================================================================


def _chunk_rows(
    rows: Sequence[Mapping[str, Any]], batch_size: int
) -> Iterator[list[Mapping[str, Any]]]:
    for start in range(0, len(rows), batch_size):
        yield list(rows[start : start + batch_size])


def insert_ignore(
    session: Session,
    model: type[Base],
    rows: Sequence[Mapping[str, Any]],
    conflict_columns: Sequence[str],
    batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
) -> int:
    """
    Insert rows, silently skipping those that collide on `conflict_columns`.

    Uses the dialect's native `ON CONFLICT DO NOTHING` for SQLite and
    PostgreSQL so concurrent writers cannot race each other. Other dialects
    fall back to one savepoint per row.

    Args:
        session: Open session (caller owns the transaction).
        model: Mapped table class.
        rows: Column-name keyed values.
        conflict_columns: Columns of the unique constraint to ignore on.
        batch_size: Rows per multi-row INSERT.

    Returns:
        Number of rows actually inserted.

    Raises:
        DataIntegrityError: If a row violates a constraint other than the
            ignored unique key (fallback path only; native paths raise
            IntegrityError wrapped the same way).
    """
    if not rows:
        return 0

    dialect_name: str = session.get_bind().dialect.name
    table_name: str = model.__tablename__
    inserted: int = 0

    try:
        for batch in _chunk_rows(rows, batch_size):
            match dialect_name:
                case 'sqlite':
                    statement: Any = (
                        sqlite_insert(model)
                        .values(batch)
                        .on_conflict_do_nothing(index_elements=list(conflict_columns))
                    )
                case 'postgresql':
                    statement = (
                        postgresql_insert(model)
                        .values(batch)
                        .on_conflict_do_nothing(index_elements=list(conflict_columns))
                    )
                case _:
                    inserted += _insert_ignore_row_by_row(session, model, batch)
                    continue

            result = cast(CursorResult[Any], session.execute(statement))
            inserted += max(result.rowcount, 0)
    except IntegrityError as error:
        raise DataIntegrityError(
            f'Constraint violation inserting into {table_name}: {error.orig}',
            table_name=table_name,
        ) from error

    return inserted


def _insert_ignore_row_by_row(
    session: Session,
    model: type[Base],
    rows: Sequence[Mapping[str, Any]],
) -> int:
    inserted: int = 0
    for row in rows:
        try:
            with session.begin_nested():
                session.execute(insert(model).values(dict(row)))
            inserted += 1
        except IntegrityError:
            logger.debug('Ignored duplicate row in %s', model.__tablename__)
    return inserted
