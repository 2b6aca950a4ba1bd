# fleet_trip_sync/storage/tables.py
"""
SQLAlchemy table definitions.

Unique constraints carry the idempotency guarantees:
    - readings: (device_id, recorded_at)
    - trips: (device_id, start_time, end_time)
    - sync_checkpoints / rate_limit_state: one row per key (primary key)

Trips deliberately have no duration column; duration is always derived from
the stored bounds.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from fleet_trip_sync.common.timeutils import utc_now
from fleet_trip_sync.storage.database import Base, UTCDateTime

__all__: list[str] = [
    'DeviceEventRow',
    'RateLimitStateRow',
    'ReadingRow',
    'ReconcileRunRow',
    'SyncCheckpointRow',
    'TripRow',
]


class ReadingRow(Base):
    __tablename__ = 'readings'
    __table_args__ = (
        UniqueConstraint('device_id', 'recorded_at', name='uq_readings_device_time'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed_kmh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)

    ignition: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    ignition_confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    ignition_method: Mapped[str] = mapped_column(String(32), nullable=False)

    battery_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    signal_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    timestamp_source: Mapped[str] = mapped_column(String(16), nullable=False)
    data_quality: Mapped[str] = mapped_column(String(16), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class TripRow(Base):
    __tablename__ = 'trips'
    __table_args__ = (
        UniqueConstraint('device_id', 'start_time', 'end_time', name='uq_trips_device_bounds'),
        CheckConstraint('end_time > start_time', name='ck_trips_positive_duration'),
        CheckConstraint('distance_km >= 0', name='ck_trips_distance_non_negative'),
        Index('ix_trips_device_start', 'device_id', 'start_time'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    start_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    distance_km: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    @property
    def duration_seconds(self) -> int:
        return int((self.end_time - self.start_time).total_seconds())


class SyncCheckpointRow(Base):
    __tablename__ = 'sync_checkpoints'

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default='idle')
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_run_finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trips_synced_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class DeviceEventRow(Base):
    __tablename__ = 'device_events'
    __table_args__ = (
        Index('ix_device_events_device_type_time', 'device_id', 'event_type', 'occurred_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    message: Mapped[str] = mapped_column(Text, default='', nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, default='{}', nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class RateLimitStateRow(Base):
    __tablename__ = 'rate_limit_state'

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    calls_in_window: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    backoff_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_call_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    consecutive_rate_limits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Compare-and-set counter: every write is `UPDATE ... WHERE version = :seen`
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ReconcileRunRow(Base):
    __tablename__ = 'reconcile_runs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    device_scope: Mapped[str] = mapped_column(Text, nullable=False)
    range_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    range_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trips_checked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    trips_fixed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    coordinates_backfilled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors_json: Mapped[str] = mapped_column(Text, default='[]', nullable=False)
