# fleet_trip_sync/models/domain.py
"""
Canonical domain value objects.

These are the shapes every component agrees on once vendor data has been
interpreted: a `Reading` per telemetry sample, a `Trip` per journey and a
`DeviceEvent` per lifecycle occurrence. They are frozen; changes to stored
data go through the stores, never through mutation of these objects.

Invariants enforced at construction:
    - Coordinates are pairs: both present or both absent, never (0, 0).
    - All timestamps are timezone-aware UTC.
    - A trip ends after it starts and has a non-negative distance.
    - Trip duration is derived from its bounds and never stored separately.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fleet_trip_sync.common.geo import is_valid_coordinate
from fleet_trip_sync.common.timeutils import ensure_utc

__all__: list[str] = [
    'DataQuality',
    'DeviceEvent',
    'EventType',
    'IgnitionMethod',
    'Reading',
    'Severity',
    'TimestampSource',
    'Trip',
    'TripSource',
]


# =============================================================================
# Enumerations
# =============================================================================


class IgnitionMethod(str, Enum):
    """Which signal produced a reading's ignition value."""

    BIT_FIELD = 'bit-field'
    STRING_PATTERN = 'string-pattern'
    SPEED_INFERRED = 'speed-inferred'
    MULTI_SIGNAL = 'multi-signal'
    UNKNOWN = 'unknown'


class TimestampSource(str, Enum):
    """Whether a reading's time came from the GPS fix or the vendor server."""

    GPS = 'gps'
    SERVER = 'server'


class DataQuality(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class TripSource(str, Enum):
    """Origin of a stored trip."""

    VENDOR = 'vendor'
    SEGMENTED = 'segmented'


class EventType(str, Enum):
    IGNITION_ON = 'ignition-on'
    IGNITION_OFF = 'ignition-off'
    ONLINE = 'online'
    OFFLINE = 'offline'
    OVERSPEED = 'overspeed'
    LOW_BATTERY = 'low-battery'


class Severity(str, Enum):
    INFO = 'info'
    WARNING = 'warning'
    CRITICAL = 'critical'


# =============================================================================
# Shared validation
# =============================================================================


def _validate_pair(
    latitude: float | None,
    longitude: float | None,
    label: str,
) -> None:
    if latitude is None and longitude is None:
        return
    if latitude is None or longitude is None:
        raise ValueError(f'{label} coordinates must be both present or both absent')
    if not is_valid_coordinate(latitude, longitude):
        raise ValueError(
            f'{label} coordinates ({latitude}, {longitude}) are out of range or the '
            f'(0, 0) sentinel'
        )


class DomainModelBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')


# =============================================================================
# Reading
# =============================================================================


class Reading(DomainModelBase):
    """
    One normalized telemetry sample for a device at an instant.

    Attributes:
        device_id: Vendor device identifier.
        recorded_at: Sample time (UTC).
        latitude/longitude: WGS84 position, None when the fix was invalid.
        speed_kmh: Speed in km/h, jitter below the movement floor zeroed.
        heading: Compass heading in degrees, if reported.
        ignition: Derived ignition state, None when no signal was usable.
        ignition_confidence: 0.0-1.0 reliability of `ignition`.
        ignition_method: Signal that produced `ignition`.
        battery_percent: Battery level 0-100, if derivable.
        signal_percent: Cellular signal strength 0-100, if reported.
        is_online: Whether the device reported recently enough to count as online.
        timestamp_source: GPS fix time or server receipt time.
        data_quality: Overall trust bucket for the sample.
    """

    device_id: str = Field(min_length=1)
    recorded_at: datetime
    latitude: float | None = None
    longitude: float | None = None
    speed_kmh: float = Field(default=0.0, ge=0.0)
    heading: float | None = None
    ignition: bool | None = None
    ignition_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    ignition_method: IgnitionMethod = IgnitionMethod.UNKNOWN
    battery_percent: float | None = Field(default=None, ge=0.0, le=100.0)
    signal_percent: float | None = Field(default=None, ge=0.0, le=100.0)
    is_online: bool = True
    timestamp_source: TimestampSource = TimestampSource.GPS
    data_quality: DataQuality = DataQuality.MEDIUM

    @field_validator('recorded_at')
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode='after')
    def validate_coordinates(self) -> Self:
        _validate_pair(self.latitude, self.longitude, 'reading')
        if self.ignition is None and self.ignition_method is not IgnitionMethod.UNKNOWN:
            raise ValueError('ignition=None requires ignition_method=unknown')
        return self

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# =============================================================================
# Trip
# =============================================================================


class Trip(DomainModelBase):
    """
    One inferred journey.

    `duration` is computed from `start_time` and `end_time` and is never an
    input, so a conflicting stored value cannot exist.
    """

    device_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    start_latitude: float | None = None
    start_longitude: float | None = None
    end_latitude: float | None = None
    end_longitude: float | None = None
    distance_km: float = Field(default=0.0, ge=0.0)
    max_speed_kmh: float | None = Field(default=None, ge=0.0)
    avg_speed_kmh: float | None = Field(default=None, ge=0.0)
    source: TripSource = TripSource.VENDOR

    @field_validator('start_time', 'end_time')
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode='after')
    def validate_trip(self) -> Self:
        if self.end_time <= self.start_time:
            raise ValueError(
                f'trip end_time {self.end_time.isoformat()} must be after '
                f'start_time {self.start_time.isoformat()}'
            )
        _validate_pair(self.start_latitude, self.start_longitude, 'trip start')
        _validate_pair(self.end_latitude, self.end_longitude, 'trip end')
        return self

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def duration_seconds(self) -> int:
        return int(self.duration.total_seconds())

    @property
    def has_start_coordinates(self) -> bool:
        return self.start_latitude is not None

    @property
    def has_end_coordinates(self) -> bool:
        return self.end_latitude is not None


# =============================================================================
# Event
# =============================================================================


class DeviceEvent(DomainModelBase):
    """A discrete lifecycle occurrence derived from consecutive readings."""

    device_id: str = Field(min_length=1)
    event_type: EventType
    severity: Severity
    occurred_at: datetime
    latitude: float | None = None
    longitude: float | None = None
    message: str = ''
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator('occurred_at')
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode='after')
    def validate_location(self) -> Self:
        _validate_pair(self.latitude, self.longitude, 'event')
        return self
