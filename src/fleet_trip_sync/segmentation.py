# fleet_trip_sync/segmentation.py
"""
Fallback trip segmentation from stored readings.

Used only when the vendor returns no trip summaries for a window and
segmentation is enabled. The vendor figure stays authoritative whenever it
exists.

Rules:
------
- A reading is active when ignition is known to be on, or, with no usable
  ignition signal, when speed is at least `moving_speed_kmh`.
- A trip starts at the first active reading and ends at the last active
  reading before the device has been inactive for `stop_minutes`.
- A silence longer than `max_gap_minutes` between consecutive readings
  always closes the current trip.
- A trip still open at the last reading is in progress and is not emitted;
  a later run sees it complete.
- Consecutive positions more than `max_jump_km` apart are GPS jumps and do
  not count toward the path distance.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Final, Self, cast

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_sync.common.geo import haversine_meters
from fleet_trip_sync.config import SyncConfig
from fleet_trip_sync.models import IgnitionMethod, Reading, Trip, TripSource

__all__: list[str] = ['SegmentationSettings', 'segment_trips']

logger: logging.Logger = logging.getLogger(__name__)

METERS_PER_KILOMETER: Final[float] = 1000.0
SECONDS_PER_HOUR: Final[float] = 3600.0


class SegmentationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    moving_speed_kmh: float = Field(default=1.0, ge=0.0)
    stop_minutes: float = Field(default=5.0, gt=0.0)
    max_gap_minutes: float = Field(default=30.0, gt=0.0)
    max_jump_km: float = Field(default=10.0, gt=0.0)

    @classmethod
    def from_config(cls, config: SyncConfig) -> Self:
        return cls(
            moving_speed_kmh=config.segment_moving_speed_kmh,
            stop_minutes=config.segment_stop_minutes,
            max_gap_minutes=config.segment_max_gap_minutes,
            max_jump_km=config.segment_max_jump_km,
        )


def _is_active(reading: Reading, settings: SegmentationSettings) -> bool:
    if reading.ignition is not None and reading.ignition_method is not IgnitionMethod.UNKNOWN:
        return reading.ignition
    return reading.speed_kmh >= settings.moving_speed_kmh


def _path_distance_km(readings: Sequence[Reading], max_jump_km: float) -> float:
    total_meters: float = 0.0
    previous: Reading | None = None

    for reading in readings:
        if not reading.has_position:
            continue
        if previous is not None:
            step: float = haversine_meters(
                cast(float, previous.latitude),
                cast(float, previous.longitude),
                cast(float, reading.latitude),
                cast(float, reading.longitude),
            )
            if step <= max_jump_km * METERS_PER_KILOMETER:
                total_meters += step
            else:
                logger.debug(
                    'Ignoring %.1f km GPS jump for device %s at %s',
                    step / METERS_PER_KILOMETER,
                    reading.device_id,
                    reading.recorded_at.isoformat(),
                )
        previous = reading

    return total_meters / METERS_PER_KILOMETER


def _build_trip(segment: Sequence[Reading], settings: SegmentationSettings) -> Trip | None:
    start_time: datetime = segment[0].recorded_at
    end_time: datetime = segment[-1].recorded_at
    if end_time <= start_time:
        return None

    positioned: list[Reading] = [reading for reading in segment if reading.has_position]
    first_fix: Reading | None = positioned[0] if positioned else None
    last_fix: Reading | None = positioned[-1] if positioned else None

    distance_km: float = round(_path_distance_km(segment, settings.max_jump_km), 3)
    hours: float = (end_time - start_time).total_seconds() / SECONDS_PER_HOUR

    return Trip(
        device_id=segment[0].device_id,
        start_time=start_time,
        end_time=end_time,
        start_latitude=first_fix.latitude if first_fix else None,
        start_longitude=first_fix.longitude if first_fix else None,
        end_latitude=last_fix.latitude if last_fix else None,
        end_longitude=last_fix.longitude if last_fix else None,
        distance_km=distance_km,
        max_speed_kmh=max(reading.speed_kmh for reading in segment),
        avg_speed_kmh=round(distance_km / hours, 1) if hours > 0 else None,
        source=TripSource.SEGMENTED,
    )


def segment_trips(
    readings: Sequence[Reading],
    settings: SegmentationSettings | None = None,
) -> list[Trip]:
    """
    Derive trips from one device's readings.

    Args:
        readings: Readings of a single device, any order.
        settings: Thresholds; defaults when omitted.

    Returns:
        Trips in chronological order, tagged `segmented`. Segments with a
        single active reading are dropped since they have no duration.
    """
    settings = settings or SegmentationSettings()
    ordered: list[Reading] = sorted(readings, key=lambda reading: reading.recorded_at)

    stop_after: timedelta = timedelta(minutes=settings.stop_minutes)
    max_gap: timedelta = timedelta(minutes=settings.max_gap_minutes)

    trips: list[Trip] = []
    segment: list[Reading] = []
    last_active_at: datetime | None = None
    previous_at: datetime | None = None

    def close_segment() -> None:
        nonlocal segment, last_active_at
        # Trailing inactive samples belong to the stop, not the trip
        while segment and not _is_active(segment[-1], settings):
            segment.pop()
        if len(segment) >= 2:
            trip: Trip | None = _build_trip(segment, settings)
            if trip is not None:
                trips.append(trip)
        segment = []
        last_active_at = None

    for reading in ordered:
        if previous_at is not None and segment and reading.recorded_at - previous_at > max_gap:
            close_segment()
        previous_at = reading.recorded_at

        if _is_active(reading, settings):
            segment.append(reading)
            last_active_at = reading.recorded_at
        elif segment:
            if last_active_at is not None and reading.recorded_at - last_active_at >= stop_after:
                close_segment()
            else:
                segment.append(reading)

    if segment:
        logger.debug(
            'Device %s has a trip in progress since %s; not emitted yet',
            segment[0].device_id,
            segment[0].recorded_at.isoformat(),
        )

    if trips:
        logger.debug(
            'Segmented %d trips from %d readings for device %s',
            len(trips),
            len(ordered),
            ordered[0].device_id,
        )
    return trips
