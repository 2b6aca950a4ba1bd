# fleet_trip_sync/normalizer.py
"""
Telemetry normalization: raw vendor position records to canonical Readings.

Everything in this module is a pure function of its inputs (plus an
explicit `now`), so each extractor can be tested on its own.

Ignition Detection:
-------------------
Ignition is never a single heuristic. Three independent extractors each
produce an `IgnitionSignal` (value, confidence, method) and
`score_ignition` picks the winner by precedence:

1. bit-field: protocol status word. Base ACC bit (bit 0) +0.6, extended ACC
   bit (bit 16) +0.2, speed above 3 km/h +0.2, capped at 1.0. Used when the
   confidence reaches 0.5. A clear "off" (no bit, not moving) scores 0.8.
2. string-pattern: free-text status ("ACC ON", "ACC:OFF", "ACC开", ...).
   Fixed confidence 0.5, below every bit-field result that is used. OFF
   wins when both appear.
3. speed inference: speed above 5 km/h (0.4) and/or the vendor's moving
   flag with speed above 3 km/h (0.3). One signal is `speed-inferred`,
   both together are `multi-signal` capped at 0.7.

With no usable signal the result is ignition=None, confidence 0.0, method
`unknown`; the normalizer never guesses.

Units:
------
- Speed: values above 200 are vendor meters/hour and are divided by 1000.
  Values under the 3 km/h movement floor are GPS jitter and become 0.
- Battery: `voltagepercent` when positive, otherwise a voltage mapped
  through the configured battery profile.
- Signal: `rxlevel` on a 0-31 or 0-99 scale, as a percentage.
"""

import logging
import math
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Final, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fleet_trip_sync.common.geo import is_valid_coordinate
from fleet_trip_sync.common.timeutils import (
    is_plausible_timestamp,
    parse_vendor_timestamp,
    utc_now,
)
from fleet_trip_sync.config import FleetSyncConfig
from fleet_trip_sync.models import (
    DataQuality,
    IgnitionMethod,
    Reading,
    TimestampSource,
    VendorPositionRecord,
)

__all__: list[str] = [
    'BATTERY_PROFILES',
    'BatteryProfile',
    'IgnitionSignal',
    'NormalizationError',
    'NormalizerSettings',
    'bit_field_signal',
    'normalize',
    'normalize_battery',
    'normalize_batch',
    'normalize_signal_strength',
    'normalize_speed',
    'score_ignition',
    'speed_signal',
    'string_pattern_signal',
]

logger: logging.Logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Above this the vendor value is meters/hour, not km/h
METERS_PER_HOUR_THRESHOLD: Final[float] = 200.0
MOVEMENT_FLOOR_KMH: Final[float] = 3.0
MAX_PLAUSIBLE_SPEED_KMH: Final[float] = 300.0

BASE_ACC_MASK: Final[int] = 0x1
EXTENDED_ACC_SHIFT: Final[int] = 16
STATUS_WORD_MASK: Final[int] = 0xFFFFFFFF

BASE_ACC_CONFIDENCE: Final[float] = 0.6
EXTENDED_ACC_CONFIDENCE: Final[float] = 0.2
MOVING_ACC_CONFIDENCE: Final[float] = 0.2
BIT_OFF_CONFIDENCE: Final[float] = 0.8
BIT_FIELD_MIN_CONFIDENCE: Final[float] = 0.5

STRING_PATTERN_CONFIDENCE: Final[float] = 0.5

SPEED_INFERENCE_KMH: Final[float] = 5.0
SPEED_INFERENCE_CONFIDENCE: Final[float] = 0.4
MOVING_FLAG_CONFIDENCE: Final[float] = 0.3
MULTI_SIGNAL_MAX_CONFIDENCE: Final[float] = 0.7

HIGH_QUALITY_MIN_CONFIDENCE: Final[float] = 0.8

RX_LEVEL_SCALE_SMALL: Final[float] = 31.0
RX_LEVEL_SCALE_LARGE: Final[float] = 99.0

_OFF_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r'ACC\s*关'),
    re.compile(r'ACC\s*OFF\b', re.IGNORECASE),
    re.compile(r'ACC:OFF', re.IGNORECASE),
    re.compile(r'ACC_OFF', re.IGNORECASE),
    re.compile(r'\bACC\s*=\s*OFF\b', re.IGNORECASE),
)
_ON_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r'ACC\s*开'),
    re.compile(r'ACC\s*ON\b', re.IGNORECASE),
    re.compile(r'ACC:ON', re.IGNORECASE),
    re.compile(r'ACC_ON', re.IGNORECASE),
    re.compile(r'\bACC\s*=\s*ON\b', re.IGNORECASE),
)


class NormalizationError(ValueError):
    """Raised when a raw record cannot become a Reading (no device id or time)."""


# =============================================================================
# Settings
# =============================================================================

BatteryProfileName = Literal['12v-lead-acid', '24v-lead-acid', '48v-lithium']


class BatteryProfile(BaseModel):
    """
    Voltage window of one battery type.

    Lead-acid discharge is non-linear, so the normalized position inside
    the window is raised to `curve_exponent`; lithium is close to linear.
    """

    model_config = ConfigDict(frozen=True)

    min_voltage: float
    max_voltage: float
    curve_exponent: float = 1.0

    def to_percent(self, voltage: float) -> float:
        if voltage >= self.max_voltage:
            return 100.0
        if voltage <= self.min_voltage:
            return 0.0
        position: float = (voltage - self.min_voltage) / (self.max_voltage - self.min_voltage)
        return float(round(100.0 * position**self.curve_exponent))


BATTERY_PROFILES: Final[dict[BatteryProfileName, BatteryProfile]] = {
    '12v-lead-acid': BatteryProfile(min_voltage=11.0, max_voltage=12.8, curve_exponent=1.5),
    '24v-lead-acid': BatteryProfile(min_voltage=22.0, max_voltage=25.6, curve_exponent=1.5),
    '48v-lithium': BatteryProfile(min_voltage=40.0, max_voltage=54.4),
}


class NormalizerSettings(BaseModel):
    """
    Knobs of the normalizer.

    Attributes:
        vendor_utc_offset_hours: Offset of vendor time strings without one.
        offline_after_minutes: A reading older than this (relative to `now`)
            marks the device offline.
        battery_profile: Voltage-to-percent mapping when no percentage is sent.
    """

    model_config = ConfigDict(frozen=True)

    vendor_utc_offset_hours: int = 8
    offline_after_minutes: float = Field(default=10.0, gt=0.0)
    battery_profile: BatteryProfileName = '12v-lead-acid'

    @classmethod
    def from_config(cls, config: FleetSyncConfig) -> Self:
        return cls(
            vendor_utc_offset_hours=config.vendor.vendor_utc_offset_hours,
            offline_after_minutes=config.events.offline_after_minutes,
        )


DEFAULT_SETTINGS: Final[NormalizerSettings] = NormalizerSettings()


# =============================================================================
# Speed / Battery / Signal
# =============================================================================


def normalize_speed(raw_speed: float | None) -> float:
    """
    Convert a vendor speed to km/h.

    Example:
        >>> normalize_speed(45000)   # m/h
        45.0
        >>> normalize_speed(2.4)     # jitter
        0.0
    """
    if raw_speed is None or math.isnan(raw_speed) or raw_speed <= 0:
        return 0.0

    speed_kmh: float = (
        raw_speed / 1000.0 if raw_speed > METERS_PER_HOUR_THRESHOLD else raw_speed
    )
    if speed_kmh < MOVEMENT_FLOOR_KMH:
        return 0.0
    return round(min(speed_kmh, MAX_PLAUSIBLE_SPEED_KMH), 1)


def normalize_battery(
    record: VendorPositionRecord,
    profile: BatteryProfile = BATTERY_PROFILES['12v-lead-acid'],
) -> float | None:
    """Battery percentage from `voltagepercent`, else from voltage via `profile`."""
    if record.voltage_percent is not None and record.voltage_percent > 0:
        return float(max(0.0, min(100.0, round(record.voltage_percent))))

    for voltage in (record.voltage, record.external_voltage):
        if voltage is not None and voltage > 0:
            return profile.to_percent(voltage)
    return None


def normalize_signal_strength(rx_level: float | None) -> float | None:
    if rx_level is None or math.isnan(rx_level):
        return None
    level: float = max(0.0, rx_level)
    if level <= RX_LEVEL_SCALE_SMALL:
        return float(round(level / RX_LEVEL_SCALE_SMALL * 100.0))
    if level <= RX_LEVEL_SCALE_LARGE:
        return float(round(level / RX_LEVEL_SCALE_LARGE * 100.0))
    return float(min(100.0, round(level)))


# =============================================================================
# Ignition
# =============================================================================


class IgnitionSignal(BaseModel):
    """Outcome of one ignition extractor."""

    model_config = ConfigDict(frozen=True)

    ignition: bool | None
    confidence: float = Field(ge=0.0, le=1.0)
    method: IgnitionMethod


UNKNOWN_IGNITION: Final[IgnitionSignal] = IgnitionSignal(
    ignition=None, confidence=0.0, method=IgnitionMethod.UNKNOWN
)


def bit_field_signal(status: int | None, speed_kmh: float) -> IgnitionSignal | None:
    """
    Read ACC from the 32-bit protocol status word.

    The lower 16 bits are the standard status word (bit 0 = ACC); the upper
    16 bits carry the vendor's extended status (bit 0 = extended ACC).

    Returns:
        The signal, possibly below the 0.5 usable threshold when the bits
        and speed disagree; None when there is no status word.
    """
    if status is None or status < 0:
        return None

    word: int = status & STATUS_WORD_MASK
    base_on: bool = bool(word & BASE_ACC_MASK)
    extended_on: bool = bool((word >> EXTENDED_ACC_SHIFT) & BASE_ACC_MASK)
    moving: bool = speed_kmh > MOVEMENT_FLOOR_KMH

    if base_on:
        confidence: float = BASE_ACC_CONFIDENCE
        if extended_on:
            confidence += EXTENDED_ACC_CONFIDENCE
        if moving:
            confidence += MOVING_ACC_CONFIDENCE
        return IgnitionSignal(
            ignition=True,
            confidence=round(min(confidence, 1.0), 2),
            method=IgnitionMethod.BIT_FIELD,
        )

    if not extended_on and not moving:
        return IgnitionSignal(
            ignition=False, confidence=BIT_OFF_CONFIDENCE, method=IgnitionMethod.BIT_FIELD
        )

    # Base bit off but other evidence says on; too weak to trust either way
    conflicting: float = (EXTENDED_ACC_CONFIDENCE if extended_on else 0.0) + (
        MOVING_ACC_CONFIDENCE if moving else 0.0
    )
    logger.debug(
        'Conflicting ACC bits: status=%#x speed=%.1f confidence=%.2f',
        word,
        speed_kmh,
        conflicting,
    )
    return IgnitionSignal(
        ignition=False, confidence=round(conflicting, 2), method=IgnitionMethod.BIT_FIELD
    )


def string_pattern_signal(*texts: str | None) -> IgnitionSignal | None:
    """Match ACC ON/OFF phrases in free-text status strings (OFF wins)."""
    combined: str = ' '.join(text for text in texts if text)
    if not combined:
        return None

    if any(pattern.search(combined) for pattern in _OFF_PATTERNS):
        ignition: bool = False
    elif any(pattern.search(combined) for pattern in _ON_PATTERNS):
        ignition = True
    else:
        return None

    return IgnitionSignal(
        ignition=ignition,
        confidence=STRING_PATTERN_CONFIDENCE,
        method=IgnitionMethod.STRING_PATTERN,
    )


def speed_signal(speed_kmh: float, moving_flag: int | None) -> IgnitionSignal | None:
    """Infer ignition-on from movement; never infers off."""
    confidence: float = 0.0
    signal_count: int = 0

    if speed_kmh > SPEED_INFERENCE_KMH:
        confidence += SPEED_INFERENCE_CONFIDENCE
        signal_count += 1
    if moving_flag == 1 and speed_kmh > MOVEMENT_FLOOR_KMH:
        confidence += MOVING_FLAG_CONFIDENCE
        signal_count += 1

    if signal_count == 0:
        return None
    if signal_count == 1:
        return IgnitionSignal(
            ignition=True, confidence=confidence, method=IgnitionMethod.SPEED_INFERRED
        )
    return IgnitionSignal(
        ignition=True,
        confidence=min(round(confidence, 2), MULTI_SIGNAL_MAX_CONFIDENCE),
        method=IgnitionMethod.MULTI_SIGNAL,
    )


def score_ignition(
    bit_field: IgnitionSignal | None,
    string_pattern: IgnitionSignal | None,
    speed: IgnitionSignal | None,
) -> IgnitionSignal:
    """
    Combine extractor outputs into the final ignition value.

    Precedence is bit-field (when at least 0.5), then string-pattern, then
    speed inference; nothing usable yields `UNKNOWN_IGNITION`.
    """
    if bit_field is not None and bit_field.confidence >= BIT_FIELD_MIN_CONFIDENCE:
        return bit_field
    if string_pattern is not None:
        return string_pattern
    if speed is not None:
        return speed
    return UNKNOWN_IGNITION


# =============================================================================
# Coordinates / Timestamp / Quality
# =============================================================================


def _extract_coordinates(record: VendorPositionRecord) -> tuple[float | None, float | None]:
    if is_valid_coordinate(record.latitude, record.longitude):
        return record.latitude, record.longitude
    return None, None


def _extract_timestamp(
    record: VendorPositionRecord,
    now: datetime,
    offset_hours: int,
) -> tuple[datetime, TimestampSource]:
    candidates: list[tuple[Any, TimestampSource]] = [
        (record.gps_time, TimestampSource.GPS),
        (record.device_time, TimestampSource.GPS),
        (record.update_time, TimestampSource.SERVER),
        (record.server_time, TimestampSource.SERVER),
    ]

    for raw_value, source in candidates:
        parsed: datetime | None = parse_vendor_timestamp(raw_value, offset_hours)
        if parsed is None:
            continue
        if is_plausible_timestamp(parsed, now):
            return parsed, source
        logger.debug(
            'Discarding implausible %s timestamp %r for device %s',
            source.value,
            raw_value,
            record.device_id,
        )

    raise NormalizationError(
        f'No plausible timestamp for device {record.device_id!r}'
    )


def _classify_quality(
    timestamp_source: TimestampSource,
    has_position: bool,
    ignition: IgnitionSignal,
) -> DataQuality:
    if not has_position or ignition.method is IgnitionMethod.UNKNOWN:
        return DataQuality.LOW
    if (
        timestamp_source is TimestampSource.GPS
        and ignition.confidence >= HIGH_QUALITY_MIN_CONFIDENCE
    ):
        return DataQuality.HIGH
    return DataQuality.MEDIUM


# =============================================================================
# Entry Points
# =============================================================================


def normalize(
    raw: Mapping[str, Any] | VendorPositionRecord,
    *,
    now: datetime | None = None,
    settings: NormalizerSettings = DEFAULT_SETTINGS,
) -> Reading:
    """
    Normalize one raw vendor position into a Reading.

    Args:
        raw: Vendor row (dict with vendor field names) or a parsed record.
        now: Reference time for plausibility and online checks.
        settings: Normalizer settings.

    Returns:
        The canonical Reading.

    Raises:
        NormalizationError: Missing device id, no plausible timestamp, or
            a row that does not validate at all.
    """
    if isinstance(raw, VendorPositionRecord):
        record: VendorPositionRecord = raw
    else:
        try:
            record = VendorPositionRecord.model_validate(dict(raw))
        except ValidationError as error:
            raise NormalizationError(f'Malformed position record: {error}') from error

    if not record.device_id:
        raise NormalizationError('Position record has no device id')

    reference: datetime = now if now is not None else utc_now()

    recorded_at: datetime
    timestamp_source: TimestampSource
    recorded_at, timestamp_source = _extract_timestamp(
        record, reference, settings.vendor_utc_offset_hours
    )

    latitude: float | None
    longitude: float | None
    latitude, longitude = _extract_coordinates(record)

    speed_kmh: float = normalize_speed(record.speed)
    ignition: IgnitionSignal = score_ignition(
        bit_field_signal(record.status, speed_kmh),
        string_pattern_signal(record.status_text, record.status_text_en),
        speed_signal(speed_kmh, record.moving),
    )

    heading: float | None = (
        record.heading % 360.0
        if record.heading is not None and math.isfinite(record.heading)
        else None
    )
    is_online: bool = reference - recorded_at < timedelta(
        minutes=settings.offline_after_minutes
    )

    return Reading(
        device_id=record.device_id,
        recorded_at=recorded_at,
        latitude=latitude,
        longitude=longitude,
        speed_kmh=speed_kmh,
        heading=heading,
        ignition=ignition.ignition,
        ignition_confidence=ignition.confidence,
        ignition_method=ignition.method,
        battery_percent=normalize_battery(record, BATTERY_PROFILES[settings.battery_profile]),
        signal_percent=normalize_signal_strength(record.rx_level),
        is_online=is_online,
        timestamp_source=timestamp_source,
        data_quality=_classify_quality(timestamp_source, latitude is not None, ignition),
    )


def normalize_batch(
    records: Iterable[Mapping[str, Any] | VendorPositionRecord],
    *,
    now: datetime | None = None,
    settings: NormalizerSettings = DEFAULT_SETTINGS,
) -> list[Reading]:
    """Normalize many records, logging and skipping the ones that fail."""
    reference: datetime = now if now is not None else utc_now()
    readings: list[Reading] = []
    skipped: int = 0

    for record in records:
        try:
            readings.append(normalize(record, now=reference, settings=settings))
        except NormalizationError as error:
            skipped += 1
            logger.warning('Skipping position record: %s', error)

    if skipped:
        logger.info('Normalized %d records, skipped %d', len(readings), skipped)
    return readings
