# fleet_trip_sync/models/vendor_models.py
"""
Pydantic models for raw vendor API payloads.

The vendor is an action-based JSON API: every response carries a numeric
`status` (0 = success) and optional `cause`, plus action-specific lists
(`records`, sometimes `totaltrips`). Field names drift between firmware
and API versions, so each model accepts every spelling seen in the wild
through `AliasChoices` and normalizes blank strings to None.

Design Notes:
    - Response models use extra='ignore' (envelope uses extra='allow') to
      survive vendor additions.
    - Numbers frequently arrive as strings; `_coerce_number` accepts both.
    - Trip times are parsed in the vendor's fixed offset. Pass it through
      validation context: `VendorTripRecord.model_validate(raw,
      context={'utc_offset_hours': 8})`. GMT+8 is assumed when absent.
    - Position records are left raw on purpose; interpretation belongs to
      the normalizer.
"""

import logging
from datetime import datetime
from typing import Any, Final, cast

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from fleet_trip_sync.common.timeutils import parse_vendor_timestamp

__all__: list[str] = [
    'VendorModelBase',
    'VendorPositionRecord',
    'VendorResponse',
    'VendorTripRecord',
]

logger: logging.Logger = logging.getLogger(__name__)

VENDOR_SUCCESS_STATUS: Final[int] = 0
DEFAULT_VENDOR_OFFSET_HOURS: Final[int] = 8

# Vendor reports trip speeds in meters per hour
METERS_PER_KILOMETER: Final[float] = 1000.0


def _coerce_number(value: Any) -> float | None:
    """Turn vendor numeric fields (numbers, numeric strings, blanks) into floats."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        text: str = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _offset_from_context(info: ValidationInfo) -> int:
    context: Any = info.context
    if isinstance(context, dict):
        offset: Any = cast(dict[str, Any], context).get('utc_offset_hours')
        if isinstance(offset, int):
            return offset
    return DEFAULT_VENDOR_OFFSET_HOURS


class VendorModelBase(BaseModel):
    """Base configuration for vendor payload models."""

    model_config = ConfigDict(
        extra='ignore',
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# =============================================================================
# Response Envelope
# =============================================================================


class VendorResponse(BaseModel):
    """
    Envelope of every vendor reply.

    Attributes:
        status: 0 on success; non-zero codes are errors or throttling.
        cause: Human-readable error text when status != 0.
        records: Primary result list (trips, positions, tracks).
    """

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    status: int
    cause: str | None = None
    records: list[dict[str, Any]] | None = None

    @property
    def is_success(self) -> bool:
        return self.status == VENDOR_SUCCESS_STATUS

    def result_list(self, *keys: str) -> list[dict[str, Any]]:
        """
        Return the first list found under `records` or any of `keys`.

        Some actions return their rows under alternative keys
        (e.g. `totaltrips`). Non-dict entries are dropped.
        """
        candidates: list[Any] = [self.records]
        extras: dict[str, Any] = self.model_extra or {}
        candidates.extend(extras.get(key) for key in keys)

        for candidate in candidates:
            if isinstance(candidate, list):
                return [
                    cast(dict[str, Any], row)
                    for row in cast(list[Any], candidate)
                    if isinstance(row, dict)
                ]
        return []


# =============================================================================
# Trip Summaries (action=querytrips)
# =============================================================================


class VendorTripRecord(VendorModelBase):
    """
    One vendor-computed trip summary.

    Attributes:
        start_time: Trip start (UTC).
        end_time: Trip end (UTC).
        distance_meters: Driven path length as accumulated by the vendor.
        max_speed_kmh: Maximum speed, converted from vendor m/h.
        avg_speed_kmh: Average speed, converted from vendor m/h.
        start_latitude/start_longitude/end_latitude/end_longitude: Optional
            endpoints; frequently missing or zero.
    """

    start_time: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices('starttime', 'starttime_str', 'start_time'),
    )
    end_time: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices('endtime', 'endtime_str', 'end_time'),
    )
    distance_meters: float | None = Field(
        default=None,
        validation_alias=AliasChoices('distance', 'totaldistance', 'distance_meters'),
    )
    max_speed_kmh: float | None = Field(
        default=None,
        validation_alias=AliasChoices('maxspeed', 'max_speed'),
    )
    avg_speed_kmh: float | None = Field(
        default=None,
        validation_alias=AliasChoices('avgspeed', 'avg_speed'),
    )
    start_latitude: float | None = Field(
        default=None,
        validation_alias=AliasChoices('startlat', 'startlatitude', 'start_latitude'),
    )
    start_longitude: float | None = Field(
        default=None,
        validation_alias=AliasChoices('startlon', 'startlongitude', 'start_longitude'),
    )
    end_latitude: float | None = Field(
        default=None,
        validation_alias=AliasChoices('endlat', 'endlatitude', 'end_latitude'),
    )
    end_longitude: float | None = Field(
        default=None,
        validation_alias=AliasChoices('endlon', 'endlongitude', 'end_longitude'),
    )

    @model_validator(mode='before')
    @classmethod
    def prefer_populated_time_fields(cls, data: Any) -> Any:
        """
        Drop blank time fields so a populated `_str` variant wins.

        `AliasChoices` takes the first key present, even when its value is
        empty; the vendor sends `starttime: 0` next to a real
        `starttime_str`.
        """
        if not isinstance(data, dict):
            return data
        cleaned: dict[str, Any] = dict(cast(dict[str, Any], data))
        for key in ('starttime', 'endtime'):
            if key in cleaned and cleaned[key] in (None, '', 0):
                del cleaned[key]
        return cleaned

    @field_validator('start_time', 'end_time', mode='before')
    @classmethod
    def parse_vendor_time(cls, value: Any, info: ValidationInfo) -> datetime | None:
        return parse_vendor_timestamp(value, _offset_from_context(info))

    @field_validator(
        'distance_meters',
        'start_latitude',
        'start_longitude',
        'end_latitude',
        'end_longitude',
        mode='before',
    )
    @classmethod
    def coerce_numbers(cls, value: Any) -> float | None:
        return _coerce_number(value)

    @field_validator('max_speed_kmh', 'avg_speed_kmh', mode='before')
    @classmethod
    def convert_meters_per_hour(cls, value: Any) -> float | None:
        """Vendor trip speeds are m/h; store km/h rounded to one decimal."""
        number: float | None = _coerce_number(value)
        if number is None or number < 0:
            return None
        return round(number / METERS_PER_KILOMETER, 1)


# =============================================================================
# Positions (action=lastposition / querytrack)
# =============================================================================


class VendorPositionRecord(VendorModelBase):
    """
    One raw position sample as delivered by the vendor.

    Fields keep vendor semantics (speed unit unknown until normalized,
    status as a packed bit field, several competing timestamps).
    """

    device_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices('deviceid', 'device_id'),
    )
    latitude: float | None = Field(
        default=None,
        validation_alias=AliasChoices('callat', 'lat', 'latitude'),
    )
    longitude: float | None = Field(
        default=None,
        validation_alias=AliasChoices('callon', 'lon', 'lng', 'longitude'),
    )
    speed: float | None = None
    heading: float | None = Field(
        default=None,
        validation_alias=AliasChoices('course', 'heading', 'direction'),
    )
    altitude: float | None = None
    status: int | None = None
    status_text: str | None = Field(
        default=None,
        validation_alias=AliasChoices('strstatus', 'status_text'),
    )
    status_text_en: str | None = Field(
        default=None,
        validation_alias=AliasChoices('strstatusen', 'status_text_en'),
    )
    moving: int | None = None
    gps_time: Any = Field(
        default=None,
        validation_alias=AliasChoices('gpstime', 'gps_time'),
    )
    device_time: Any = Field(
        default=None,
        validation_alias=AliasChoices('devicetime', 'device_time'),
    )
    update_time: Any = Field(
        default=None,
        validation_alias=AliasChoices('updatetime', 'update_time'),
    )
    server_time: Any = Field(
        default=None,
        validation_alias=AliasChoices('time', 'server_time'),
    )
    voltage_percent: float | None = Field(
        default=None,
        validation_alias=AliasChoices('voltagepercent', 'voltage_percent'),
    )
    voltage: float | None = Field(
        default=None,
        validation_alias=AliasChoices('voltagev', 'voltage'),
    )
    external_voltage: float | None = Field(
        default=None,
        validation_alias=AliasChoices('exvoltage', 'external_voltage'),
    )
    rx_level: float | None = Field(
        default=None,
        validation_alias=AliasChoices('rxlevel', 'rx_level'),
    )

    @field_validator('device_id', mode='before')
    @classmethod
    def stringify_device_id(cls, value: Any) -> str | None:
        if value is None:
            return None
        text: str = str(value).strip()
        return text or None

    @field_validator(
        'latitude',
        'longitude',
        'speed',
        'heading',
        'altitude',
        'voltage_percent',
        'voltage',
        'external_voltage',
        'rx_level',
        mode='before',
    )
    @classmethod
    def coerce_numbers(cls, value: Any) -> float | None:
        return _coerce_number(value)

    @field_validator('status', 'moving', mode='before')
    @classmethod
    def coerce_integers(cls, value: Any) -> int | None:
        number: float | None = _coerce_number(value)
        return None if number is None else int(number)

    @field_validator('status_text', 'status_text_en', mode='before')
    @classmethod
    def blank_text_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text: str = str(value).strip()
        return text or None
