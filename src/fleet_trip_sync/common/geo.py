# fleet_trip_sync/common/geo.py
"""Coordinate validation and great-circle distance helpers."""

import math
from typing import Final

__all__: list[str] = [
    'EARTH_RADIUS_METERS',
    'haversine_meters',
    'is_valid_coordinate',
]

EARTH_RADIUS_METERS: Final[float] = 6_371_000.0


def is_valid_coordinate(latitude: float | None, longitude: float | None) -> bool:
    """
    Check that a coordinate pair is usable.

    Rejects missing values, NaN, out-of-range values and the (0, 0) pair
    that devices report when they have no fix.
    """
    if latitude is None or longitude is None:
        return False
    if math.isnan(latitude) or math.isnan(longitude):
        return False
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return False
    return not (latitude == 0.0 and longitude == 0.0)


def haversine_meters(
    latitude_1: float,
    longitude_1: float,
    latitude_2: float,
    longitude_2: float,
) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    phi_1: float = math.radians(latitude_1)
    phi_2: float = math.radians(latitude_2)
    delta_phi: float = math.radians(latitude_2 - latitude_1)
    delta_lambda: float = math.radians(longitude_2 - longitude_1)

    half_chord: float = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi_1) * math.cos(phi_2) * math.sin(delta_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(half_chord)))
