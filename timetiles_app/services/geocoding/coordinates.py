"""Validation of latitude/longitude pairs read from imported rows."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Literal

ValidationStatus = Literal["valid", "out_of_range", "suspicious_zero", "swapped", "invalid"]

_HEMISPHERE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*°?\s*([NSEWnsew])?\s*$")


@dataclass(frozen=True)
class CoordinateValidation:
    latitude: float | None
    longitude: float | None
    is_valid: bool
    status: ValidationStatus
    confidence: float
    was_swapped: bool = False


def parse_coordinate(value: Any) -> float | None:
    """
    Convert a cell value to a float coordinate.

    Accepts numbers, numeric strings and decimal degrees with a hemisphere
    suffix (``"40.7 N"``, ``"74.0W"``). Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) else number
    if not isinstance(value, str):
        return None
    match = _HEMISPHERE_RE.match(value)
    if match is None:
        return None
    number = float(match.group(1))
    hemisphere = (match.group(2) or "").upper()
    if hemisphere in ("S", "W"):
        number = -abs(number)
    return number


def is_valid_latitude(value: float) -> bool:
    return -90 <= value <= 90


def is_valid_longitude(value: float) -> bool:
    return -180 <= value <= 180


def validate_coordinates(latitude: Any, longitude: Any, *, autofix: bool = True) -> CoordinateValidation:
    lat = parse_coordinate(latitude)
    lon = parse_coordinate(longitude)
    if lat is None or lon is None:
        return CoordinateValidation(None, None, False, "invalid", 0.0)

    if lat == 0 and lon == 0:
        return CoordinateValidation(lat, lon, False, "suspicious_zero", 0.1)

    # A latitude beyond 90 that would be a valid longitude usually means the columns were swapped.
    if 90 < abs(lat) <= 180 and abs(lon) <= 90:
        if autofix:
            return CoordinateValidation(lon, lat, True, "swapped", 0.8, was_swapped=True)
        return CoordinateValidation(lat, lon, False, "swapped", 0.3)

    if not is_valid_latitude(lat) or not is_valid_longitude(lon):
        return CoordinateValidation(lat, lon, False, "out_of_range", 0.0)

    return CoordinateValidation(lat, lon, True, "valid", 1.0)
