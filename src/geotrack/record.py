"""
Stored record layout.

A location record is a mapping with a sortable hash field and a two-element
[latitude, longitude] list:

    {"g": "s00twy01mt", "l": [1.2345, 0.5678]}

Other fields are preserved untouched; the store treats the record as an
opaque mapping and only orders by the hash field.
"""

import math
from numbers import Real
from typing import Any, Dict, Mapping, Optional

from .config import DEFAULT_CONFIG, GeoIndexConfig
from .errors import MalformedRecord
from .geohash import GeoPoint, encode
from .geoutils import coordinates_valid


def location_fields(point: GeoPoint, config: GeoIndexConfig = DEFAULT_CONFIG) -> Dict[str, Any]:
    """
    Build the fields that store a location.

    Args:
        point: Location to store
        config: Record layout

    Returns:
        Mapping with the hash and location fields set
    """
    return {
        config.hash_field: encode(point, length=config.hash_length),
        config.location_field: [point.latitude, point.longitude],
    }


def parse_location(
    key: str,
    record: Optional[Mapping[str, Any]],
    config: GeoIndexConfig = DEFAULT_CONFIG,
) -> GeoPoint:
    """
    Extract the location from a stored record.

    Args:
        key: Record key, used in error messages
        record: Stored fields
        config: Record layout

    Returns:
        The stored location

    Raises:
        MalformedRecord: If the hash or location field is missing, or the
            location is not a pair of in-range numbers
    """
    if record is None:
        raise MalformedRecord(key, "record is empty")
    if not isinstance(record.get(config.hash_field), str):
        raise MalformedRecord(key, f"missing field {config.hash_field!r}")

    location = record.get(config.location_field)
    if location is None:
        raise MalformedRecord(key, f"missing field {config.location_field!r}")
    if isinstance(location, (str, bytes)) or not hasattr(location, "__len__"):
        raise MalformedRecord(key, f"field {config.location_field!r} is not a list")
    if len(location) != 2:
        raise MalformedRecord(key, f"expected 2 coordinates, got {len(location)}")

    latitude, longitude = location
    for value in (latitude, longitude):
        # bool is a Real subclass but never a coordinate
        if isinstance(value, bool) or not isinstance(value, Real):
            raise MalformedRecord(key, f"coordinate {value!r} is not a number")

    latitude, longitude = float(latitude), float(longitude)
    if not (
        math.isfinite(latitude)
        and math.isfinite(longitude)
        and coordinates_valid(latitude, longitude)
    ):
        raise MalformedRecord(key, f"coordinates out of range: ({latitude}, {longitude})")

    return GeoPoint(latitude, longitude)
