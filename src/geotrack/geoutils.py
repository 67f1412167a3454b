"""
Spherical geometry helpers.

Distances use the haversine formula on a sphere whose radius is the mean of
the WGS84 equatorial and polar radii. Conversions between meters and
degrees of longitude use the same sphere, and meters to degrees of latitude
use a slightly short degree, so range decomposition never underestimates
how large a circle is.
"""

import math
from typing import Tuple

# WGS84 parameters
EARTH_EQ_RADIUS = 6378137.0
EARTH_POLAR_RADIUS = 6356752.3
EARTH_MEAN_RADIUS = (EARTH_EQ_RADIUS + EARTH_POLAR_RADIUS) / 2

EARTH_MERIDIONAL_CIRCUMFERENCE = 40007860.0
METERS_PER_DEGREE_LATITUDE = 110574.0

EPSILON = 1e-12


def coordinates_valid(latitude: float, longitude: float) -> bool:
    """Check that a latitude/longitude pair lies within WGS84 bounds."""
    return (
        -90.0 <= latitude <= 90.0
        and -180.0 <= longitude <= 180.0
    )


def clamp_latitude(latitude: float) -> float:
    """Clamp latitude to [-90, 90]."""
    return max(-90.0, min(90.0, latitude))


def wrap_longitude(longitude: float) -> float:
    """
    Wrap a longitude into [-180, 180).

    Args:
        longitude: Longitude in degrees, any value

    Returns:
        Equivalent longitude in [-180, 180)
    """
    if -180.0 <= longitude < 180.0:
        return longitude
    return ((longitude + 180.0) % 360.0) - 180.0


def distance(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """
    Great-circle distance between two (lat, lon) pairs, in meters.

    Args:
        a: First point as (latitude, longitude) in degrees
        b: Second point as (latitude, longitude) in degrees

    Returns:
        Distance in meters
    """
    lat1, lon1 = a
    lat2, lon2 = b
    lat_delta = math.radians(lat1 - lat2)
    lon_delta = math.radians(lon1 - lon2)

    h = (
        math.sin(lat_delta / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(lon_delta / 2) ** 2
    )
    return EARTH_MEAN_RADIUS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def meters_to_latitude_degrees(meters: float) -> float:
    """Convert a north-south distance to degrees of latitude."""
    return meters / METERS_PER_DEGREE_LATITUDE


def meters_to_longitude_degrees(meters: float, latitude: float) -> float:
    """
    Convert an east-west distance at a given latitude to degrees of longitude.

    Near the poles a degree of longitude shrinks to nothing; the result is
    capped at 360 degrees (the whole parallel).

    Args:
        meters: Distance in meters
        latitude: Latitude at which the distance is measured

    Returns:
        Degrees of longitude spanned by the distance
    """
    meters_per_degree = math.cos(math.radians(latitude)) * EARTH_MEAN_RADIUS * math.pi / 180
    if meters_per_degree < EPSILON:
        return 360.0 if meters > 0 else meters
    return min(360.0, meters / meters_per_degree)


def latitude_bits_for_resolution(resolution: float) -> float:
    """
    Number of latitude bits whose cell height is still at least `resolution`.

    Returns a fractional value; callers take the floor.
    """
    return math.log2(180.0 * METERS_PER_DEGREE_LATITUDE / resolution)


def longitude_bits_for_resolution(resolution: float, latitude: float) -> float:
    """
    Number of longitude bits whose cell width at `latitude` is still at least
    `resolution`.

    Returns a fractional value; callers take the floor.
    """
    degrees = meters_to_longitude_degrees(resolution, latitude)
    if abs(degrees) > 0:
        return max(0.0, math.log2(360.0 / degrees))
    return 0.0
