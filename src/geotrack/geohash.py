"""
Coordinate codec: (lat, lon) <-> sortable base-32 hash keys.

Each axis is quantized by repeatedly halving its valid range. The resulting
bits are interleaved longitude first, most significant bit first, and packed
five at a time into symbols of the geohash alphabet. Because the alphabet is
in ascending ASCII order, lexicographic order of keys equals numeric order
of the interleaved bit strings.

Nearby points usually share a long prefix, but this is only a locality
proxy: points on either side of the antimeridian or near a pole can hash far
apart while being geometrically close.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import InvalidCoordinate
from .geoutils import coordinates_valid, distance

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
BITS_PER_CHAR = 5

# Default key length: 10 symbols = 50 bits, cells of roughly 1.2m x 0.6m
KEY_LENGTH = 10
KEY_BITS = KEY_LENGTH * BITS_PER_CHAR

# Longest key we accept; beyond this double precision runs out
MAX_KEY_LENGTH = 22

_BASE32_VALUES = {c: i for i, c in enumerate(BASE32)}


@dataclass(frozen=True)
class GeoPoint:
    """An immutable WGS84 location in degrees."""

    latitude: float
    longitude: float

    def __post_init__(self):
        if not (
            math.isfinite(self.latitude)
            and math.isfinite(self.longitude)
            and coordinates_valid(self.latitude, self.longitude)
        ):
            raise InvalidCoordinate(self.latitude, self.longitude)

    def as_tuple(self) -> Tuple[float, float]:
        return self.latitude, self.longitude

    def distance_to(self, other: "GeoPoint") -> float:
        """Great-circle distance to another point, in meters."""
        return distance(self.as_tuple(), other.as_tuple())


@dataclass(frozen=True)
class Cell:
    """
    The latitude/longitude box identified by a hash prefix.

    Bounds are inclusive, matching the way encode() assigns a value equal to
    a subdivision midpoint to the upper half.
    """

    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float

    def contains(self, point: GeoPoint) -> bool:
        return (
            self.lat_min <= point.latitude <= self.lat_max
            and self.lon_min <= point.longitude <= self.lon_max
        )

    @property
    def center(self) -> GeoPoint:
        return GeoPoint(
            (self.lat_min + self.lat_max) / 2,
            (self.lon_min + self.lon_max) / 2,
        )


def _check_length(length: int) -> None:
    if not 1 <= length <= MAX_KEY_LENGTH:
        raise ValueError(f"hash length must be in [1, {MAX_KEY_LENGTH}], got {length}")


def interleave(point: GeoPoint, bits: int) -> int:
    """
    Quantize a point into an integer of `bits` interleaved bits.

    Even bit positions (counting from the most significant) come from
    longitude, odd positions from latitude.

    Args:
        point: Location to quantize
        bits: Number of bits to produce

    Returns:
        Integer whose binary form is the interleaved bit string
    """
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    value = 0

    for i in range(bits):
        if i % 2 == 0:
            rng, coord = lon_range, point.longitude
        else:
            rng, coord = lat_range, point.latitude

        mid = (rng[0] + rng[1]) / 2
        value <<= 1
        if coord >= mid:
            value |= 1
            rng[0] = mid
        else:
            rng[1] = mid

    return value


def int_to_hash(value: int, length: int) -> str:
    """Pack the low `length * 5` bits of `value` into base-32 symbols."""
    chars = []
    for _ in range(length):
        chars.append(BASE32[value & 0x1F])
        value >>= BITS_PER_CHAR
    return "".join(reversed(chars))


def hash_to_int(hash_key: str) -> int:
    """
    Unpack a hash string into its bit integer.

    Raises:
        ValueError: If the hash contains a symbol outside the alphabet
    """
    value = 0
    for c in hash_key:
        try:
            digit = _BASE32_VALUES[c]
        except KeyError:
            raise ValueError(f"Invalid geohash symbol {c!r} in {hash_key!r}") from None
        value = (value << BITS_PER_CHAR) | digit
    return value


def encode(point: GeoPoint, precision_bits: int = KEY_BITS, length: int = KEY_LENGTH) -> str:
    """
    Encode a point into a fixed-length sortable hash key.

    Args:
        point: Location to encode
        precision_bits: Number of significant interleaved bits
        length: Number of symbols in the output key; bits beyond
            precision_bits are zero, bits beyond length * 5 are dropped

    Returns:
        Hash key of exactly `length` symbols

    Raises:
        InvalidCoordinate: If the point lies outside WGS84 bounds
    """
    _check_length(length)
    if precision_bits < 0:
        raise ValueError("precision_bits must be non-negative")
    if not coordinates_valid(point.latitude, point.longitude):
        raise InvalidCoordinate(point.latitude, point.longitude)

    total_bits = length * BITS_PER_CHAR
    bits = min(precision_bits, total_bits)
    value = interleave(point, bits) << (total_bits - bits)
    return int_to_hash(value, length)


def decode_cell(hash_key: str, bits: Optional[int] = None) -> Cell:
    """
    Return the box of locations that encode to `hash_key`.

    Args:
        hash_key: Hash string
        bits: Number of leading bits to honor (default: all of them)

    Returns:
        Cell bounds
    """
    total_bits = len(hash_key) * BITS_PER_CHAR
    if bits is None:
        bits = total_bits
    bits = min(bits, total_bits)
    value = hash_to_int(hash_key) >> (total_bits - bits)

    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    for i in range(bits):
        bit = (value >> (bits - 1 - i)) & 1
        rng = lon_range if i % 2 == 0 else lat_range
        mid = (rng[0] + rng[1]) / 2
        if bit:
            rng[0] = mid
        else:
            rng[1] = mid

    return Cell(lat_range[0], lat_range[1], lon_range[0], lon_range[1])


def decode(hash_key: str) -> GeoPoint:
    """Return the center of the cell identified by `hash_key`."""
    return decode_cell(hash_key).center


def cell_size_degrees(bits: int) -> Tuple[float, float]:
    """
    Size of a cell with `bits` interleaved bits.

    Returns:
        Tuple of (latitude_degrees, longitude_degrees)
    """
    lon_bits = (bits + 1) // 2
    lat_bits = bits // 2
    return 180.0 / (1 << lat_bits), 360.0 / (1 << lon_bits)
