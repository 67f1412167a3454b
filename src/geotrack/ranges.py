"""
Range decomposition: turn a circle into a canonical set of hash-key ranges.

The store can only answer "all keys whose hash lies in [start, end)". To
watch a circle we pick the finest hash precision whose cells are still at
least as large as the radius in both directions. At that precision the
circle's bounding box touches at most three cells per axis, so the cells
under the center and the eight compass points of the bounding box cover it.
Each of those cells becomes one prefix range; overlapping or touching
ranges are then merged into a minimal canonical set.
"""

import math
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List

from .geohash import BITS_PER_CHAR, KEY_LENGTH, GeoPoint, int_to_hash, interleave
from .geoutils import (
    EARTH_MERIDIONAL_CIRCUMFERENCE,
    clamp_latitude,
    latitude_bits_for_resolution,
    longitude_bits_for_resolution,
    meters_to_latitude_degrees,
    meters_to_longitude_degrees,
    wrap_longitude,
)

# Sorts after every base-32 symbol, so [x, END_OF_KEYSPACE) is open-ended
END_OF_KEYSPACE = "~"

# Circles at least this large are watched with a single range over the
# whole key space instead of a neighbor fan-out.
FULL_COVERAGE_RADIUS = EARTH_MERIDIONAL_CIRCUMFERENCE / 2


@dataclass(frozen=True, order=True)
class KeyRange:
    """
    A half-open interval [start, end) of hash keys.

    Ordering is by (start, end), which is the order ranges are merged in.
    """

    start: str
    end: str

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Invalid key range: start={self.start!r}, end={self.end!r}")

    def contains(self, hash_key: str) -> bool:
        """Check if a hash key falls inside this range."""
        return self.start <= hash_key < self.end

    def can_join(self, other: "KeyRange") -> bool:
        """True if the two ranges overlap or touch."""
        return self.start <= other.end and other.start <= self.end

    def join(self, other: "KeyRange") -> "KeyRange":
        if not self.can_join(other):
            raise ValueError(f"Cannot join disjoint ranges {self} and {other}")
        return KeyRange(min(self.start, other.start), max(self.end, other.end))

    def __str__(self) -> str:
        return f"[{self.start}, {self.end})"


def full_range(length: int = KEY_LENGTH) -> KeyRange:
    """The range covering every key of the given length."""
    return KeyRange("0" * length, END_OF_KEYSPACE)


def prefix_range(point: GeoPoint, bits: int, length: int = KEY_LENGTH) -> KeyRange:
    """
    The range of all keys sharing the `bits`-bit prefix of `point`'s hash.

    The start is the prefix padded with zero bits; the end is the prefix's
    successor (prefix + 1, carrying into higher symbols) padded the same way.
    When the successor overflows the key space the end is END_OF_KEYSPACE.

    Args:
        point: Location whose cell to cover
        bits: Prefix length in bits
        length: Key length in symbols

    Returns:
        KeyRange for the cell
    """
    total_bits = length * BITS_PER_CHAR
    bits = max(0, min(bits, total_bits))
    shift = total_bits - bits

    prefix = interleave(point, bits)
    start = int_to_hash(prefix << shift, length)

    successor = (prefix + 1) << shift
    if successor >= 1 << total_bits:
        end = END_OF_KEYSPACE
    else:
        end = int_to_hash(successor, length)

    return KeyRange(start, end)


def merge_ranges(ranges: Iterable[KeyRange]) -> List[KeyRange]:
    """
    Coalesce overlapping or touching ranges.

    Args:
        ranges: Any collection of ranges

    Returns:
        Sorted list of pairwise disjoint, non-adjacent ranges with the same union
    """
    merged: List[KeyRange] = []
    for key_range in sorted(set(ranges)):
        if merged and merged[-1].can_join(key_range):
            merged[-1] = merged[-1].join(key_range)
        else:
            merged.append(key_range)
    return merged


def bits_for_radius(center: GeoPoint, radius: float, length: int = KEY_LENGTH) -> int:
    """
    Finest precision, in bits, whose cells are at least `radius` meters on
    both axes at every latitude the circle reaches.

    With `b` interleaved bits a cell has ceil(b/2) longitude bits and
    floor(b/2) latitude bits.

    Args:
        center: Circle center
        radius: Circle radius in meters (must be positive)
        length: Key length in symbols, caps the result

    Returns:
        Number of bits, possibly 0 (whole world)
    """
    lat_delta = meters_to_latitude_degrees(radius)
    north = clamp_latitude(center.latitude + lat_delta)
    south = clamp_latitude(center.latitude - lat_delta)

    lat_bits = math.floor(latitude_bits_for_resolution(radius))
    lon_bits = min(
        math.floor(longitude_bits_for_resolution(radius, north)),
        math.floor(longitude_bits_for_resolution(radius, south)),
    )

    bits = min(2 * lat_bits + 1, 2 * lon_bits, length * BITS_PER_CHAR)
    return max(0, bits)


def decompose(
    center: GeoPoint,
    radius: float,
    length: int = KEY_LENGTH,
    full_coverage_radius: float = FULL_COVERAGE_RADIUS,
) -> FrozenSet[KeyRange]:
    """
    Compute the canonical set of key ranges covering a circle.

    Args:
        center: Circle center
        radius: Circle radius in meters
        length: Key length in symbols
        full_coverage_radius: Radius at or above which the whole key space
            is returned

    Returns:
        Frozen set of non-overlapping, non-adjacent KeyRanges. Empty for a
        non-positive radius.
    """
    if radius <= 0:
        return frozenset()
    if radius >= full_coverage_radius:
        return frozenset([full_range(length)])

    bits = bits_for_radius(center, radius, length)
    if bits == 0:
        return frozenset([full_range(length)])

    lat_delta = meters_to_latitude_degrees(radius)
    north = clamp_latitude(center.latitude + lat_delta)
    south = clamp_latitude(center.latitude - lat_delta)
    lon_delta = max(
        meters_to_longitude_degrees(radius, north),
        meters_to_longitude_degrees(radius, south),
    )
    east = wrap_longitude(center.longitude + lon_delta)
    west = wrap_longitude(center.longitude - lon_delta)
    lon = wrap_longitude(center.longitude)

    probes = [
        GeoPoint(lat, lng)
        for lat in (south, center.latitude, north)
        for lng in (west, lon, east)
    ]
    return frozenset(merge_ranges(prefix_range(p, bits, length) for p in probes))
