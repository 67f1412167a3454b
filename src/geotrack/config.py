"""Configuration for geotrack indexes and queries."""

from dataclasses import dataclass

from .geohash import KEY_LENGTH, MAX_KEY_LENGTH
from .ranges import FULL_COVERAGE_RADIUS


@dataclass(frozen=True)
class GeoIndexConfig:
    """Record layout and hashing parameters shared by an index and its queries."""

    hash_field: str = "g"
    """Record field holding the sortable hash key."""

    location_field: str = "l"
    """Record field holding the [latitude, longitude] pair."""

    hash_length: int = KEY_LENGTH
    """Number of base-32 symbols in a stored hash key."""

    full_coverage_radius: float = FULL_COVERAGE_RADIUS
    """Radius in meters at or above which a query watches the whole key space."""

    def __post_init__(self):
        if not self.hash_field:
            raise ValueError("hash_field must be non-empty")
        if not self.location_field:
            raise ValueError("location_field must be non-empty")
        if self.hash_field == self.location_field:
            raise ValueError("hash_field and location_field must differ")
        if not 1 <= self.hash_length <= MAX_KEY_LENGTH:
            raise ValueError(f"hash_length must be in [1, {MAX_KEY_LENGTH}]")
        if self.full_coverage_radius <= 0:
            raise ValueError("full_coverage_radius must be positive")


DEFAULT_CONFIG = GeoIndexConfig()
