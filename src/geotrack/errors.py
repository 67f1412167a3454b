"""
Exception types raised by geotrack.

Caller mistakes (bad coordinates, listener registration misuse) are raised
synchronously. Record- and range-scoped failures are contained by the query
and reported to listeners as error events instead.
"""


class GeoTrackError(Exception):
    """Base class for all geotrack errors."""


class InvalidCoordinate(GeoTrackError, ValueError):
    """Latitude or longitude outside the valid WGS84 range."""

    def __init__(self, latitude: float, longitude: float):
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(
            f"Invalid coordinates: latitude={latitude}, longitude={longitude}"
        )


class MalformedRecord(GeoTrackError, ValueError):
    """A stored record does not follow the {hash, [lat, lon]} contract."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Malformed record for key {key!r}: {reason}")


class SubscriptionFailure(GeoTrackError):
    """The initial fetch or the live stream of one key range failed."""

    def __init__(self, start: str, end: str, cause: Exception):
        self.start = start
        self.end = end
        self.cause = cause
        super().__init__(f"Subscription for range [{start}, {end}) failed: {cause}")


class DuplicateListener(GeoTrackError, ValueError):
    """The same listener was added twice to a query."""


class UnknownListener(GeoTrackError, ValueError):
    """A listener was removed that was never added or already removed."""
