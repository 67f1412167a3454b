"""
geotrack: live circle queries over an ordered key-value store.

Locations are stored as sortable geohash keys. A query decomposes its
circle into a small set of hash-key ranges, subscribes to each range on the
store, and reports keys entering, leaving, and moving within the circle.
"""

__version__ = "0.1.0"

from .config import GeoIndexConfig
from .errors import (
    GeoTrackError,
    InvalidCoordinate,
    MalformedRecord,
    SubscriptionFailure,
    DuplicateListener,
    UnknownListener,
)
from .geohash import GeoPoint, Cell, encode, decode, decode_cell
from .ranges import KeyRange, decompose, merge_ranges
from .events import GeoQueryListener
from .executors import Executor, ImmediateExecutor, ThreadExecutor, QueuedExecutor
from .store import Store, MemoryStore
from .duckdb_store import DuckDBStore
from .query import GeoQuery
from .geoindex import GeoIndex

__all__ = [
    "GeoIndexConfig",
    "GeoTrackError",
    "InvalidCoordinate",
    "MalformedRecord",
    "SubscriptionFailure",
    "DuplicateListener",
    "UnknownListener",
    "GeoPoint",
    "Cell",
    "encode",
    "decode",
    "decode_cell",
    "KeyRange",
    "decompose",
    "merge_ranges",
    "GeoQueryListener",
    "Executor",
    "ImmediateExecutor",
    "ThreadExecutor",
    "QueuedExecutor",
    "Store",
    "MemoryStore",
    "DuckDBStore",
    "GeoQuery",
    "GeoIndex",
]
