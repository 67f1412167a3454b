"""
GeoIndex: store and query key locations.

The index writes each location as a sortable hash plus a [lat, lon] pair on
the key's record, and creates GeoQuery objects that watch circles over the
same store.
"""

import logging
from typing import Optional

from .config import DEFAULT_CONFIG, GeoIndexConfig
from .executors import Executor, ImmediateExecutor
from .geohash import GeoPoint
from .query import GeoQuery
from .record import location_fields, parse_location
from .store import Store


class GeoIndex:
    """Location index over an ordered store."""

    def __init__(
        self,
        store: Store,
        config: GeoIndexConfig = DEFAULT_CONFIG,
        executor: Optional[Executor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            store: Store holding the records
            config: Record layout and hashing parameters
            executor: Runs listener callbacks for queries created here
                (default: inline)
            logger: Logger handed to queries created here (default: each
                query logs under its own module)
        """
        self.store = store
        self.config = config
        self.executor = executor if executor is not None else ImmediateExecutor()
        self.logger = logger

    def set_location(self, key: str, point: GeoPoint) -> None:
        """
        Store the location of a key, keeping any other fields of its record.

        Args:
            key: Key to locate
            point: Its location
        """
        self.store.set(key, location_fields(point, self.config), merge=True)

    def get_location(self, key: str) -> Optional[GeoPoint]:
        """
        Read the stored location of a key.

        Returns:
            The location, or None if the key has no record

        Raises:
            MalformedRecord: If the record exists but holds no valid location
        """
        record = self.store.get(key)
        if record is None:
            return None
        return parse_location(key, record, self.config)

    def remove_location(self, key: str) -> bool:
        """
        Remove the location of a key.

        Only the hash and location fields are dropped; the record itself is
        kept, even when no other fields remain.

        Returns:
            True if the key had a record
        """
        record = self.store.get(key)
        if record is None:
            return False

        remaining = {
            name: value for name, value in record.items()
            if name not in (self.config.hash_field, self.config.location_field)
        }
        self.store.set(key, remaining)
        return True

    def query_at_location(self, center: GeoPoint, radius: float) -> GeoQuery:
        """
        Create a query for the keys within `radius` meters of `center`.

        The query starts loading when its first listener is added.
        """
        return GeoQuery(
            self.store,
            center,
            radius,
            config=self.config,
            executor=self.executor,
            logger=self.logger,
        )
