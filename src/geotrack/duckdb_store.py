"""
DuckDB-backed ordered store.

Records live in a single DuckDB table with the order field copied into its
own column, so range snapshots are plain ordered scans:

    SELECT key, fields FROM records
    WHERE sort_key >= ? AND sort_key < ?
    ORDER BY sort_key, key

Fields are kept as JSON text. Live range subscriptions are served
in-process by ObservableStore; the database is the durable copy.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import duckdb

from .executors import Executor
from .store import AccessRule, ObservableStore, Record


class DuckDBStore(ObservableStore):
    """
    Store implementation persisting records in DuckDB.

    Use ":memory:" (the default) for a throwaway database or a file path to
    keep records across runs.
    """

    def __init__(
        self,
        database: Union[str, Path] = ":memory:",
        table: str = "records",
        order_field: str = "g",
        executor: Optional[Executor] = None,
        access_rule: Optional[AccessRule] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the store.

        Args:
            database: Database file path, or ":memory:"
            table: Table holding the records
            order_field: Record field the store is ordered by
            executor: Runs observer callbacks (default: inline)
            access_rule: Optional check run on every subscribe
            logger: Logger for store activity
        """
        super().__init__(order_field, executor, access_rule, logger)
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")

        self.table = table
        self._con = duckdb.connect(str(database))
        self._create_table()

    def _create_table(self) -> None:
        """Create the records table if it does not exist."""
        self._con.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                key VARCHAR PRIMARY KEY,
                sort_key VARCHAR,
                fields VARCHAR NOT NULL
            )
        """)

    def __len__(self) -> int:
        with self._lock:
            (count,) = self._con.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()
        return count

    def _read(self, key: str) -> Optional[Record]:
        row = self._con.execute(
            f"SELECT fields FROM {self.table} WHERE key = ?", [key]
        ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def _write(self, key: str, record: Record, sort_key: Optional[str]) -> None:
        # Delete and insert rather than upsert so the primary key index is
        # never updated in place
        self._con.execute(f"DELETE FROM {self.table} WHERE key = ?", [key])
        self._con.execute(
            f"INSERT INTO {self.table} VALUES (?, ?, ?)",
            [key, sort_key, json.dumps(record)],
        )

    def _erase(self, key: str) -> None:
        self._con.execute(f"DELETE FROM {self.table} WHERE key = ?", [key])

    def _scan(self, start: str, end: str) -> List[Tuple[str, Record]]:
        rows = self._con.execute(f"""
            SELECT key, fields
            FROM {self.table}
            WHERE sort_key >= ? AND sort_key < ?
            ORDER BY sort_key, key
        """, [start, end]).fetchall()
        return [(key, json.loads(fields)) for key, fields in rows]

    def close(self) -> None:
        """Close the database connection."""
        con = getattr(self, "_con", None)
        if con is not None:
            con.close()
            self._con = None

    def __del__(self):
        """Cleanup on garbage collection."""
        self.close()
