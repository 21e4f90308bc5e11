"""
SQLite-backed location store with TTL eviction.

One ``locations`` table holds every accepted report. Typed columns carry the
fields queries and clients rely on; ``raw_json`` keeps the report verbatim so
fields outside the typed schema are never lost.

Writes go through a single connection guarded by a lock, each statement in
its own transaction. Reads open short-lived connections so they can run
concurrently with each other and with the writer (WAL journal mode).
"""

import json
import logging
import math
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from errors.exceptions import StoreError
from storage.models import LocationRecord, StoreStats

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 2592000
DEFAULT_QUERY_LIMIT = 100
IN_MEMORY = ":memory:"
MAX_QUERY_LIMIT = 10000

# Range of a SQLite INTEGER column
SQLITE_INT_MIN = -(2 ** 63)
SQLITE_INT_MAX = 2 ** 63 - 1

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS locations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        _type TEXT NOT NULL,
        tid TEXT,
        lat REAL NOT NULL,
        lon REAL NOT NULL,
        acc REAL,
        alt REAL,
        batt INTEGER,
        bs INTEGER,
        conn TEXT,
        tst INTEGER NOT NULL,
        vac REAL,
        vel REAL,
        cog REAL,
        rad REAL,
        t TEXT,
        topic TEXT,
        device TEXT,
        raw_json TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tst ON locations(tst)",
    "CREATE INDEX IF NOT EXISTS idx_device ON locations(device)",
    "CREATE INDEX IF NOT EXISTS idx_created_at ON locations(created_at)",
)

# Optional typed columns and the Python type each accepts.
TEXT_COLUMNS = ("tid", "conn", "t", "topic", "device")
REAL_COLUMNS = ("acc", "alt", "vac", "vel", "cog", "rad")
INTEGER_COLUMNS = ("batt", "bs")

INSERT_COLUMNS = (
    "_type", "tid", "lat", "lon", "acc", "alt", "batt", "bs", "conn", "tst",
    "vac", "vel", "cog", "rad", "t", "topic", "device", "raw_json", "created_at",
)
INSERT_SQL = (
    f"INSERT INTO locations ({', '.join(INSERT_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in INSERT_COLUMNS)})"
)


def _as_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_real(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


def _as_integer(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and SQLITE_INT_MIN <= value <= SQLITE_INT_MAX:
        return value
    return None


def serialize_raw(payload: dict[str, Any]) -> str:
    """Compact JSON serialization used for the ``raw_json`` column."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


class LocationStore:
    """
    Durable store of location records in a single SQLite file.

    Args:
        db_path: Path of the database file, or ``":memory:"``
        ttl_seconds: Maximum record age measured from storage time;
            zero or negative disables eviction
        clock: Returns the current time in seconds since epoch
    """

    def __init__(
        self,
        db_path: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = str(db_path)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._write_lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def in_memory(self) -> bool:
        return self.db_path == IN_MEMORY

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (sqlite3.Error, OSError) as e:
            logger.error(
                f"Location store {operation} failed: {e}",
                extra={"extra_data": {
                    "operation": operation,
                    "db_path": self.db_path,
                    "error_type": type(e).__name__,
                }}
            )
            raise StoreError(details={"operation": operation}) from e

    def _open(self) -> sqlite3.Connection:
        if not self.in_memory:
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _writer(self) -> sqlite3.Connection:
        # Callers hold the write lock
        if self._conn is None:
            conn = self._open()
            if not self.in_memory:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._conn = conn
        return self._conn

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        if self.in_memory:
            # A private in-memory database is only visible to its own connection
            with self._write_lock:
                yield self._writer()
            return
        conn = self._open()
        try:
            conn.execute("PRAGMA busy_timeout=5000")
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create the table and indexes if absent. Safe to call on every start."""
        with self._translate_errors("init_schema"):
            with self._write_lock:
                conn = self._writer()
                with conn:
                    for statement in SCHEMA_STATEMENTS:
                        conn.execute(statement)
        logger.info(
            "Location store schema ready",
            extra={"extra_data": {"db_path": self.db_path, "ttl_seconds": self.ttl_seconds}}
        )

    def insert(self, payload: dict[str, Any], raw_json: Optional[str] = None) -> int:
        """
        Persist one location report and return its id.

        Args:
            payload: The report; ``_type``, ``lat``, ``lon`` and ``tst`` must be set
            raw_json: The client's original serialization; defaults to ``payload``

        Typed optional fields whose value the column cannot hold, such as a
        string for ``batt`` or an integer beyond 64 bits, are stored as NULL
        and survive only in ``raw_json``. A required field that does not
        fit violates its NOT NULL constraint and raises StoreError.
        """
        row: dict[str, Any] = {
            "_type": payload.get("_type"),
            "lat": _as_real(payload.get("lat")),
            "lon": _as_real(payload.get("lon")),
            "tst": _as_integer(payload.get("tst")),
            "raw_json": raw_json if raw_json is not None else serialize_raw(payload),
            "created_at": int(self._clock()),
        }
        for column in TEXT_COLUMNS:
            row[column] = _as_text(payload.get(column))
        for column in REAL_COLUMNS:
            row[column] = _as_real(payload.get(column))
        for column in INTEGER_COLUMNS:
            row[column] = _as_integer(payload.get(column))

        with self._translate_errors("insert"):
            with self._write_lock:
                conn = self._writer()
                with conn:
                    cursor = conn.execute(INSERT_SQL, [row[c] for c in INSERT_COLUMNS])
                record_id = cursor.lastrowid

        logger.debug(
            "Location stored",
            extra={"extra_data": {"id": record_id, "device": row["device"], "tst": row["tst"]}}
        )
        return record_id

    def query(self, limit: Optional[int] = None, device: Optional[str] = None) -> list[LocationRecord]:
        """
        Return up to ``limit`` records, newest report timestamp first.

        A missing or non-positive ``limit`` falls back to 100 and values above
        10000 are capped. ``device`` restricts results to an exact device
        identifier match.
        """
        if not limit or limit <= 0:
            limit = DEFAULT_QUERY_LIMIT
        limit = min(limit, MAX_QUERY_LIMIT)

        sql = "SELECT * FROM locations"
        params: list[Any] = []
        if device is not None:
            sql += " WHERE device = ?"
            params.append(device)
        sql += " ORDER BY tst DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._translate_errors("query"):
            with self._reader() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [LocationRecord.from_row(row) for row in rows]

    def get_by_id(self, record_id: int) -> Optional[LocationRecord]:
        """Look up a single record, or None when it does not exist."""
        if not SQLITE_INT_MIN <= record_id <= SQLITE_INT_MAX:
            return None
        with self._translate_errors("get_by_id"):
            with self._reader() as conn:
                row = conn.execute("SELECT * FROM locations WHERE id = ?", (record_id,)).fetchone()
        return LocationRecord.from_row(row) if row is not None else None

    def evict_expired(self) -> int:
        """
        Delete records stored more than ``ttl_seconds`` ago.

        Returns:
            Number of records deleted; always 0 when the TTL is zero or negative.
        """
        if self.ttl_seconds <= 0:
            return 0

        cutoff = int(self._clock()) - self.ttl_seconds
        with self._translate_errors("evict_expired"):
            with self._write_lock:
                conn = self._writer()
                with conn:
                    cursor = conn.execute("DELETE FROM locations WHERE created_at < ?", (cutoff,))
                deleted = cursor.rowcount

        if deleted:
            logger.info(
                f"Evicted {deleted} expired location records",
                extra={"extra_data": {"deleted": deleted, "cutoff": cutoff}}
            )
        return deleted

    def stats(self) -> StoreStats:
        """Record count and the oldest/newest report timestamps."""
        with self._translate_errors("stats"):
            with self._reader() as conn:
                total, oldest, newest = conn.execute(
                    "SELECT COUNT(*), MIN(tst), MAX(tst) FROM locations"
                ).fetchone()
        return StoreStats(total_records=total, oldest_record=oldest, newest_record=newest)

    def count(self) -> int:
        with self._translate_errors("count"):
            with self._reader() as conn:
                return conn.execute("SELECT COUNT(*) FROM locations").fetchone()[0]

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        with self._translate_errors("ping"):
            with self._reader() as conn:
                conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        with self._write_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        logger.info("Location store closed", extra={"extra_data": {"db_path": self.db_path}})
