"""Remote object store interface and a SQLite-backed implementation.

A remote store holds zone-scoped records keyed by id. Every accepted
write gets a position in the zone's change stream; clients page through
that stream with an opaque cursor.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import RemoteConflict, RemoteError

logger = logging.getLogger(__name__)


@dataclass
class RemoteRecord:
    """A keyed record in a remote zone."""

    record_id: str
    fields: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"record_id": self.record_id, "fields": self.fields}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteRecord":
        return cls(record_id=data["record_id"], fields=data["fields"])


@dataclass
class ChangePage:
    """One page of the remote change stream.

    ``failures`` maps record ids the remote could not return to an error
    message.
    """

    records: list[RemoteRecord]
    cursor: str | None
    more_coming: bool = False
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.records],
            "cursor": self.cursor,
            "more_coming": self.more_coming,
            "failures": self.failures,
        }


class RemoteStore(ABC):
    """Narrow interface to a durable remote record store."""

    zone: str

    @abstractmethod
    async def save(self, record: RemoteRecord) -> None:
        """Store a record.

        Saving a record identical to the stored one is a no-op.

        Raises:
            RemoteConflict: If the key holds different content.
            RemoteError: On any other failure.
        """

    @abstractmethod
    async def enumerate_changes(self, since: str | None, limit: int = 100) -> ChangePage:
        """Return records changed after ``since`` (None for the beginning).

        Raises:
            RemoteError: If the page cannot be fetched.
        """

    @abstractmethod
    async def delete_zone(self) -> None:
        """Drop every record in the zone."""

    async def close(self) -> None:
        """Release transport resources."""


# Schema for the remote record store
REMOTE_SCHEMA = """
CREATE TABLE IF NOT EXISTS remote_record (
    zone TEXT NOT NULL,
    record_id TEXT NOT NULL,
    fields TEXT NOT NULL,
    change_seq INTEGER NOT NULL,
    PRIMARY KEY (zone, record_id)
);

CREATE INDEX IF NOT EXISTS idx_remote_record_seq ON remote_record(zone, change_seq);

-- Never reset, so cursors stay valid across zone deletion
CREATE TABLE IF NOT EXISTS remote_sequence (
    singleton INTEGER PRIMARY KEY CHECK (singleton = 0),
    value INTEGER NOT NULL
);

INSERT OR IGNORE INTO remote_sequence (singleton, value) VALUES (0, 0);
"""


class RemoteDatabase:
    """SQLite storage behind one or more remote zones."""

    def __init__(self, db_path: str | Path):
        """Initialize the remote database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(REMOTE_SCHEMA)
        self._conn.commit()

        logger.info(f"RemoteDatabase connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def save(self, zone: str, record: RemoteRecord) -> bool:
        """Insert a record.

        Returns:
            True if stored, False if an identical record was already there.

        Raises:
            RemoteConflict: If the key holds different content.
        """
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute(
                "SELECT fields FROM remote_record WHERE zone = ? AND record_id = ?",
                (zone, record.record_id),
            ).fetchone()

            if row is not None:
                if json.loads(row["fields"]) == record.fields:
                    return False
                raise RemoteConflict(
                    f"Record {record.record_id} already exists with different content",
                    record_id=record.record_id,
                )

            with conn:
                conn.execute("UPDATE remote_sequence SET value = value + 1 WHERE singleton = 0")
                seq = conn.execute(
                    "SELECT value FROM remote_sequence WHERE singleton = 0"
                ).fetchone()[0]
                conn.execute(
                    """
                    INSERT INTO remote_record (zone, record_id, fields, change_seq)
                    VALUES (?, ?, ?, ?)
                    """,
                    (zone, record.record_id, json.dumps(record.fields, sort_keys=True), seq),
                )

        logger.debug(f"Saved record {record.record_id} in zone {zone} at seq={seq}")
        return True

    def changes(self, zone: str, since: str | None, limit: int = 100) -> ChangePage:
        """Page through records written after cursor ``since``."""
        if limit < 1:
            raise RemoteError(f"Invalid page limit {limit}", status_code=400)
        try:
            since_seq = int(since) if since else 0
        except ValueError:
            raise RemoteError(f"Invalid change token {since!r}", status_code=400)

        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(
                """
                SELECT record_id, fields, change_seq
                FROM remote_record
                WHERE zone = ? AND change_seq > ?
                ORDER BY change_seq ASC
                LIMIT ?
                """,
                (zone, since_seq, limit + 1),
            ).fetchall()

        more_coming = len(rows) > limit
        rows = rows[:limit]
        records = []
        failures = {}
        for row in rows:
            try:
                records.append(RemoteRecord(row["record_id"], json.loads(row["fields"])))
            except json.JSONDecodeError as e:
                failures[row["record_id"]] = f"Corrupt record: {e}"

        cursor = str(rows[-1]["change_seq"]) if rows else str(since_seq)
        return ChangePage(
            records=records,
            cursor=cursor,
            more_coming=more_coming,
            failures=failures,
        )

    def delete_zone(self, zone: str) -> int:
        """Delete every record in a zone.

        Returns:
            Number of records deleted.
        """
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                cursor = conn.execute("DELETE FROM remote_record WHERE zone = ?", (zone,))

        logger.info(f"Deleted {cursor.rowcount} records from zone {zone}")
        return cursor.rowcount

    def get_stats(self) -> dict[str, Any]:
        """Record counts per zone."""
        with self._lock:
            conn = self._ensure_connected()
            zones = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT zone, COUNT(*) FROM remote_record GROUP BY zone"
                )
            }
            seq = conn.execute(
                "SELECT value FROM remote_sequence WHERE singleton = 0"
            ).fetchone()[0]
        return {"zones": zones, "change_seq": seq}


class SqliteRemoteStore(RemoteStore):
    """RemoteStore over a RemoteDatabase zone, in process."""

    def __init__(self, database: RemoteDatabase, zone: str = "changesets"):
        self.database = database
        self.zone = zone

    async def save(self, record: RemoteRecord) -> None:
        self.database.save(self.zone, record)

    async def enumerate_changes(self, since: str | None, limit: int = 100) -> ChangePage:
        return self.database.changes(self.zone, since, limit)

    async def delete_zone(self) -> None:
        self.database.delete_zone(self.zone)
