"""Commit graph store: persisted changeset DAG plus the head pointer.

User tables live in the same SQLite database. Every write made through
``commit`` is captured as a delta and appended to the graph; ``pull``
replays deltas from other branches or devices onto the local tables.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, TypeVar

from ..delta import Session, apply
from ..errors import IntegrityError, NotFoundError
from .ancestry import ancestors, leaves, load_edges
from .changeset import Changeset

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Tables owned by the engine; never captured into deltas
ENGINE_TABLES = frozenset({"changeset", "head", "sync_state", "fetch_inbox"})

SCHEMA = """
-- Append-only changeset DAG
CREATE TABLE IF NOT EXISTS changeset (
    id TEXT PRIMARY KEY NOT NULL,
    parent_id TEXT REFERENCES changeset(id)
        ON DELETE RESTRICT ON UPDATE RESTRICT DEFERRABLE INITIALLY DEFERRED,
    parent_delta BLOB NOT NULL,
    merge_id TEXT REFERENCES changeset(id)
        ON DELETE RESTRICT ON UPDATE RESTRICT DEFERRABLE INITIALLY DEFERRED,
    merge_delta BLOB,
    pushed INTEGER NOT NULL DEFAULT 0,
    meta TEXT NOT NULL DEFAULT '{}',
    CHECK ((merge_id IS NULL) = (merge_delta IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_changeset_parent ON changeset(parent_id);
CREATE INDEX IF NOT EXISTS idx_changeset_merge ON changeset(merge_id);
CREATE INDEX IF NOT EXISTS idx_changeset_pushed ON changeset(pushed);

-- Singleton head pointer
CREATE TABLE IF NOT EXISTS head (
    singleton INTEGER PRIMARY KEY CHECK (singleton = 0),
    id TEXT REFERENCES changeset(id)
        ON DELETE RESTRICT ON UPDATE RESTRICT DEFERRABLE INITIALLY DEFERRED
);

INSERT OR IGNORE INTO head (singleton, id) VALUES (0, NULL);

-- Sync bookkeeping: remote change cursor and fetched nodes awaiting parents
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS fetch_inbox (
    id TEXT PRIMARY KEY,
    record TEXT NOT NULL
);
"""

CHANGESET_COLUMNS = "id, parent_id, parent_delta, merge_id, merge_delta, pushed, meta"


class GraphStore:
    """SQLite-backed commit graph with a single head.

    All writes go through one transaction at a time, serialized by an
    in-process writer lock. File databases run in WAL mode and serve
    reads from a second, read-only connection, so readers see the last
    committed snapshot without waiting for a write in flight.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the graph store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._reader: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._read_lock = threading.Lock()
        self._depth = 0
        self._writer_thread: int | None = None
        self._listeners: list[Callable[[str], None]] = []

    def connect(self) -> None:
        """Initialize database connections and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self.db_path), isolation_level=None, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if isinstance(self.db_path, Path):
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA)

        if isinstance(self.db_path, Path):
            self._reader = sqlite3.connect(
                self.db_path.resolve().as_uri() + "?mode=ro",
                uri=True,
                isolation_level=None,
                check_same_thread=False,
            )
            self._reader.row_factory = sqlite3.Row

        logger.info(f"GraphStore connected to {self.db_path}, head={self.head()}")

    def close(self) -> None:
        """Close database connections."""
        if self._reader:
            self._reader.close()
            self._reader = None
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def migrate(self, sql: str) -> None:
        """Run schema DDL for user tables outside change capture."""
        with self._lock:
            conn = self._ensure_connected()
            if self._depth:
                raise IntegrityError("Cannot migrate inside a write transaction")
            conn.executescript(sql)

    # ==================== Transactions ====================

    @contextmanager
    def write(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction under the writer lock.

        Nested calls join the outer transaction.

        Raises:
            IntegrityError: If deferred foreign key checks fail at commit.
        """
        with self._lock:
            conn = self._ensure_connected()
            if self._depth:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            self._writer_thread = threading.get_ident()
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.IntegrityError as e:
                    conn.execute("ROLLBACK")
                    raise IntegrityError(f"Commit graph constraint failed: {e}") from e
            finally:
                self._depth = 0
                self._writer_thread = None

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Read access to one consistent snapshot.

        Reads made inside ``write()`` on the writing thread, and all reads
        of an in-memory database, go through the writer connection.
        """
        self._ensure_connected()
        if self._reader is None or self._writer_thread == threading.get_ident():
            with self._lock:
                yield self._ensure_connected()
            return

        with self._read_lock:
            self._reader.execute("BEGIN")
            try:
                yield self._reader
            finally:
                self._reader.execute("COMMIT")

    # ==================== Listeners ====================

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with an event name after changes."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.remove(listener)

    def _notify(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener failed on {event}: {e}")

    # ==================== Public operations ====================

    def commit(
        self,
        mutation: Callable[[sqlite3.Connection], T],
        meta: dict[str, Any] | None = None,
    ) -> T:
        """Run ``mutation`` in one transaction and record its changes.

        If the mutation changed no rows, no changeset is created and head
        stays put. The mutation must not commit or roll back itself.

        While the mutation runs ``PRAGMA recursive_triggers`` is ON, so
        that rows removed by ``INSERT OR REPLACE`` are captured. User
        triggers that fire themselves recurse during a commit, and
        REPLACE deletions fire user delete triggers. The previous setting
        is restored afterwards.

        Args:
            mutation: Callable receiving the connection.
            meta: Opaque metadata stored with the changeset.

        Returns:
            Whatever ``mutation`` returned.
        """
        changeset = None
        with self.write() as conn:
            with Session(conn, exclude=ENGINE_TABLES) as session:
                result = mutation(conn)
                delta = session.changeset()

            if delta:
                changeset = Changeset.new(
                    parent_id=self._select_head(conn),
                    parent_delta=delta,
                    meta=meta,
                )
                self._insert(conn, changeset)
                self._update_head(conn, changeset.id)

        if changeset is None:
            logger.debug("Commit changed nothing, head unchanged")
            return result

        logger.info(f"Committed changeset {changeset.id} ({len(delta)} bytes)")
        self._notify("commit")
        return result

    def pull(self) -> bool:
        """Advance head through every reachable child, applying deltas.

        When head has several children the one with the lowest id is
        taken first.

        Returns:
            True if at least one changeset was applied.
        """
        applied = 0
        with self.write() as conn:
            while True:
                head = self._select_head(conn)
                child = self._select_child(conn, head)
                if child is None:
                    break

                report = apply(child.delta_from(head), conn)
                if report.omitted:
                    logger.warning(
                        f"Changeset {child.id}: omitted {report.conflicts} "
                        f"conflicting changes"
                    )
                self._update_head(conn, child.id)
                applied += 1
                logger.debug(f"Pulled changeset {child.id}")

        if applied:
            logger.info(f"Pulled {applied} changesets, head={self.head()}")
            self._notify("pull")
        return applied > 0

    def reset(self) -> None:
        """Delete all history and clear head.

        User tables are left as they are. The saved remote cursor and any
        staged remote nodes are cleared too, so a later fetch starts over.
        """
        with self.write() as conn:
            conn.execute("PRAGMA defer_foreign_keys = ON")
            self._update_head(conn, None)
            conn.execute("DELETE FROM changeset")
            conn.execute("DELETE FROM fetch_inbox")
            conn.execute("DELETE FROM sync_state")

        logger.info("Commit graph reset")
        self._notify("reset")

    # ==================== Queries ====================

    def head(self) -> str | None:
        """Id of the changeset the local tables currently reflect."""
        with self.read() as conn:
            return self._select_head(conn)

    def find(self, changeset_id: str) -> Changeset | None:
        with self.read() as conn:
            row = conn.execute(
                f"SELECT {CHANGESET_COLUMNS} FROM changeset WHERE id = ?",
                (changeset_id,),
            ).fetchone()
        return Changeset.from_row(row) if row else None

    def get(self, changeset_id: str) -> Changeset:
        """Fetch a changeset by id.

        Raises:
            NotFoundError: If no such changeset exists.
        """
        changeset = self.find(changeset_id)
        if changeset is None:
            raise NotFoundError(f"Changeset {changeset_id} not found", key=changeset_id)
        return changeset

    def get_many(self, changeset_ids: Iterable[str]) -> dict[str, Changeset]:
        ids = list(changeset_ids)
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        with self.read() as conn:
            rows = conn.execute(
                f"SELECT {CHANGESET_COLUMNS} FROM changeset WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        return {row["id"]: Changeset.from_row(row) for row in rows}

    def contains(self, changeset_id: str) -> bool:
        with self.read() as conn:
            row = conn.execute(
                "SELECT 1 FROM changeset WHERE id = ?", (changeset_id,)
            ).fetchone()
        return row is not None

    def log(self) -> list[Changeset]:
        """All changesets in insertion order."""
        with self.read() as conn:
            rows = conn.execute(
                f"SELECT {CHANGESET_COLUMNS} FROM changeset ORDER BY rowid"
            ).fetchall()
        return [Changeset.from_row(row) for row in rows]

    def leaves(self) -> list[Changeset]:
        """Changesets not referenced by any other, sorted by id."""
        with self.read() as conn:
            leaf_ids = leaves(load_edges(conn))
        found = self.get_many(leaf_ids)
        return [found[i] for i in leaf_ids]

    def ancestors(self, changeset_id: str) -> set[str]:
        """Ids reachable backward from ``changeset_id``, itself included."""
        with self.read() as conn:
            edges = load_edges(conn)
        if changeset_id not in edges:
            raise NotFoundError(f"Changeset {changeset_id} not found", key=changeset_id)
        return ancestors(edges, changeset_id)

    def unpushed(self) -> list[Changeset]:
        """Changesets not yet in the remote store, oldest first."""
        with self.read() as conn:
            rows = conn.execute(
                f"SELECT {CHANGESET_COLUMNS} FROM changeset "
                "WHERE pushed = 0 ORDER BY rowid"
            ).fetchall()
        return [Changeset.from_row(row) for row in rows]

    # ==================== Node writes ====================

    def insert(self, changeset: Changeset) -> None:
        """Append a single changeset (head is not moved)."""
        with self.write() as conn:
            self._insert(conn, changeset)

    def insert_many(self, changesets: Iterable[Changeset]) -> int:
        """Append changesets in one transaction.

        Parents may appear anywhere in the batch; references are checked
        when the transaction commits.
        """
        count = 0
        with self.write() as conn:
            for changeset in changesets:
                self._insert(conn, changeset)
                count += 1
        return count

    def mark_pushed(self, changeset_id: str) -> bool:
        """Flag a changeset as present in the remote store."""
        with self.write() as conn:
            cursor = conn.execute(
                "UPDATE changeset SET pushed = 1 WHERE id = ? AND pushed = 0",
                (changeset_id,),
            )
        return cursor.rowcount > 0

    # ==================== Sync bookkeeping ====================

    def get_state(self, key: str) -> str | None:
        with self.read() as conn:
            row = conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set_state(self, key: str, value: str | None) -> None:
        with self.write() as conn:
            self._set_state(conn, key, value)

    def stage(self, changesets: Iterable[Changeset], state: dict[str, str | None]) -> int:
        """Hold fetched changesets until their parents are known.

        Saves ``state`` in the same transaction, so a fetch cursor only
        advances together with the nodes it covered. Ids already in the
        graph or already staged are skipped.

        Returns:
            Number of newly staged changesets.
        """
        staged = 0
        with self.write() as conn:
            for changeset in changesets:
                known = conn.execute(
                    "SELECT 1 FROM changeset WHERE id = ? "
                    "UNION ALL SELECT 1 FROM fetch_inbox WHERE id = ?",
                    (changeset.id, changeset.id),
                ).fetchone()
                if known:
                    continue
                conn.execute(
                    "INSERT INTO fetch_inbox (id, record) VALUES (?, ?)",
                    (changeset.id, json.dumps(changeset.to_record())),
                )
                staged += 1
            for key, value in state.items():
                self._set_state(conn, key, value)
        return staged

    def promote_staged(self) -> list[Changeset]:
        """Move staged changesets whose parents are known into the graph.

        Returns:
            The inserted changesets, parents before children.
        """
        with self.write() as conn:
            rows = conn.execute("SELECT id, record FROM fetch_inbox ORDER BY rowid").fetchall()
            pending = {
                row["id"]: Changeset.from_record(row["id"], json.loads(row["record"]))
                for row in rows
            }
            known = set(load_edges(conn))

            ready: list[Changeset] = []
            progress = True
            while pending and progress:
                progress = False
                for changeset_id, changeset in list(pending.items()):
                    if all(p in known for p in changeset.parents):
                        ready.append(changeset)
                        known.add(changeset_id)
                        del pending[changeset_id]
                        progress = True

            for changeset in ready:
                self._insert(conn, changeset)
                conn.execute("DELETE FROM fetch_inbox WHERE id = ?", (changeset.id,))

        if pending:
            logger.warning(
                f"{len(pending)} fetched changesets are waiting for missing parents"
            )
        return ready

    def staged_count(self) -> int:
        with self.read() as conn:
            return conn.execute("SELECT COUNT(*) FROM fetch_inbox").fetchone()[0]

    # ==================== Stats ====================

    def get_stats(self) -> dict[str, Any]:
        """Get graph statistics."""
        with self.read() as conn:
            stats: dict[str, Any] = {
                "head": self._select_head(conn),
                "total_changesets": conn.execute(
                    "SELECT COUNT(*) FROM changeset"
                ).fetchone()[0],
                "unpushed_changesets": conn.execute(
                    "SELECT COUNT(*) FROM changeset WHERE pushed = 0"
                ).fetchone()[0],
                "merge_changesets": conn.execute(
                    "SELECT COUNT(*) FROM changeset WHERE merge_id IS NOT NULL"
                ).fetchone()[0],
                "staged_changesets": conn.execute(
                    "SELECT COUNT(*) FROM fetch_inbox"
                ).fetchone()[0],
                "leaves": len(leaves(load_edges(conn))),
            }

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats

    # ==================== Database access ====================

    def _select_head(self, conn: sqlite3.Connection) -> str | None:
        return conn.execute("SELECT id FROM head WHERE singleton = 0").fetchone()[0]

    def _update_head(self, conn: sqlite3.Connection, changeset_id: str | None) -> None:
        conn.execute("UPDATE head SET id = ? WHERE singleton = 0", (changeset_id,))

    def _select_child(self, conn: sqlite3.Connection, head: str | None) -> Changeset | None:
        if head is None:
            row = conn.execute(
                f"SELECT {CHANGESET_COLUMNS} FROM changeset "
                "WHERE parent_id IS NULL AND merge_id IS NULL ORDER BY id LIMIT 1"
            ).fetchone()
        else:
            row = conn.execute(
                f"SELECT {CHANGESET_COLUMNS} FROM changeset "
                "WHERE parent_id = :head OR merge_id = :head ORDER BY id LIMIT 1",
                {"head": head},
            ).fetchone()
        return Changeset.from_row(row) if row else None

    def _insert(self, conn: sqlite3.Connection, changeset: Changeset) -> None:
        changeset.validate()
        try:
            conn.execute(
                f"INSERT INTO changeset ({CHANGESET_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    changeset.id,
                    changeset.parent_id,
                    changeset.parent_delta.data,
                    changeset.merge_id,
                    changeset.merge_delta.data if changeset.merge_delta is not None else None,
                    int(changeset.pushed),
                    json.dumps(changeset.meta),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise IntegrityError(f"Cannot insert changeset {changeset.id}: {e}") from e

    def _set_state(self, conn: sqlite3.Connection, key: str, value: str | None) -> None:
        conn.execute(
            "INSERT INTO sync_state (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
