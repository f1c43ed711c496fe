"""Change capture for a live SQLite connection.

The stdlib ``sqlite3`` module does not expose the session extension, so a
Session installs temporary triggers on every user table with a primary
key. The triggers report the pre-image of each touched row to a Python
callback; ``changeset()`` then diffs those pre-images against the rows as
they stand and encodes the net result.
"""

import logging
import sqlite3
from typing import Any, Iterable

from .codec import UNDEFINED, Delta, Operation, OpKind, encode, same_value

logger = logging.getLogger(__name__)

CAPTURE_FUNCTION = "changesync_capture"
TRIGGER_PREFIX = "changesync_capture_"

_ABSENT = object()


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


class TableInfo:
    """Column layout of a table as reported by ``PRAGMA table_info``."""

    def __init__(self, name: str, columns: list[str], pk: tuple[bool, ...]):
        self.name = name
        self.columns = columns
        self.pk = pk

    @property
    def pk_columns(self) -> list[str]:
        return [c for c, is_pk in zip(self.columns, self.pk) if is_pk]

    @classmethod
    def load(cls, conn: sqlite3.Connection, name: str) -> "TableInfo | None":
        """Read a table's layout, or None if the table does not exist."""
        rows = conn.execute(
            f"PRAGMA main.table_info({quote_identifier(name)})"
        ).fetchall()
        if not rows:
            return None
        columns = [row[1] for row in rows]
        pk = tuple(row[5] > 0 for row in rows)
        return cls(name, columns, pk)

    def select_row(self, conn: sqlite3.Connection, key: tuple[Any, ...]) -> tuple | None:
        """Fetch the current row with the given primary key."""
        cols = ", ".join(quote_identifier(c) for c in self.columns)
        where = " AND ".join(f"{quote_identifier(c)} IS ?" for c in self.pk_columns)
        row = conn.execute(
            f"SELECT {cols} FROM main.{quote_identifier(self.name)} WHERE {where}",
            key,
        ).fetchone()
        return tuple(row) if row is not None else None

    def key_of(self, values: tuple[Any, ...]) -> tuple[Any, ...]:
        return tuple(v for v, is_pk in zip(values, self.pk) if is_pk)


def user_tables(conn: sqlite3.Connection, exclude: Iterable[str] = ()) -> list[str]:
    """Names of the ordinary tables in the main schema."""
    excluded = set(exclude)
    rows = conn.execute(
        "SELECT name FROM main.sqlite_master "
        "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [row[0] for row in rows if row[0] not in excluded]


class Session:
    """Records row changes made on a connection while active.

    Use as a context manager inside a write transaction::

        with Session(conn, exclude={"changeset"}) as session:
            conn.execute("INSERT INTO player VALUES (?, ?)", ("a", 1))
            delta = session.changeset()

    Tables without a primary key are not tracked. ``recursive_triggers``
    is switched ON while the session is active and restored on close,
    which also changes how the connection's own triggers recurse.
    """

    def __init__(self, conn: sqlite3.Connection, exclude: Iterable[str] = ()):
        self._conn = conn
        self._exclude = set(exclude)
        self._tables: dict[str, TableInfo] = {}
        # table -> key -> pre-image (or _ABSENT), in first-touch order
        self._pre_images: dict[str, dict[tuple[Any, ...], Any]] = {}
        self._triggers: list[str] = []
        self._recursive_triggers: int | None = None
        self._active = False

    def __enter__(self) -> "Session":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self) -> None:
        """Install capture triggers on all tracked tables."""
        if self._active:
            return

        self._conn.create_function(CAPTURE_FUNCTION, -1, self._capture)
        # REPLACE conflict resolution only fires delete triggers when
        # recursive triggers are on.
        self._recursive_triggers = self._conn.execute(
            "PRAGMA recursive_triggers"
        ).fetchone()[0]
        self._conn.execute("PRAGMA recursive_triggers = ON")

        for name in user_tables(self._conn, self._exclude):
            info = TableInfo.load(self._conn, name)
            if info is None or not any(info.pk):
                logger.debug(f"Not tracking table {name}: no primary key")
                continue
            self._tables[name] = info
            self._install_triggers(info)

        self._active = True

    def close(self) -> None:
        """Remove capture triggers."""
        if not self._active:
            return
        for trigger in self._triggers:
            self._conn.execute(f"DROP TRIGGER IF EXISTS temp.{quote_identifier(trigger)}")
        self._triggers.clear()
        if self._recursive_triggers is not None:
            self._conn.execute(
                f"PRAGMA recursive_triggers = {int(self._recursive_triggers)}"
            )
        self._active = False

    def _install_triggers(self, info: TableInfo) -> None:
        table = quote_identifier(info.name)
        literal = "'" + info.name.replace("'", "''") + "'"
        old_cols = ", ".join(f"OLD.{quote_identifier(c)}" for c in info.columns)
        new_cols = ", ".join(f"NEW.{quote_identifier(c)}" for c in info.columns)

        bodies = {
            "insert": f"SELECT {CAPTURE_FUNCTION}({literal}, 0, {new_cols});",
            "update": (
                f"SELECT {CAPTURE_FUNCTION}({literal}, 1, {old_cols});"
                f" SELECT {CAPTURE_FUNCTION}({literal}, 0, {new_cols});"
            ),
            "delete": f"SELECT {CAPTURE_FUNCTION}({literal}, 1, {old_cols});",
        }
        for event, body in bodies.items():
            trigger = f"{TRIGGER_PREFIX}{len(self._triggers)}_{event}"
            self._conn.execute(
                f"CREATE TEMP TRIGGER {quote_identifier(trigger)} "
                f"AFTER {event.upper()} ON main.{table} BEGIN {body} END"
            )
            self._triggers.append(trigger)

    def _capture(self, table: str, existed: int, *values: Any) -> None:
        """Trigger callback: remember the first state seen for a row.

        ``existed`` is 1 when ``values`` is the row's prior content and 0
        when the row did not exist before this statement.
        """
        info = self._tables[table]
        key = info.key_of(tuple(values))
        rows = self._pre_images.setdefault(table, {})
        if key not in rows:
            rows[key] = tuple(values) if existed else _ABSENT

    @property
    def is_empty(self) -> bool:
        """True when no tracked row has been touched."""
        return not any(self._pre_images.values())

    def changeset(self) -> Delta:
        """Encode the net changes since the session started."""
        operations: list[Operation] = []

        for table, rows in self._pre_images.items():
            info = self._tables[table]
            for key, before in rows.items():
                after = info.select_row(self._conn, key)
                op = _diff_row(info, before, after)
                if op is not None:
                    operations.append(op)

        delta = encode(operations)
        logger.debug(f"Captured {len(operations)} row changes ({len(delta)} bytes)")
        return delta


def _diff_row(info: TableInfo, before: Any, after: tuple | None) -> Operation | None:
    if before is _ABSENT:
        if after is None:
            return None
        return Operation(OpKind.INSERT, info.name, info.pk, new_values=after)

    if after is None:
        return Operation(OpKind.DELETE, info.name, info.pk, old_values=before)

    changed = [not same_value(b, a) for b, a in zip(before, after)]
    if not any(changed):
        return None

    old_values = tuple(
        b if (is_pk or ch) else UNDEFINED
        for b, is_pk, ch in zip(before, info.pk, changed)
    )
    new_values = tuple(a if ch else UNDEFINED for a, ch in zip(after, changed))
    return Operation(
        OpKind.UPDATE, info.name, info.pk, old_values=old_values, new_values=new_values
    )
