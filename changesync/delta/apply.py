"""Apply a changeset to a live connection, omitting conflicting changes."""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from .codec import UNDEFINED, Delta, Operation, OpKind, iter_operations, same_value
from .session import TableInfo, quote_identifier, user_tables

logger = logging.getLogger(__name__)

SAVEPOINT = "changesync_apply"


class ConflictReason:
    """Why an operation was omitted."""

    NO_TABLE = "no_table"
    SCHEMA = "schema"
    NOT_FOUND = "not_found"
    DATA = "data"
    EXISTS = "exists"
    CONSTRAINT = "constraint"
    FOREIGN_KEY = "foreign_key"


@dataclass
class ApplyReport:
    """Outcome of applying a delta.

    Conflicting operations are dropped rather than raised; ``omitted``
    records each one with its reason so callers can see what was lost.
    """

    applied: int = 0
    omitted: list[tuple[Operation, str]] = field(default_factory=list)

    @property
    def conflicts(self) -> int:
        return len(self.omitted)

    def __bool__(self) -> bool:
        return self.applied > 0


@dataclass(frozen=True)
class ForeignKey:
    """One foreign key constraint, child columns referencing parent columns."""

    child: str
    parent: str
    child_columns: tuple[str, ...]
    parent_columns: tuple[str, ...]


def apply(delta: Delta | bytes, conn: sqlite3.Connection) -> ApplyReport:
    """Replay each operation in ``delta`` against ``conn``.

    Should be called inside a transaction owned by the caller. Operations
    whose target row is missing, already present, or not in the expected
    prior state are omitted and listed in the returned report.

    Foreign keys are checked once the whole delta has been applied, so
    operations may reference rows that appear later in the delta. Any
    operation still leaving a dangling reference at that point is omitted
    with ``ConflictReason.FOREIGN_KEY`` and the rest are replayed without
    it, so the caller's commit does not fail.

    Raises:
        CodecError: If the delta is malformed. Nothing is executed.
    """
    operations = list(iter_operations(delta))
    tables: dict[str, TableInfo | None] = {}
    for op in operations:
        if op.table not in tables:
            tables[op.table] = TableInfo.load(conn, op.table)

    touched = {name for name, info in tables.items() if info is not None}
    foreign_keys = _foreign_keys(conn, touched) if _enforces_foreign_keys(conn) else []

    deferred = conn.execute("PRAGMA defer_foreign_keys").fetchone()[0]
    conn.execute("PRAGMA defer_foreign_keys = ON")
    try:
        report = _apply_checked(conn, operations, tables, foreign_keys)
    finally:
        conn.execute(f"PRAGMA defer_foreign_keys = {int(deferred)}")

    if report.omitted:
        logger.warning(
            f"Applied {report.applied} changes, omitted {report.conflicts} conflicting"
        )
    return report


def _apply_checked(
    conn: sqlite3.Connection,
    operations: list[Operation],
    tables: dict[str, TableInfo | None],
    foreign_keys: list[ForeignKey],
) -> ApplyReport:
    """Apply inside a savepoint, retrying without the operations that break foreign keys."""
    baseline = _violations(conn, foreign_keys)
    excluded: dict[int, str] = {}

    while True:
        conn.execute(f"SAVEPOINT {SAVEPOINT}")
        try:
            report, applied = _apply_all(conn, operations, tables, excluded)
            culprits = set()
            if foreign_keys:
                dangling = _violations(conn, foreign_keys) - baseline
                culprits = _culprits(dangling, operations, tables, applied)
                if dangling and not culprits:
                    logger.error(
                        f"{len(dangling)} foreign key violations not caused by this delta"
                    )
        except BaseException:
            conn.execute(f"ROLLBACK TO {SAVEPOINT}")
            conn.execute(f"RELEASE {SAVEPOINT}")
            raise

        if not culprits:
            conn.execute(f"RELEASE {SAVEPOINT}")
            return report

        conn.execute(f"ROLLBACK TO {SAVEPOINT}")
        conn.execute(f"RELEASE {SAVEPOINT}")
        for index in culprits:
            excluded[index] = ConflictReason.FOREIGN_KEY
        logger.debug(f"Retrying apply without {len(culprits)} dangling references")


def _apply_all(
    conn: sqlite3.Connection,
    operations: list[Operation],
    tables: dict[str, TableInfo | None],
    excluded: dict[int, str],
) -> tuple[ApplyReport, set[int]]:
    report = ApplyReport()
    applied: set[int] = set()

    for index, op in enumerate(operations):
        reason = excluded.get(index)
        if reason is None:
            reason = _apply_one(conn, tables[op.table], op)
        if reason is None:
            report.applied += 1
            applied.add(index)
        else:
            report.omitted.append((op, reason))
            logger.debug(f"Omitted {op.kind.name} on {op.table} key={op.key}: {reason}")

    return report, applied


def _apply_one(conn: sqlite3.Connection, info: TableInfo | None, op: Operation) -> str | None:
    if info is None:
        return ConflictReason.NO_TABLE
    if len(info.columns) != op.column_count or info.pk != op.pk:
        return ConflictReason.SCHEMA

    table = f"main.{quote_identifier(info.name)}"
    current = info.select_row(conn, op.key)

    if op.kind is OpKind.INSERT:
        if current is not None:
            return ConflictReason.EXISTS
        cols = ", ".join(quote_identifier(c) for c in info.columns)
        marks = ", ".join("?" for _ in info.columns)
        return _execute(conn, f"INSERT INTO {table} ({cols}) VALUES ({marks})", op.new_values)

    if current is None:
        return ConflictReason.NOT_FOUND
    if not _matches(current, op.old_values):
        return ConflictReason.DATA

    where = " AND ".join(f"{quote_identifier(c)} IS ?" for c in info.pk_columns)

    if op.kind is OpKind.DELETE:
        return _execute(conn, f"DELETE FROM {table} WHERE {where}", op.key)

    assignments = []
    params = []
    for column, value in zip(info.columns, op.new_values):
        if value is not UNDEFINED:
            assignments.append(f"{quote_identifier(column)} = ?")
            params.append(value)
    if not assignments:
        return None
    return _execute(
        conn,
        f"UPDATE {table} SET {', '.join(assignments)} WHERE {where}",
        (*params, *op.key),
    )


def _matches(current: tuple, expected: tuple) -> bool:
    return all(
        value is UNDEFINED or same_value(have, value)
        for have, value in zip(current, expected)
    )


def _execute(conn: sqlite3.Connection, sql: str, params) -> str | None:
    try:
        conn.execute(sql, tuple(params))
    except sqlite3.IntegrityError as e:
        logger.debug(f"Constraint conflict: {e}")
        return ConflictReason.CONSTRAINT
    return None


# ==================== Foreign keys ====================


def _enforces_foreign_keys(conn: sqlite3.Connection) -> bool:
    return bool(conn.execute("PRAGMA foreign_keys").fetchone()[0])


def _primary_key(conn: sqlite3.Connection, table: str) -> tuple[str, ...]:
    rows = conn.execute(f"PRAGMA main.table_info({quote_identifier(table)})").fetchall()
    return tuple(row[1] for row in sorted(rows, key=lambda r: r[5]) if row[5] > 0)


def _foreign_keys(conn: sqlite3.Connection, touched: set[str]) -> list[ForeignKey]:
    """Foreign keys whose child or parent table is in ``touched``."""
    if not touched:
        return []

    existing = set(user_tables(conn))
    result = []
    for child in sorted(existing):
        rows = conn.execute(
            f"PRAGMA main.foreign_key_list({quote_identifier(child)})"
        ).fetchall()
        by_id: dict[int, list] = {}
        for row in rows:
            by_id.setdefault(row[0], []).append(row)

        for fk_rows in by_id.values():
            fk_rows.sort(key=lambda r: r[1])
            parent = fk_rows[0][2]
            if parent not in existing or (child not in touched and parent not in touched):
                continue
            child_columns = tuple(r[3] for r in fk_rows)
            if all(r[4] is not None for r in fk_rows):
                parent_columns = tuple(r[4] for r in fk_rows)
            else:
                parent_columns = _primary_key(conn, parent)
            if len(parent_columns) != len(child_columns):
                continue
            result.append(ForeignKey(child, parent, child_columns, parent_columns))

    return result


def _violations(
    conn: sqlite3.Connection, foreign_keys: list[ForeignKey]
) -> set[tuple[ForeignKey, tuple[Any, ...] | None, tuple[Any, ...]]]:
    """Child rows whose reference has no parent row.

    Each violation is ``(foreign_key, child_key, child_values)`` where
    ``child_key`` is the child's primary key (None for tables without one)
    and ``child_values`` the referencing column values.
    """
    found = set()
    for fk in foreign_keys:
        child = TableInfo.load(conn, fk.child)
        child_pk = child.pk_columns if child is not None else []
        fk_cols = [f"c.{quote_identifier(c)}" for c in fk.child_columns]
        pk_cols = [f"c.{quote_identifier(c)}" for c in child_pk]
        not_null = " AND ".join(f"{c} IS NOT NULL" for c in fk_cols)
        joins = " AND ".join(
            f"p.{quote_identifier(pc)} = c.{quote_identifier(cc)}"
            for pc, cc in zip(fk.parent_columns, fk.child_columns)
        )
        rows = conn.execute(
            f"SELECT {', '.join(pk_cols + fk_cols)} "
            f"FROM main.{quote_identifier(fk.child)} AS c "
            f"WHERE {not_null} AND NOT EXISTS ("
            f"SELECT 1 FROM main.{quote_identifier(fk.parent)} AS p WHERE {joins})"
        ).fetchall()
        for row in rows:
            key = tuple(row[: len(pk_cols)]) if pk_cols else None
            found.add((fk, key, tuple(row[len(pk_cols):])))
    return found


def _culprits(
    violations: set,
    operations: list[Operation],
    tables: dict[str, TableInfo | None],
    applied: set[int],
) -> set[int]:
    """Indexes of applied operations responsible for ``violations``.

    A dangling reference is blamed on the insert or update that wrote the
    child row, or failing that on the delete or update that removed the
    referenced parent row.
    """
    culprits = set()
    for fk, child_key, child_values in violations:
        writers = {
            i for i in applied
            if child_key is not None
            and _writes_reference(operations[i], tables.get(fk.child), fk)
            and _same_key(operations[i].key, child_key)
        }
        if writers:
            culprits |= writers
            continue

        info = tables.get(fk.parent)
        if info is None:
            continue
        positions = [info.columns.index(c) for c in fk.parent_columns if c in info.columns]
        if len(positions) != len(fk.parent_columns):
            continue
        for i in applied:
            op = operations[i]
            if op.table != fk.parent or op.kind is OpKind.INSERT:
                continue
            old = [op.old_values[p] for p in positions]
            if all(same_value(o, v) for o, v in zip(old, child_values)):
                culprits.add(i)
    return culprits


def _writes_reference(op: Operation, info: TableInfo | None, fk: ForeignKey) -> bool:
    """True if ``op`` inserts a child row or updates its referencing columns."""
    if info is None or op.table != fk.child or op.kind is OpKind.DELETE:
        return False
    if op.kind is OpKind.INSERT:
        return True
    return any(
        op.new_values[info.columns.index(c)] is not UNDEFINED
        for c in fk.child_columns
        if c in info.columns
    )


def _same_key(a: tuple, b: tuple) -> bool:
    return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
