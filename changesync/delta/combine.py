"""Combine several changesets into one (changegroup semantics)."""

import logging
from dataclasses import replace
from typing import Any, Iterable

from ..errors import CodecError
from .codec import UNDEFINED, Delta, Operation, OpKind, encode, iter_operations, same_value

logger = logging.getLogger(__name__)


class _TableGroup:
    def __init__(self, name: str, pk: tuple[bool, ...]):
        self.name = name
        self.pk = pk
        self.changes: dict[tuple[Any, ...], Operation] = {}


def combine(deltas: Iterable[Delta | bytes]) -> Delta:
    """Collapse deltas, oldest first, into a single equivalent delta.

    Changes to the same row are merged:

    - INSERT then UPDATE: INSERT of the updated row
    - INSERT then DELETE: nothing
    - UPDATE then UPDATE: one UPDATE, dropped if it nets to no change
    - UPDATE then DELETE: DELETE of the original row
    - DELETE then INSERT: UPDATE, or nothing if the rows are identical

    Any other sequence is inconsistent and keeps the earlier change.

    Raises:
        CodecError: If a delta is malformed or two deltas disagree on a
            table's shape.
    """
    groups: dict[str, _TableGroup] = {}

    for delta in deltas:
        for op in iter_operations(delta):
            group = groups.get(op.table)
            if group is None:
                group = groups[op.table] = _TableGroup(op.table, op.pk)
            elif group.pk != op.pk:
                raise CodecError(
                    f"Table {op.table} has inconsistent shape across deltas"
                )

            key = op.key
            existing = group.changes.get(key)
            if existing is None:
                group.changes[key] = op
                continue

            merged = merge_operations(existing, op)
            if merged is None:
                del group.changes[key]
            else:
                group.changes[key] = merged

    return encode(op for group in groups.values() for op in group.changes.values())


def merge_operations(first: Operation, second: Operation) -> Operation | None:
    """Merge two consecutive changes to the same row.

    Returns the combined change, or None when they cancel out.
    """
    indirect = first.indirect and second.indirect

    if first.kind is OpKind.INSERT:
        if second.kind is OpKind.UPDATE:
            values = tuple(
                old if new is UNDEFINED else new
                for old, new in zip(first.new_values, second.new_values)
            )
            return replace(first, new_values=values, indirect=indirect)
        if second.kind is OpKind.DELETE:
            return None
        return first

    if first.kind is OpKind.UPDATE:
        if second.kind is OpKind.UPDATE:
            before = tuple(
                a if a is not UNDEFINED else b
                for a, b in zip(first.old_values, second.old_values)
            )
            after = tuple(
                b if b is not UNDEFINED else a
                for a, b in zip(first.new_values, second.new_values)
            )
            return _make_update(first, before, after, indirect)
        if second.kind is OpKind.DELETE:
            original = tuple(
                a if a is not UNDEFINED else b
                for a, b in zip(first.old_values, second.old_values)
            )
            return Operation(
                OpKind.DELETE, first.table, first.pk, old_values=original, indirect=indirect
            )
        return first

    # first is a DELETE
    if second.kind is OpKind.INSERT:
        return _make_update(first, first.old_values, second.new_values, indirect)
    return first


def _make_update(
    template: Operation,
    before: tuple[Any, ...],
    after: tuple[Any, ...],
    indirect: bool,
) -> Operation | None:
    old_values = []
    new_values = []
    changed = False
    for old, new, is_pk in zip(before, after, template.pk):
        if is_pk:
            old_values.append(old)
            new_values.append(UNDEFINED)
        elif new is UNDEFINED or same_value(old, new):
            old_values.append(UNDEFINED)
            new_values.append(UNDEFINED)
        else:
            old_values.append(old)
            new_values.append(new)
            changed = True

    if not changed:
        return None
    return Operation(
        OpKind.UPDATE,
        template.table,
        template.pk,
        old_values=tuple(old_values),
        new_values=tuple(new_values),
        indirect=indirect,
    )
