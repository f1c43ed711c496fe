"""Changeset: a node in the commit graph."""

import base64
import binascii
import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..delta import Delta
from ..errors import CodecError, IntegrityError


def new_id() -> str:
    """Generate a globally unique changeset id."""
    return str(uuid.uuid4())


@dataclass
class Changeset:
    """A single node in the commit graph.

    ``parent_delta`` transforms the state at ``parent_id`` into the state
    at this node. Merge nodes also carry ``merge_id`` and the delta from
    that second parent.
    """

    id: str
    parent_id: str | None
    parent_delta: Delta
    merge_id: str | None = None
    merge_delta: Delta | None = None
    pushed: bool = False
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        parent_id: str | None,
        parent_delta: Delta,
        merge_id: str | None = None,
        merge_delta: Delta | None = None,
        meta: dict[str, Any] | None = None,
    ) -> "Changeset":
        """Create an unpushed changeset with a fresh id."""
        return cls(
            id=new_id(),
            parent_id=parent_id,
            parent_delta=parent_delta,
            merge_id=merge_id,
            merge_delta=merge_delta,
            pushed=False,
            meta=meta or {},
        )

    @property
    def is_merge(self) -> bool:
        return self.merge_id is not None

    @property
    def parents(self) -> tuple[str, ...]:
        return tuple(p for p in (self.parent_id, self.merge_id) if p is not None)

    def delta_from(self, ancestor_id: str | None) -> Delta:
        """Delta to apply when moving to this node from ``ancestor_id``."""
        if ancestor_id == self.parent_id:
            return self.parent_delta
        if self.merge_id is not None and ancestor_id == self.merge_id:
            return self.merge_delta
        raise IntegrityError(f"{ancestor_id} is not a parent of changeset {self.id}")

    def validate(self) -> None:
        """Check the node's structural invariants.

        Raises:
            IntegrityError: If the node is malformed.
        """
        if (self.merge_id is None) != (self.merge_delta is None):
            raise IntegrityError(
                f"Changeset {self.id} has a second parent without its delta"
            )
        if not self.is_merge and not self.parent_delta:
            raise IntegrityError(f"Changeset {self.id} has an empty delta")
        if self.id in self.parents:
            raise IntegrityError(f"Changeset {self.id} references itself")
        if self.is_merge and self.parent_id == self.merge_id:
            raise IntegrityError(f"Changeset {self.id} merges a node with itself")

    # ==================== Serialization ====================

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "parent_delta_size": len(self.parent_delta),
            "merge_id": self.merge_id,
            "merge_delta_size": len(self.merge_delta) if self.merge_delta is not None else None,
            "pushed": self.pushed,
            "meta": self.meta,
        }

    def to_record(self) -> dict[str, Any]:
        """Fields stored in the remote record keyed by ``id``."""
        return {
            "parent_id": self.parent_id,
            "parent_delta": _b64encode(self.parent_delta),
            "merge_id": self.merge_id,
            "merge_delta": (
                _b64encode(self.merge_delta) if self.merge_delta is not None else None
            ),
            "meta": self.meta,
        }

    @classmethod
    def from_record(cls, record_id: str, fields: dict[str, Any]) -> "Changeset":
        """Decode a remote record. Remote nodes are always pushed.

        Raises:
            CodecError: If the record is missing fields or carries a
                malformed delta.
        """
        try:
            merge_delta = fields.get("merge_delta")
            changeset = cls(
                id=record_id,
                parent_id=fields.get("parent_id"),
                parent_delta=_b64decode(fields["parent_delta"]).validate(),
                merge_id=fields.get("merge_id"),
                merge_delta=(
                    _b64decode(merge_delta).validate() if merge_delta is not None else None
                ),
                pushed=True,
                meta=fields.get("meta") or {},
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise CodecError(f"Malformed changeset record {record_id}: {e}") from e

        try:
            changeset.validate()
        except IntegrityError as e:
            raise CodecError(str(e)) from e
        return changeset

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Changeset":
        """Build from a ``changeset`` table row."""
        return cls(
            id=row["id"],
            parent_id=row["parent_id"],
            parent_delta=Delta(row["parent_delta"]),
            merge_id=row["merge_id"],
            merge_delta=Delta(row["merge_delta"]) if row["merge_delta"] is not None else None,
            pushed=bool(row["pushed"]),
            meta=json.loads(row["meta"]),
        )


def _b64encode(delta: Delta) -> str:
    return base64.b64encode(delta.data).decode("ascii")


def _b64decode(text: str) -> Delta:
    return Delta(base64.b64decode(text, validate=True))
