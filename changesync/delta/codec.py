"""Binary changeset codec.

Reads and writes the SQLite session extension changeset format: a stream
of table headers, each followed by the row changes recorded against that
table.

    table header:  'T' varint(nCol) pk-flags[nCol] name '\\0'
    change:        op indirect record [record]
    record:        one value per column

Values are tagged with a type byte (0 undefined, 1 integer, 2 real,
3 text, 4 blob, 5 NULL). Integers and reals are 8 bytes big-endian,
text and blobs are varint length-prefixed.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Iterable, Iterator

from ..errors import CodecError

logger = logging.getLogger(__name__)

TABLE_MARKER = 0x54  # 'T'
PATCHSET_MARKER = 0x50  # 'P'

TYPE_UNDEFINED = 0x00
TYPE_INTEGER = 0x01
TYPE_FLOAT = 0x02
TYPE_TEXT = 0x03
TYPE_BLOB = 0x04
TYPE_NULL = 0x05


class _Undefined:
    """Marker for a column value that a change does not carry."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Undefined, ())


UNDEFINED = _Undefined()


class OpKind(Enum):
    """Row operation kinds, valued with the SQLite opcodes."""

    INSERT = 18
    UPDATE = 23
    DELETE = 9


@dataclass(frozen=True)
class Operation:
    """A single row-level change.

    ``old_values`` is empty for inserts and ``new_values`` is empty for
    deletes. Updates carry the primary key and the prior value of every
    modified column in ``old_values``; columns they do not touch are
    ``UNDEFINED``.
    """

    kind: OpKind
    table: str
    pk: tuple[bool, ...]
    old_values: tuple[Any, ...] = ()
    new_values: tuple[Any, ...] = ()
    indirect: bool = False

    @property
    def column_count(self) -> int:
        return len(self.pk)

    @property
    def key(self) -> tuple[Any, ...]:
        """Primary key values identifying the row."""
        values = self.new_values if self.kind is OpKind.INSERT else self.old_values
        return tuple(v for v, is_pk in zip(values, self.pk) if is_pk)


# ==================== Varints ====================


def put_varint(value: int) -> bytes:
    """Encode an unsigned integer as a SQLite varint (1-9 bytes)."""
    if value < 0:
        raise CodecError(f"Cannot encode negative varint {value}")
    if value <= 0x7F:
        return bytes([value])
    if value >> 56:
        out = bytearray(9)
        out[8] = value & 0xFF
        value >>= 8
        for i in range(7, -1, -1):
            out[i] = (value & 0x7F) | 0x80
            value >>= 7
        return bytes(out)
    groups = []
    while value:
        groups.append(value & 0x7F)
        value >>= 7
    groups.reverse()
    return bytes([g | 0x80 for g in groups[:-1]] + [groups[-1]])


def get_varint(buf: bytes, pos: int) -> tuple[int, int]:
    """Decode a SQLite varint at ``pos``.

    Returns:
        Tuple of (value, position after the varint).
    """
    value = 0
    for i in range(9):
        if pos + i >= len(buf):
            raise CodecError("Truncated varint")
        byte = buf[pos + i]
        if i == 8:
            return (value << 8) | byte, pos + 9
        value = (value << 7) | (byte & 0x7F)
        if not byte & 0x80:
            return value, pos + i + 1
    raise CodecError("Malformed varint")  # pragma: no cover


# ==================== Values ====================


def encode_value(value: Any) -> bytes:
    """Encode one column value with its type tag."""
    if value is UNDEFINED:
        return bytes([TYPE_UNDEFINED])
    if value is None:
        return bytes([TYPE_NULL])
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        return bytes([TYPE_INTEGER]) + struct.pack(">q", value)
    if isinstance(value, float):
        return bytes([TYPE_FLOAT]) + struct.pack(">d", value)
    if isinstance(value, str):
        raw = value.encode("utf-8")
        return bytes([TYPE_TEXT]) + put_varint(len(raw)) + raw
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        return bytes([TYPE_BLOB]) + put_varint(len(raw)) + raw
    raise CodecError(f"Unsupported column value type: {type(value).__name__}")


def decode_value(buf: bytes, pos: int) -> tuple[Any, int]:
    """Decode one tagged column value at ``pos``."""
    if pos >= len(buf):
        raise CodecError("Truncated record")
    tag = buf[pos]
    pos += 1
    if tag == TYPE_UNDEFINED:
        return UNDEFINED, pos
    if tag == TYPE_NULL:
        return None, pos
    if tag in (TYPE_INTEGER, TYPE_FLOAT):
        if pos + 8 > len(buf):
            raise CodecError("Truncated numeric value")
        fmt = ">q" if tag == TYPE_INTEGER else ">d"
        return struct.unpack_from(fmt, buf, pos)[0], pos + 8
    if tag in (TYPE_TEXT, TYPE_BLOB):
        length, pos = get_varint(buf, pos)
        if pos + length > len(buf):
            raise CodecError("Truncated text or blob value")
        raw = bytes(buf[pos:pos + length])
        if tag == TYPE_BLOB:
            return raw, pos + length
        try:
            return raw.decode("utf-8"), pos + length
        except UnicodeDecodeError as e:
            raise CodecError(f"Invalid UTF-8 in text value: {e}") from e
    raise CodecError(f"Unknown value type 0x{tag:02x}")


def same_value(a: Any, b: Any) -> bool:
    """Compare two column values the way SQLite compares stored values.

    ``1`` and ``1.0`` differ, as do ``"a"`` and ``b"a"``.
    """
    if a is UNDEFINED or b is UNDEFINED:
        return a is b
    if a is None or b is None:
        return a is b
    if isinstance(a, (bytes, bytearray, memoryview)) and isinstance(
        b, (bytes, bytearray, memoryview)
    ):
        return bytes(a) == bytes(b)
    return type(a) is type(b) and a == b


# ==================== Changesets ====================


def _encode_table_header(op: Operation) -> bytes:
    return (
        bytes([TABLE_MARKER])
        + put_varint(op.column_count)
        + bytes(1 if is_pk else 0 for is_pk in op.pk)
        + op.table.encode("utf-8")
        + b"\x00"
    )


def _encode_record(values: tuple[Any, ...]) -> bytes:
    return b"".join(encode_value(v) for v in values)


def encode(operations: Iterable[Operation]) -> "Delta":
    """Serialize operations into a changeset.

    A table header is written whenever the table (or its shape) changes
    from the previous operation.
    """
    out = bytearray()
    current: tuple[str, tuple[bool, ...]] | None = None

    for op in operations:
        if (op.table, op.pk) != current:
            out += _encode_table_header(op)
            current = (op.table, op.pk)

        out.append(op.kind.value)
        out.append(1 if op.indirect else 0)

        if op.kind is OpKind.INSERT:
            _check_width(op, op.new_values)
            out += _encode_record(op.new_values)
        elif op.kind is OpKind.DELETE:
            _check_width(op, op.old_values)
            out += _encode_record(op.old_values)
        else:
            _check_width(op, op.old_values)
            _check_width(op, op.new_values)
            out += _encode_record(op.old_values)
            out += _encode_record(op.new_values)

    return Delta(bytes(out))


def _check_width(op: Operation, values: tuple[Any, ...]) -> None:
    if len(values) != op.column_count:
        raise CodecError(
            f"{op.kind.name} on {op.table} has {len(values)} values "
            f"for {op.column_count} columns"
        )


def iter_operations(delta: "Delta | bytes") -> Iterator[Operation]:
    """Lazily parse a changeset into operations.

    Raises:
        CodecError: If the bytes are not a well-formed changeset.
    """
    buf = delta.data if isinstance(delta, Delta) else bytes(delta)
    pos = 0
    table: str | None = None
    pk: tuple[bool, ...] = ()

    while pos < len(buf):
        marker = buf[pos]

        if marker == TABLE_MARKER:
            ncol, pos = get_varint(buf, pos + 1)
            if ncol == 0 or pos + ncol > len(buf):
                raise CodecError("Malformed table header")
            pk = tuple(bool(b) for b in buf[pos:pos + ncol])
            pos += ncol
            end = buf.find(b"\x00", pos)
            if end < 0:
                raise CodecError("Unterminated table name")
            try:
                table = buf[pos:end].decode("utf-8")
            except UnicodeDecodeError as e:
                raise CodecError(f"Invalid table name: {e}") from e
            pos = end + 1
            continue

        if marker == PATCHSET_MARKER:
            raise CodecError("Patchsets are not supported")

        try:
            kind = OpKind(marker)
        except ValueError:
            raise CodecError(f"Unknown change marker 0x{marker:02x} at offset {pos}")

        if table is None:
            raise CodecError("Change before any table header")
        if pos + 1 >= len(buf):
            raise CodecError("Truncated change")
        indirect = bool(buf[pos + 1])
        pos += 2

        old_values: tuple[Any, ...] = ()
        new_values: tuple[Any, ...] = ()
        if kind in (OpKind.DELETE, OpKind.UPDATE):
            old_values, pos = _decode_record(buf, pos, len(pk))
        if kind in (OpKind.INSERT, OpKind.UPDATE):
            new_values, pos = _decode_record(buf, pos, len(pk))

        yield Operation(
            kind=kind,
            table=table,
            pk=pk,
            old_values=old_values,
            new_values=new_values,
            indirect=indirect,
        )


def _decode_record(buf: bytes, pos: int, ncol: int) -> tuple[tuple[Any, ...], int]:
    values = []
    for _ in range(ncol):
        value, pos = decode_value(buf, pos)
        values.append(value)
    return tuple(values), pos


def decode(delta: "Delta | bytes") -> list[Operation]:
    """Parse a changeset into an ordered list of operations."""
    return list(iter_operations(delta))


@dataclass(frozen=True)
class Delta:
    """An owned, immutable changeset buffer."""

    data: bytes = field(default=b"")

    def __post_init__(self) -> None:
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

    def __bool__(self) -> bool:
        return bool(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"Delta({len(self.data)} bytes)"

    @cached_property
    def operations(self) -> list[Operation]:
        """Decoded operations, parsed on first access."""
        return decode(self.data)

    def validate(self) -> "Delta":
        """Decode fully, raising CodecError if malformed."""
        for _ in iter_operations(self.data):
            pass
        return self

    @classmethod
    def empty(cls) -> "Delta":
        return cls(b"")
