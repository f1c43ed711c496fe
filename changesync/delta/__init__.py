"""Delta codec: capture, encode/decode, apply and combine row changesets.

Deltas use the SQLite session extension changeset format, so they can be
exchanged with any tool that understands it.
"""

from .apply import ApplyReport, ConflictReason, apply
from .codec import (
    UNDEFINED,
    Delta,
    Operation,
    OpKind,
    decode,
    encode,
    iter_operations,
)
from .combine import combine
from .session import Session

__all__ = [
    "UNDEFINED",
    "ApplyReport",
    "ConflictReason",
    "Delta",
    "Operation",
    "OpKind",
    "Session",
    "apply",
    "combine",
    "decode",
    "encode",
    "iter_operations",
]
