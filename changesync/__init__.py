"""changesync: changeset-based sync for SQLite databases.

Local writes are captured as binary deltas and recorded as nodes in a
commit graph. Devices exchange nodes through a remote record store,
merge divergent branches, and replay deltas to converge.
"""

from .config import Config, load_config
from .delta import ApplyReport, Delta, Session, apply, combine
from .errors import (
    ChangesyncError,
    CodecError,
    IntegrityError,
    NotFoundError,
    RemoteConflict,
    RemoteError,
)
from .graph import Changeset, GraphStore, MergeEngine
from .sync import SyncClient, SyncResult, SyncStatus

__version__ = "0.1.0"

__all__ = [
    "ApplyReport",
    "Changeset",
    "ChangesyncError",
    "CodecError",
    "Config",
    "Delta",
    "GraphStore",
    "IntegrityError",
    "MergeEngine",
    "NotFoundError",
    "RemoteConflict",
    "RemoteError",
    "Session",
    "SyncClient",
    "SyncResult",
    "SyncStatus",
    "apply",
    "combine",
    "load_config",
]
