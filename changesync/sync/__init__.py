"""Sync infrastructure for changeset graphs.

Pushes local changesets to a remote record store and fetches changesets
written by other devices using a resumable change cursor.
"""

from .http_remote import HttpRemoteStore
from .remote import ChangePage, RemoteDatabase, RemoteRecord, RemoteStore, SqliteRemoteStore
from .sync_client import SyncClient, SyncResult, SyncStatus

__all__ = [
    "ChangePage",
    "HttpRemoteStore",
    "RemoteDatabase",
    "RemoteRecord",
    "RemoteStore",
    "SqliteRemoteStore",
    "SyncClient",
    "SyncResult",
    "SyncStatus",
]
