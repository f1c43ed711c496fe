"""Sync client: push and fetch changesets against a remote store.

Remote I/O happens outside any local transaction. Each step reads a
snapshot, talks to the remote, then records the outcome in a separate
write, so an interrupted push or fetch can simply be run again.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import ChangesyncError, CodecError, RemoteConflict, RemoteError
from ..graph import Changeset, GraphStore, MergeEngine
from .remote import RemoteRecord, RemoteStore

logger = logging.getLogger(__name__)

CURSOR_KEY = "remote_cursor"


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    changesets_pushed: int = 0
    changesets_fetched: int = 0
    merges_created: int = 0
    pulled: bool = False
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Synchronizes a GraphStore with a RemoteStore.

    Supports:
    - Push: send unpushed changesets to the remote
    - Fetch: page through remote changes and add unknown changesets
    - Sync: fetch, merge divergent branches, pull, push
    """

    def __init__(
        self,
        store: GraphStore,
        remote: RemoteStore,
        page_size: int = 100,
        cursor_key: str = CURSOR_KEY,
    ):
        """Initialize the sync client.

        Args:
            store: Local commit graph.
            remote: Remote record store.
            page_size: Maximum records requested per change page.
            cursor_key: Name under which the change cursor is saved.
        """
        self.store = store
        self.remote = remote
        self.page_size = page_size
        self.cursor_key = cursor_key
        self.merger = MergeEngine(store)
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    @property
    def cursor(self) -> str | None:
        """The saved remote change cursor."""
        return self.store.get_state(self.cursor_key)

    def reset_cursor(self) -> None:
        """Forget the saved cursor so the next fetch starts over."""
        self.store.set_state(self.cursor_key, None)

    async def push(self) -> list[Changeset]:
        """Send every unpushed changeset to the remote.

        A changeset the remote already holds is counted as pushed.

        Returns:
            The changesets now marked pushed.

        Raises:
            RemoteError: If a save fails for any other reason. Changesets
                handled before the failure stay marked pushed.
        """
        changesets = self.store.unpushed()
        pushed = []

        for changeset in changesets:
            record = RemoteRecord(changeset.id, changeset.to_record())
            try:
                await self.remote.save(record)
            except RemoteConflict as e:
                # Saved on an earlier run that failed before the local flag
                # was updated.
                logger.warning(f"Changeset {changeset.id} has already been pushed: {e}")

            self.store.mark_pushed(changeset.id)
            changeset.pushed = True
            pushed.append(changeset)
            logger.debug(f"Pushed changeset {changeset.id}")

        logger.info(f"Pushed {len(pushed)} changesets")
        return pushed

    async def fetch(self) -> list[Changeset]:
        """Add changesets the remote has and the local graph lacks.

        Each page's new changesets are staged together with the updated
        cursor, so an interrupted fetch resumes after the last finished
        page. Staged changesets enter the graph once their parents are
        known.

        Returns:
            The changesets inserted into the graph.

        Raises:
            RemoteError: If a page cannot be fetched.
        """
        cursor = self.cursor
        staged = 0

        while True:
            page = await self.remote.enumerate_changes(cursor, limit=self.page_size)

            for record_id, error in page.failures.items():
                logger.error(f"Remote failed to return record {record_id}: {error}")

            candidates = []
            for record in page.records:
                try:
                    candidates.append(Changeset.from_record(record.record_id, record.fields))
                except CodecError as e:
                    logger.error(f"Skipping undecodable record {record.record_id}: {e}")

            staged += self.store.stage(candidates, {self.cursor_key: page.cursor})
            cursor = page.cursor

            if not page.more_coming:
                break

        inserted = self.store.promote_staged()
        logger.info(f"Fetched {len(inserted)} changesets ({staged} new records)")
        return inserted

    async def sync(self) -> SyncResult:
        """Fetch, consolidate branches, pull, then push.

        Returns:
            SyncResult with counts, or the failure status.
        """
        try:
            fetched = await self.fetch()
            merges = self.merger.merge_all()
            pulled = self.store.pull()
            pushed = await self.push()
        except RemoteError as e:
            self._consecutive_failures += 1
            return SyncResult(
                status=SyncStatus.OFFLINE if e.status_code is None else SyncStatus.FAILED,
                error=str(e),
                timestamp=datetime.now(),
            )
        except ChangesyncError as e:
            self._consecutive_failures += 1
            logger.error(f"Sync failed: {e}")
            return SyncResult(status=SyncStatus.FAILED, error=str(e), timestamp=datetime.now())

        self._consecutive_failures = 0
        self._last_sync = datetime.now()
        return SyncResult(
            status=SyncStatus.SUCCESS,
            changesets_pushed=len(pushed),
            changesets_fetched=len(fetched),
            merges_created=len(merges),
            pulled=pulled,
            timestamp=self._last_sync,
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            result = await self.sync()
            logger.info(
                f"Sync: {result.status.value}, "
                f"fetched={result.changesets_fetched}, "
                f"merged={result.merges_created}, "
                f"pushed={result.changesets_pushed}"
            )

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        stats = self.store.get_stats()

        return {
            "zone": self.remote.zone,
            "cursor": self.cursor,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_changesets": stats["unpushed_changesets"],
            "staged_changesets": stats["staged_changesets"],
            "total_changesets": stats["total_changesets"],
        }
