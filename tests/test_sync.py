"""Tests for the sync infrastructure."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from changesync.errors import RemoteConflict, RemoteError
from changesync.sync import (
    ChangePage,
    HttpRemoteStore,
    RemoteDatabase,
    RemoteRecord,
    RemoteStore,
    SqliteRemoteStore,
    SyncClient,
    SyncStatus,
)

from conftest import insert_player, players, set_score


@pytest.fixture
def remote_db():
    """Create an in-memory remote database."""
    database = RemoteDatabase(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def remote(remote_db):
    return SqliteRemoteStore(remote_db)


class FlakyRemote(SqliteRemoteStore):
    """Fails every change page after the first ``pages`` succeed."""

    def __init__(self, database, pages: int):
        super().__init__(database)
        self.pages = pages
        self.calls: list[str | None] = []

    async def enumerate_changes(self, since, limit=100):
        self.calls.append(since)
        if len(self.calls) > self.pages:
            raise RemoteError("connection reset")
        return await super().enumerate_changes(since, limit)


class TestRemoteDatabase:
    """Tests for the SQLite remote record store."""

    def test_save_is_idempotent(self, remote_db):
        """Saving identical content twice stores it once."""
        record = RemoteRecord("r1", {"value": 1})

        assert remote_db.save("zone", record) is True
        assert remote_db.save("zone", RemoteRecord("r1", {"value": 1})) is False

    def test_save_conflict(self, remote_db):
        """Different content under one id raises RemoteConflict."""
        remote_db.save("zone", RemoteRecord("r1", {"value": 1}))

        with pytest.raises(RemoteConflict) as exc_info:
            remote_db.save("zone", RemoteRecord("r1", {"value": 2}))

        assert exc_info.value.record_id == "r1"
        assert exc_info.value.status_code == 409

    def test_change_pages(self, remote_db):
        """Changes page forward from a cursor."""
        for i in range(3):
            remote_db.save("zone", RemoteRecord(f"r{i}", {"value": i}))

        first = remote_db.changes("zone", None, limit=2)
        second = remote_db.changes("zone", first.cursor, limit=2)
        third = remote_db.changes("zone", second.cursor, limit=2)

        assert [r.record_id for r in first.records] == ["r0", "r1"]
        assert first.more_coming is True
        assert [r.record_id for r in second.records] == ["r2"]
        assert second.more_coming is False
        assert third.records == []
        assert third.cursor == second.cursor

    def test_zones_are_separate(self, remote_db):
        """Records in one zone do not show in another."""
        remote_db.save("a", RemoteRecord("r1", {"value": 1}))
        remote_db.save("b", RemoteRecord("r1", {"value": 2}))

        assert remote_db.changes("a", None).records[0].fields == {"value": 1}
        assert remote_db.changes("b", None).records[0].fields == {"value": 2}

    def test_invalid_arguments(self, remote_db):
        """Bad cursors and limits raise RemoteError."""
        with pytest.raises(RemoteError) as exc_info:
            remote_db.changes("zone", "not-a-cursor")
        assert exc_info.value.status_code == 400

        with pytest.raises(RemoteError):
            remote_db.changes("zone", None, limit=0)

    def test_delete_zone_keeps_cursors_valid(self, remote_db):
        """Cursors still work after a zone is deleted."""
        remote_db.save("zone", RemoteRecord("r1", {"value": 1}))
        cursor = remote_db.changes("zone", None).cursor

        assert remote_db.delete_zone("zone") == 1
        remote_db.save("zone", RemoteRecord("r2", {"value": 2}))

        page = remote_db.changes("zone", cursor)
        assert [r.record_id for r in page.records] == ["r2"]

    def test_corrupt_record_reported(self, remote_db):
        """Unreadable records are reported as failures."""
        remote_db.save("zone", RemoteRecord("r1", {"value": 1}))
        remote_db._conn.execute("UPDATE remote_record SET fields = '{broken'")

        page = remote_db.changes("zone", None)

        assert page.records == []
        assert "r1" in page.failures
        assert page.cursor == "1"

    def test_stats(self, remote_db):
        """Stats count records per zone."""
        remote_db.save("zone", RemoteRecord("r1", {"value": 1}))

        stats = remote_db.get_stats()

        assert stats["zones"] == {"zone": 1}
        assert stats["change_seq"] == 1


class TestPush:
    """Tests for SyncClient.push."""

    @pytest.mark.asyncio
    async def test_push_unpushed(self, store, remote, remote_db):
        """Push uploads every unpushed changeset once."""
        store.commit(insert_player("a", "alice", 10))
        store.commit(set_score("a", 20))
        client = SyncClient(store, remote)

        pushed = await client.push()

        assert [c.id for c in pushed] == [c.id for c in store.log()]
        assert store.unpushed() == []
        page = remote_db.changes("changesets", None)
        assert [r.record_id for r in page.records] == [c.id for c in pushed]
        assert await client.push() == []

    @pytest.mark.asyncio
    async def test_push_record_fields(self, store, remote, remote_db):
        """Pushed records carry the changeset's fields."""
        store.commit(insert_player("a", "alice", 10), meta={"message": "hi"})

        await SyncClient(store, remote).push()

        record = remote_db.changes("changesets", None).records[0]
        assert record.fields == store.get(record.record_id).to_record()

    @pytest.mark.asyncio
    async def test_conflict_counts_as_pushed(self, store):
        """A record the remote already has is marked pushed."""
        store.commit(insert_player("a", "alice", 10))
        remote = MagicMock(spec=RemoteStore)
        remote.save = AsyncMock(side_effect=RemoteConflict("already there"))

        pushed = await SyncClient(store, remote).push()

        assert len(pushed) == 1
        assert store.unpushed() == []

    @pytest.mark.asyncio
    async def test_error_stops_push(self, store):
        """A remote error stops the push and keeps the rest pending."""
        store.commit(insert_player("a", "alice", 10))
        store.commit(insert_player("b", "bob", 5))
        first, second = store.log()
        remote = MagicMock(spec=RemoteStore)
        remote.save = AsyncMock(side_effect=[None, RemoteError("offline")])

        with pytest.raises(RemoteError):
            await SyncClient(store, remote).push()

        assert [c.id for c in store.unpushed()] == [second.id]

    @pytest.mark.asyncio
    async def test_rerun_after_partial_push(self, store, remote, remote_db):
        """A push that failed after the remote write is completed on rerun."""
        store.commit(insert_player("a", "alice", 10))
        changeset = store.log()[0]
        remote_db.save("changesets", RemoteRecord(changeset.id, changeset.to_record()))

        pushed = await SyncClient(store, remote).push()

        assert [c.id for c in pushed] == [changeset.id]
        assert remote_db.get_stats()["change_seq"] == 1


class TestFetch:
    """Tests for SyncClient.fetch."""

    @pytest.mark.asyncio
    async def test_fetch_adds_remote_changesets(self, store, other_store, remote):
        """Fetched changesets join the graph without moving head."""
        store.commit(insert_player("a", "alice", 10))
        store.commit(set_score("a", 20))
        await SyncClient(store, remote).push()

        client = SyncClient(other_store, remote)
        fetched = await client.fetch()

        assert [c.id for c in fetched] == [c.id for c in store.log()]
        assert other_store.head() is None
        assert other_store.unpushed() == []
        assert client.cursor == "2"

        assert other_store.pull() is True
        assert players(other_store) == players(store)

    @pytest.mark.asyncio
    async def test_fetch_skips_known(self, store, remote):
        """Changesets already in the graph are not fetched again."""
        store.commit(insert_player("a", "alice", 10))
        client = SyncClient(store, remote)
        await client.push()

        assert await client.fetch() == []

    @pytest.mark.asyncio
    async def test_fetch_pages(self, store, other_store, remote):
        """Fetch follows more_coming across pages."""
        for i in range(5):
            store.commit(insert_player(f"p{i}", "name", i))
        await SyncClient(store, remote).push()

        fetched = await SyncClient(other_store, remote, page_size=2).fetch()

        assert len(fetched) == 5

    @pytest.mark.asyncio
    async def test_fetch_resumes_after_failure(self, store, other_store, remote_db):
        """A failed fetch resumes after the last finished page."""
        for i in range(3):
            store.commit(insert_player(f"p{i}", "name", i))
        await SyncClient(store, SqliteRemoteStore(remote_db)).push()

        flaky = FlakyRemote(remote_db, pages=1)
        with pytest.raises(RemoteError):
            await SyncClient(other_store, flaky, page_size=1).fetch()

        assert other_store.get_state("remote_cursor") == "1"
        assert other_store.staged_count() == 1
        assert other_store.log() == []

        resumed = FlakyRemote(remote_db, pages=10)
        fetched = await SyncClient(other_store, resumed, page_size=1).fetch()

        assert resumed.calls[0] == "1"
        assert len(fetched) == 3
        assert other_store.staged_count() == 0

    @pytest.mark.asyncio
    async def test_undecodable_records_skipped(self, store, remote, remote_db):
        """Records that do not decode are skipped."""
        remote_db.save("changesets", RemoteRecord("bad", {"parent_delta": "!!not base64"}))
        client = SyncClient(store, remote)

        assert await client.fetch() == []
        assert client.cursor == "1"
        assert store.staged_count() == 0

    @pytest.mark.asyncio
    async def test_orphans_wait_for_parents(self, store, other_store, remote, remote_db):
        """Children stay staged until their parents are fetched."""
        store.commit(insert_player("a", "alice", 10))
        store.commit(set_score("a", 20))
        parent, child = store.log()
        remote_db.save("changesets", RemoteRecord(child.id, child.to_record()))
        client = SyncClient(other_store, remote)

        assert await client.fetch() == []
        assert other_store.staged_count() == 1

        remote_db.save("changesets", RemoteRecord(parent.id, parent.to_record()))
        fetched = await client.fetch()

        assert [c.id for c in fetched] == [parent.id, child.id]

    @pytest.mark.asyncio
    async def test_reset_cursor(self, store, remote):
        """reset_cursor forgets the saved position."""
        client = SyncClient(store, remote)
        store.set_state(client.cursor_key, "5")

        client.reset_cursor()

        assert client.cursor is None


class TestSync:
    """Tests for the full sync cycle."""

    @pytest.mark.asyncio
    async def test_two_devices(self, store, other_store, remote):
        """Two devices converge through repeated syncs."""
        device_a = SyncClient(store, remote)
        device_b = SyncClient(other_store, remote)

        store.commit(insert_player("a", "alice", 10))
        result = await device_a.sync()
        assert result.status == SyncStatus.SUCCESS
        assert result.changesets_pushed == 1

        result = await device_b.sync()
        assert result.changesets_fetched == 1
        assert result.pulled is True
        assert players(other_store) == [("a", "alice", 10)]

        store.commit(set_score("a", 20))
        other_store.commit(insert_player("b", "bob", 5))
        await device_a.sync()

        result = await device_b.sync()
        assert result.changesets_fetched == 1
        assert result.merges_created == 1
        assert result.pulled is True
        assert result.changesets_pushed == 2

        result = await device_a.sync()
        assert result.changesets_fetched == 2
        assert result.merges_created == 0
        assert result.pulled is True

        assert store.head() == other_store.head()
        assert players(store) == players(other_store) == [
            ("a", "alice", 20),
            ("b", "bob", 5),
        ]
        assert device_a.last_sync is not None

    @pytest.mark.asyncio
    async def test_offline(self, store):
        """An unreachable remote reports OFFLINE."""
        remote = MagicMock(spec=RemoteStore)
        remote.enumerate_changes = AsyncMock(side_effect=RemoteError("unreachable"))
        client = SyncClient(store, remote)

        result = await client.sync()

        assert result.status == SyncStatus.OFFLINE
        assert result.error == "unreachable"
        assert client.last_sync is None

    @pytest.mark.asyncio
    async def test_remote_failure(self, store):
        """Other remote errors report FAILED."""
        remote = MagicMock(spec=RemoteStore)
        remote.zone = "changesets"
        remote.enumerate_changes = AsyncMock(
            side_effect=RemoteError("HTTP 500", status_code=500)
        )
        client = SyncClient(store, remote)

        result = await client.sync()

        assert result.status == SyncStatus.FAILED
        assert client.get_sync_status()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_sync_status(self, store, remote):
        """Status reports zone, pending count and cursor."""
        store.commit(insert_player("a", "alice", 10))
        client = SyncClient(store, remote)

        status = client.get_sync_status()

        assert status["zone"] == "changesets"
        assert status["pending_changesets"] == 1
        assert status["cursor"] is None
        assert status["last_sync"] is None

    @pytest.mark.asyncio
    async def test_sync_loop_stops(self, store, remote):
        """A set stop event ends the loop before any sync."""
        client = SyncClient(store, remote)
        stop = asyncio.Event()
        stop.set()

        await asyncio.wait_for(client.sync_loop(1, stop_event=stop), timeout=1)

        assert client.last_sync is None

    @pytest.mark.asyncio
    async def test_sync_loop_runs_until_stopped(self, store, remote):
        """The loop syncs until stopped."""
        client = SyncClient(store, remote)
        stop = asyncio.Event()
        store.commit(insert_player("a", "alice", 10))

        task = asyncio.create_task(client.sync_loop(60, stop_event=stop))
        while client.last_sync is None:
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert store.unpushed() == []


class TestHttpRemoteStore:
    """Tests for the HTTP remote client."""

    def _remote(self, handler, **kwargs) -> HttpRemoteStore:
        return HttpRemoteStore(
            "http://sync.test",
            zone="devices",
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_save(self):
        """save sends a PUT with the record fields."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"record_id": "r1", "stored": True})

        remote = self._remote(handler)
        await remote.save(RemoteRecord("r1", {"value": 1}))
        await remote.close()

        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/api/zones/devices/records/r1"
        assert json.loads(requests[0].content) == {"fields": {"value": 1}}

    @pytest.mark.asyncio
    async def test_save_conflict(self):
        """A 409 response raises RemoteConflict."""
        def handler(request):
            return httpx.Response(409, json={"detail": "exists"})

        remote = self._remote(handler)
        with pytest.raises(RemoteConflict) as exc_info:
            await remote.save(RemoteRecord("r1", {"value": 1}))

        assert exc_info.value.record_id == "r1"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """4xx responses are not retried."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"detail": "bad request"})

        remote = self._remote(handler)
        with pytest.raises(RemoteError) as exc_info:
            await remote.save(RemoteRecord("r1", {}))

        assert exc_info.value.status_code == 400
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_errors_retried(self):
        """5xx responses are retried with backoff, then reported offline."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        remote = self._remote(handler, max_retries=3)
        with patch("changesync.sync.http_remote.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(RemoteError) as exc_info:
                await remote.enumerate_changes(None)

        assert len(calls) == 3
        assert sleep.await_count == 2
        assert exc_info.value.status_code is None
        assert remote.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_connection_error_retried(self):
        """Connection errors are retried."""
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"records": [], "cursor": "0"})

        remote = self._remote(handler)
        with patch("changesync.sync.http_remote.asyncio.sleep", new=AsyncMock()):
            page = await remote.enumerate_changes(None)

        assert len(attempts) == 2
        assert page.records == []
        assert remote.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_enumerate_changes(self):
        """Change pages are read from the JSON response."""
        def handler(request):
            assert request.url.params["since"] == "4"
            assert request.url.params["limit"] == "10"
            return httpx.Response(200, json={
                "records": [{"record_id": "r5", "fields": {"value": 5}}],
                "cursor": "5",
                "more_coming": True,
                "failures": {},
            })

        page = await self._remote(handler).enumerate_changes("4", limit=10)

        assert isinstance(page, ChangePage)
        assert page.records == [RemoteRecord("r5", {"value": 5})]
        assert page.cursor == "5"
        assert page.more_coming is True

    @pytest.mark.asyncio
    async def test_malformed_page(self):
        """A malformed page raises RemoteError."""
        def handler(request):
            return httpx.Response(200, json={"records": [{"fields": {}}]})

        with pytest.raises(RemoteError):
            await self._remote(handler).enumerate_changes(None)

    @pytest.mark.asyncio
    async def test_delete_zone(self):
        """delete_zone sends a DELETE for the zone."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"zone": "devices", "deleted": 3})

        await self._remote(handler).delete_zone()

        assert requests[0].method == "DELETE"
        assert requests[0].url.path == "/api/zones/devices"

    @pytest.mark.asyncio
    async def test_health_check(self):
        """health_check is True only when the server answers."""
        def handler(request):
            if request.url.path == "/api/health":
                return httpx.Response(200, json={"status": "ok"})
            return httpx.Response(404)

        assert await self._remote(handler).health_check() is True

        def down(request):
            raise httpx.ConnectError("refused", request=request)

        assert await self._remote(down).health_check() is False
