"""CLI entry point for changesync."""

import argparse
import asyncio
import json
import logging
import sqlite3
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import ChangesyncError
from .graph import GraphStore, MergeEngine
from .sync import HttpRemoteStore, RemoteDatabase, RemoteStore, SqliteRemoteStore, SyncClient
from .sync.sync_client import CURSOR_KEY


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


def _open_store(config: Config) -> GraphStore:
    store = GraphStore(config.store.db_path)
    store.connect()
    return store


def _open_remote(config: Config) -> RemoteStore:
    """Build the configured remote: HTTP if a URL is set, else local SQLite."""
    if config.remote.url:
        return HttpRemoteStore(
            config.remote.url,
            zone=config.remote.zone,
            max_retries=config.remote.max_retries,
            timeout=config.remote.timeout,
        )
    database = RemoteDatabase(config.remote.db_path)
    database.connect()
    return SqliteRemoteStore(database, zone=config.remote.zone)


async def _close_remote(remote: RemoteStore) -> None:
    await remote.close()
    if isinstance(remote, SqliteRemoteStore):
        remote.database.close()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the remote store server."""
    config = load_config(args.config)

    from .server import create_app

    import uvicorn

    host = args.host or config.server.host
    port = args.port or config.server.port

    database = RemoteDatabase(config.server.db_path)
    database.connect()

    print("Starting changesync remote server")
    print(f"Database: {database.db_path}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, database)

    try:
        verbose = getattr(args, "verbose", False)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if verbose else "warning",
            )
        )
        await server.serve()
    finally:
        database.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local graph state and remote reachability."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "store": {"db_path": str(store.db_path), **store.get_stats()},
            "remote": {
                "url": config.remote.url or None,
                "db_path": None if config.remote.url else config.remote.db_path,
                "zone": config.remote.zone,
                "cursor": store.get_state(CURSOR_KEY),
            },
        }

        if config.remote.url:
            remote = _open_remote(config)
            try:
                status_data["remote"]["reachable"] = await remote.health_check()
            finally:
                await remote.close()
    finally:
        store.close()

    if args.json_status:
        _print_json(status_data)
        return 0

    stats = status_data["store"]
    remote_status = status_data["remote"]
    print("changesync status")
    print("=================")
    print(f"Store: {stats['db_path']}")
    print(f"  Head: {stats['head'] or '(empty)'}")
    print(f"  Changesets: {stats['total_changesets']} ({stats['merge_changesets']} merges)")
    print(f"  Unpushed: {stats['unpushed_changesets']}")
    print(f"  Staged: {stats['staged_changesets']}")
    print(f"  Leaves: {stats['leaves']}")
    print()
    print(f"Remote: {remote_status['url'] or remote_status['db_path']}")
    print(f"  Zone: {remote_status['zone']}")
    print(f"  Cursor: {remote_status['cursor'] or '(none)'}")
    if "reachable" in remote_status:
        print(f"  Reachable: {'yes' if remote_status['reachable'] else 'no'}")

    return 0


def cmd_log(args: argparse.Namespace) -> int:
    """List changesets in insertion order."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        head = store.head()
        changesets = store.log()
    finally:
        store.close()

    if args.json_log:
        _print_json([c.to_dict() for c in changesets])
        return 0

    for changeset in changesets:
        marker = "*" if changeset.id == head else " "
        pushed = "pushed" if changeset.pushed else "local"
        parents = " + ".join(changeset.parents) or "(root)"
        print(f"{marker} {changeset.id}  {pushed:6}  parents: {parents}")
        if changeset.meta:
            print(f"    {json.dumps(changeset.meta, default=str)}")

    return 0


def cmd_commit(args: argparse.Namespace) -> int:
    """Run SQL statements as one commit."""
    config = load_config(args.config)
    store = _open_store(config)

    def mutation(conn: sqlite3.Connection) -> int:
        changed = 0
        for statement in args.sql:
            changed += max(conn.execute(statement).rowcount, 0)
        return changed

    meta = {"message": args.message} if args.message else None
    try:
        before = store.head()
        changed = store.commit(mutation, meta=meta)
        after = store.head()
    except (sqlite3.Error, ChangesyncError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    if after == before:
        print("Nothing changed")
    else:
        print(f"Committed {after} ({changed} rows)")
    return 0


async def cmd_push(args: argparse.Namespace) -> int:
    """Push unpushed changesets."""
    config = load_config(args.config)
    store = _open_store(config)
    remote = _open_remote(config)

    try:
        client = SyncClient(store, remote, page_size=config.remote.page_size)
        pushed = await client.push()
    except ChangesyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await _close_remote(remote)
        store.close()

    print(f"Pushed {len(pushed)} changesets")
    return 0


async def cmd_fetch(args: argparse.Namespace) -> int:
    """Fetch changesets from the remote."""
    config = load_config(args.config)
    store = _open_store(config)
    remote = _open_remote(config)

    try:
        client = SyncClient(store, remote, page_size=config.remote.page_size)
        fetched = await client.fetch()
        staged = store.staged_count()
    except ChangesyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await _close_remote(remote)
        store.close()

    print(f"Fetched {len(fetched)} changesets")
    if staged:
        print(f"{staged} changesets waiting for missing parents")
    return 0


def cmd_pull(args: argparse.Namespace) -> int:
    """Advance head through known children."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        moved = store.pull()
        head = store.head()
    finally:
        store.close()

    print(f"Head: {head}" if moved else "Already up to date")
    return 0


def cmd_merge_all(args: argparse.Namespace) -> int:
    """Merge every divergent leaf into one."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        merges = MergeEngine(store).merge_all()
    except ChangesyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    for merge in merges:
        print(f"Merged {merge.parent_id} + {merge.merge_id} -> {merge.id}")
    if not merges:
        print("Nothing to merge")
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Fetch, merge, pull and push, once or in a loop."""
    config = load_config(args.config)
    store = _open_store(config)
    remote = _open_remote(config)
    client = SyncClient(store, remote, page_size=config.remote.page_size)

    try:
        if args.loop:
            await client.sync_loop(config.sync.interval_seconds)
            return 0
        result = await client.sync()
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0
    finally:
        await _close_remote(remote)
        store.close()

    print(f"Sync: {result.status.value}")
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    print(f"  Fetched: {result.changesets_fetched}")
    print(f"  Merged: {result.merges_created}")
    print(f"  Pulled: {'yes' if result.pulled else 'no'}")
    print(f"  Pushed: {result.changesets_pushed}")
    return 0


async def cmd_reset(args: argparse.Namespace) -> int:
    """Drop local history, and optionally the remote zone."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        store.reset()
        if args.remote:
            remote = _open_remote(config)
            try:
                await remote.delete_zone()
            finally:
                await _close_remote(remote)
    except ChangesyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print("Reset local history" + (" and remote zone" if args.remote else ""))
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="changesync",
        description="Changeset-based SQLite sync",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the remote store server")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show store and remote status")
    status_parser.add_argument(
        "--json",
        dest="json_status",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Log command
    log_parser = subparsers.add_parser("log", help="List changesets")
    log_parser.add_argument(
        "--json",
        dest="json_log",
        action="store_true",
        help="Output changesets as JSON",
    )
    log_parser.set_defaults(func=cmd_log)

    # Commit command
    commit_parser = subparsers.add_parser("commit", help="Run SQL statements as one commit")
    commit_parser.add_argument("sql", nargs="+", help="SQL statements to execute")
    commit_parser.add_argument("-m", "--message", default=None, help="Commit message")
    commit_parser.set_defaults(func=cmd_commit)

    # Sync commands
    push_parser = subparsers.add_parser("push", help="Push unpushed changesets")
    push_parser.set_defaults(func=cmd_push)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch remote changesets")
    fetch_parser.set_defaults(func=cmd_fetch)

    pull_parser = subparsers.add_parser("pull", help="Apply known changesets after head")
    pull_parser.set_defaults(func=cmd_pull)

    merge_parser = subparsers.add_parser("merge-all", help="Merge divergent branches")
    merge_parser.set_defaults(func=cmd_merge_all)

    sync_parser = subparsers.add_parser("sync", help="Fetch, merge, pull and push")
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing at the configured interval",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Reset command
    reset_parser = subparsers.add_parser("reset", help="Delete local history")
    reset_parser.add_argument(
        "--remote",
        action="store_true",
        help="Also delete every record in the remote zone",
    )
    reset_parser.set_defaults(func=cmd_reset)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
