"""Configuration loading for changesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class StoreConfig:
    """Local database holding user tables and the commit graph."""

    db_path: str = "~/.changesync/store.db"


@dataclass
class RemoteConfig:
    """Where changesets are pushed to and fetched from.

    ``url`` selects an HTTP server; otherwise ``db_path`` names a SQLite
    remote database opened in process.
    """

    url: str = ""
    db_path: str = "~/.changesync/remote.db"
    zone: str = "changesets"
    page_size: int = 100
    max_retries: int = 3
    timeout: float = 30.0


@dataclass
class ServerConfig:
    """Remote store server (``changesync serve``)."""

    host: str = "0.0.0.0"
    port: int = 8765
    db_path: str = "~/.changesync/remote.db"


@dataclass
class SyncConfig:
    interval_seconds: int = 300


@dataclass
class Config:
    store: StoreConfig = field(default_factory=StoreConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CHANGESYNC_ prefix."""
    return os.environ.get(f"CHANGESYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Store overrides
    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path

    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if remote_db := _get_env("REMOTE_DB_PATH"):
        config.remote.db_path = remote_db
    if zone := _get_env("REMOTE_ZONE"):
        config.remote.zone = zone
    if page_size := _get_env("REMOTE_PAGE_SIZE"):
        config.remote.page_size = int(page_size)
    if max_retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(max_retries)
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout = float(timeout)

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db

    # Sync overrides
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = int(interval)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse store config
            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    url=remote_data.get("url", config.remote.url),
                    db_path=remote_data.get("db_path", config.remote.db_path),
                    zone=remote_data.get("zone", config.remote.zone),
                    page_size=remote_data.get("page_size", config.remote.page_size),
                    max_retries=remote_data.get(
                        "max_retries", config.remote.max_retries
                    ),
                    timeout=remote_data.get("timeout", config.remote.timeout),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    db_path=server_data.get("db_path", config.server.db_path),
                )

            # Parse sync config
            if "sync" in data:
                config.sync = SyncConfig(
                    interval_seconds=data["sync"].get(
                        "interval_seconds", config.sync.interval_seconds
                    )
                )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
