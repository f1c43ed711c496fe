"""Tests for configuration loading."""

from changesync.config import Config, load_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_default_config(self):
        """Defaults apply when no file is given."""
        config = load_config()

        assert isinstance(config, Config)
        assert config.store.db_path == "~/.changesync/store.db"
        assert config.remote.url == ""
        assert config.remote.zone == "changesets"
        assert config.server.port == 8765
        assert config.sync.interval_seconds == 300

    def test_missing_file_uses_defaults(self, tmp_path):
        """A missing config file falls back to defaults."""
        config = load_config(tmp_path / "absent.yaml")

        assert config.remote.page_size == 100

    def test_yaml_file(self, tmp_path):
        """Values from YAML override defaults section by section."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "store:\n"
            "  db_path: /data/store.db\n"
            "remote:\n"
            "  url: http://sync-host:8765\n"
            "  page_size: 50\n"
            "server:\n"
            "  port: 9000\n"
            "sync:\n"
            "  interval_seconds: 30\n"
        )

        config = load_config(path)

        assert config.store.db_path == "/data/store.db"
        assert config.remote.url == "http://sync-host:8765"
        assert config.remote.page_size == 50
        assert config.remote.zone == "changesets"
        assert config.server.port == 9000
        assert config.server.host == "0.0.0.0"
        assert config.sync.interval_seconds == 30

    def test_empty_file(self, tmp_path):
        """An empty YAML file yields defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).store.db_path == "~/.changesync/store.db"

    def test_env_overrides(self, tmp_path, monkeypatch):
        """CHANGESYNC_ environment variables override file values."""
        path = tmp_path / "config.yaml"
        path.write_text("remote:\n  zone: from-file\n")
        monkeypatch.setenv("CHANGESYNC_REMOTE_ZONE", "from-env")
        monkeypatch.setenv("CHANGESYNC_REMOTE_TIMEOUT", "2.5")
        monkeypatch.setenv("CHANGESYNC_SERVER_PORT", "9100")
        monkeypatch.setenv("CHANGESYNC_SYNC_INTERVAL", "60")

        config = load_config(path)

        assert config.remote.zone == "from-env"
        assert config.remote.timeout == 2.5
        assert config.server.port == 9100
        assert config.sync.interval_seconds == 60
