"""Tests for settings and .env files."""

from pathlib import Path

from mcp_orchestrator.aggregator import ToolAggregator
from mcp_orchestrator.catalog import Catalog
from mcp_orchestrator.config import DEFAULT_API_PORT, Settings
from mcp_orchestrator.directory import RemoteDirectory
from mcp_orchestrator.envfile import read_env_file, write_env_file
from mcp_orchestrator.relay import EphemeralRelay


class TestSettings:
    """Test environment overrides."""

    def test_defaults(self, monkeypatch):
        """Without overrides the documented defaults apply."""
        for name in ("MCP_ORCHESTRATOR_HOME", "MCP_ORCHESTRATOR_API_URL", "MCP_ORCHESTRATOR_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.api_port == DEFAULT_API_PORT
        assert settings.control_api_url == "http://127.0.0.1:8080"
        assert settings.state_file.name == "server_state.json"
        assert settings.log_level == "INFO"

    def test_overrides(self, monkeypatch, tmp_path):
        """MCP_ORCHESTRATOR_* variables override defaults."""
        monkeypatch.setenv("MCP_ORCHESTRATOR_HOME", str(tmp_path / "home"))
        monkeypatch.setenv("MCP_ORCHESTRATOR_API_URL", "http://10.0.0.5:9000/")
        monkeypatch.setenv("MCP_ORCHESTRATOR_CLIENT_CONFIG", str(tmp_path / "client.json"))
        monkeypatch.setenv("MCP_ORCHESTRATOR_LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.home == tmp_path / "home"
        assert settings.install_path("github") == tmp_path / "home" / "github"
        assert settings.control_api_url == "http://10.0.0.5:9000"
        assert settings.client_config_path == Path(tmp_path / "client.json")
        assert settings.log_level == "DEBUG"

    def test_components_share_defaults(self, tmp_path):
        """Relay, directory and aggregator defaults match the settings defaults."""
        settings = Settings(home=tmp_path)
        relay = EphemeralRelay()

        assert relay.discovery_timeout == settings.discovery_timeout
        assert relay.call_timeout == settings.call_timeout
        assert RemoteDirectory("http://127.0.0.1:8080", Catalog([])).timeout == settings.probe_timeout
        assert ToolAggregator(directory=None, relay=relay).cache_ttl == settings.tool_cache_ttl


class TestEnvFile:
    """Test flat KEY=VALUE files."""

    def test_write_and_read(self, tmp_path):
        """Values are written unescaped, one per line."""
        write_env_file(tmp_path, {"TOKEN": "a=b", "URL": "https://x"})
        assert (tmp_path / ".env").read_text() == "TOKEN=a=b\nURL=https://x\n"
        assert read_env_file(tmp_path) == {"TOKEN": "a=b", "URL": "https://x"}

    def test_comments_and_blank_lines(self, tmp_path):
        """Comments, blanks and lines without '=' are skipped."""
        (tmp_path / ".env").write_text("# note\n\nKEY = value \nnonsense\n")
        assert read_env_file(tmp_path) == {"KEY": "value"}

    def test_missing_file(self, tmp_path):
        """A missing file reads as empty."""
        assert read_env_file(tmp_path) == {}
