"""Runtime settings for the orchestrator."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

# Install root and state file
DEFAULT_HOME = Path.home() / ".mcp_orchestrator"
STATE_FILE_NAME = "server_state.json"

# Control API
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 8080

# Timeouts (seconds)
PROBE_TIMEOUT = 15.0
DISCOVERY_TIMEOUT = 45.0
CALL_TIMEOUT = 50.0
BUILD_TIMEOUT = 600

# Discovered tool lists are reused for this long
TOOL_CACHE_TTL = 300.0

CLIENT_CONFIG_FILE_NAME = "claude_desktop_config.json"


def default_client_config_path() -> Path:
    """Location of the downstream client's config on this platform."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Claude" / CLIENT_CONFIG_FILE_NAME
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / "Claude" / CLIENT_CONFIG_FILE_NAME
    return Path.home() / ".config" / "Claude" / CLIENT_CONFIG_FILE_NAME


@dataclass
class Settings:
    """Orchestrator settings, built once and passed to each component."""

    home: Path = DEFAULT_HOME
    client_config_path: Path = field(default_factory=default_client_config_path)
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    api_url: str | None = None
    probe_timeout: float = PROBE_TIMEOUT
    discovery_timeout: float = DISCOVERY_TIMEOUT
    call_timeout: float = CALL_TIMEOUT
    build_timeout: int = BUILD_TIMEOUT
    tool_cache_ttl: float = TOOL_CACHE_TTL
    catalog_path: Path | None = None
    gateway_command: str | None = None
    log_level: str = "INFO"

    @property
    def state_file(self) -> Path:
        return self.home / STATE_FILE_NAME

    @property
    def control_api_url(self) -> str:
        return self.api_url or f"http://{self.api_host}:{self.api_port}"

    def install_path(self, backend_id: str) -> Path:
        return self.home / backend_id

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from MCP_ORCHESTRATOR_* environment variables."""
        env = os.environ
        settings = cls()

        if env.get("MCP_ORCHESTRATOR_HOME"):
            settings.home = Path(env["MCP_ORCHESTRATOR_HOME"]).expanduser()
        if env.get("MCP_ORCHESTRATOR_CLIENT_CONFIG"):
            settings.client_config_path = Path(env["MCP_ORCHESTRATOR_CLIENT_CONFIG"]).expanduser()
        if env.get("MCP_ORCHESTRATOR_API_URL"):
            settings.api_url = env["MCP_ORCHESTRATOR_API_URL"].rstrip("/")
        if env.get("MCP_ORCHESTRATOR_CATALOG"):
            settings.catalog_path = Path(env["MCP_ORCHESTRATOR_CATALOG"]).expanduser()
        if env.get("MCP_ORCHESTRATOR_GATEWAY_COMMAND"):
            settings.gateway_command = env["MCP_ORCHESTRATOR_GATEWAY_COMMAND"]
        if env.get("MCP_ORCHESTRATOR_LOG_LEVEL"):
            settings.log_level = env["MCP_ORCHESTRATOR_LOG_LEVEL"].upper()

        return settings
