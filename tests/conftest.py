"""Pytest configuration and fixtures for MCP Orchestrator tests."""

import json
import sys
from pathlib import Path

import pytest

from mcp_orchestrator.catalog import Catalog
from mcp_orchestrator.config import Settings
from mcp_orchestrator.directory import DirectoryUnavailableError
from mcp_orchestrator.relay import RelayProtocolError
from mcp_orchestrator.schemas import BackendDefinition, RunningBackend, RuntimeKind

# Keeps running until its stdin is closed or it is killed
IDLE_BACKEND_ARGS = ("-c", "import sys; sys.stdin.read()")


def make_definition(backend_id: str = "alpha", **overrides) -> BackendDefinition:
    """Backend definition that launches the current interpreter."""
    fields = {
        "id": backend_id,
        "name": f"{backend_id.title()} MCP",
        "description": f"Test backend {backend_id}",
        "source_url": f"https://example.com/{backend_id}.git",
        "runtime": RuntimeKind.NODEJS,
        "command": sys.executable,
        "args": IDLE_BACKEND_ARGS,
        "default_port": 9000,
        "category": "development",
        "tools_count": 3,
    }
    fields.update(overrides)
    return BackendDefinition(**fields)


def make_tools(prefix: str, count: int, **extra) -> list[dict]:
    return [
        {
            "name": f"{prefix}_{i}",
            "description": f"{prefix} tool {i}",
            "inputSchema": {"type": "object", "properties": {"q": {"type": "string"}}},
            **extra,
        }
        for i in range(count)
    ]


def running_backend(backend_id: str, install_path: Path, with_env_file: bool = True, **overrides) -> RunningBackend:
    install_path.mkdir(parents=True, exist_ok=True)
    if with_env_file:
        (install_path / ".env").write_text("TOKEN=x\n")
    fields = {
        "id": backend_id,
        "name": f"{backend_id.title()} MCP",
        "command": sys.executable,
        "args": [],
        "install_path": str(install_path),
    }
    fields.update(overrides)
    return RunningBackend(**fields)


class FakeDirectory:
    """Directory returning a fixed list, or failing like an unreachable API."""

    def __init__(self, backends=None, unavailable: bool = False):
        self.backends = list(backends or [])
        self.unavailable = unavailable

    def running_backends(self):
        if self.unavailable:
            raise DirectoryUnavailableError("Control API not reachable at http://127.0.0.1:8080")
        return list(self.backends)


class FakeRelay:
    """In-memory relay keyed by backend id."""

    def __init__(self, tools_by_backend=None, failing=(), call_result=None, flaky=None):
        self.tools_by_backend = dict(tools_by_backend or {})
        self.failing = set(failing)
        # backend id -> errors raised by successive discoveries before they succeed
        self.flaky = {backend_id: list(errors) for backend_id, errors in (flaky or {}).items()}
        self.call_result = call_result if call_result is not None else {"result": {"content": []}}
        self.discover_calls: list[str] = []
        self.calls: list[tuple[str, str, dict]] = []

    def discover(self, backend):
        self.discover_calls.append(backend.id)
        if backend.id in self.failing:
            raise RelayProtocolError(f"{backend.id} tools/list: no response for id 2")
        pending = self.flaky.get(backend.id)
        if pending:
            raise pending.pop(0)
        return list(self.tools_by_backend.get(backend.id, []))

    def call(self, backend, name, arguments):
        self.calls.append((backend.id, name, arguments))
        if isinstance(self.call_result, Exception):
            raise self.call_result
        return self.call_result


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory."""
    return Settings(
        home=tmp_path / "home",
        client_config_path=tmp_path / "client" / "claude_desktop_config.json",
        tool_cache_ttl=0,
    )


@pytest.fixture
def catalog() -> Catalog:
    return Catalog([
        make_definition("alpha"),
        make_definition("beta", category="productivity", required_env=("BETA_TOKEN",)),
    ])


@pytest.fixture
def client_config(settings: Settings) -> Path:
    """Client config that already registers a resolvable gateway."""
    path = settings.client_config_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "mcpServers": {
            "mcp-orchestrator": {"command": sys.executable, "args": ["-m", "mcp_orchestrator", "stdio"]},
        },
    }))
    return path


@pytest.fixture
def fake_backend_script(tmp_path: Path) -> Path:
    """A minimal line-delimited JSON-RPC tool server."""
    script = tmp_path / "fake_backend.py"
    script.write_text(
        '''import json
import sys

TOOLS = [
    {
        "name": "echo",
        "description": "Echo text back",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
    }
]

sys.stderr.write("fake backend starting\\n")
sys.stderr.flush()

for line in sys.stdin:
    line = line.strip()
    if not line:
        continue
    msg = json.loads(line)
    if "id" not in msg:
        continue
    method = msg.get("method")
    if method == "initialize":
        result = {"protocolVersion": "2024-11-05", "capabilities": {}, "serverInfo": {"name": "fake", "version": "1"}}
    elif method == "tools/list":
        result = {"tools": TOOLS}
    elif method == "tools/call":
        params = msg.get("params", {})
        if params.get("name") != "echo":
            print(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32602, "message": "Unknown tool"}}), flush=True)
            continue
        text = params.get("arguments", {}).get("text", "")
        result = {"content": [{"type": "text", "text": text}]}
    else:
        result = {}
    print(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": result}), flush=True)
'''
    )
    return script
