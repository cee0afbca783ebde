"""Ephemeral relay: one short-lived backend process per discovery or call."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Iterator, Protocol

from mcp_orchestrator import __version__
from mcp_orchestrator.config import CALL_TIMEOUT, DISCOVERY_TIMEOUT
from mcp_orchestrator.errors import OrchestratorError
from mcp_orchestrator.runner import run_command
from mcp_orchestrator.schemas import CommandResult, RunningBackend

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcp-orchestrator", "version": __version__}

# The real request always goes out with this id
RELAY_REQUEST_ID = 2


class RelayError(OrchestratorError):
    """Raised when a relayed request produces no usable response."""

    pass


class RelayTimeoutError(RelayError):
    """Raised when the backend process exceeds its wall-clock limit."""

    pass


class RelaySpawnError(RelayError):
    """Raised when the backend process cannot be started."""

    pass


class RelayProtocolError(RelayError):
    """Raised when the output holds no matching JSON-RPC response."""

    pass


class ToolRelay(Protocol):
    """Narrow interface the aggregator needs from a relay."""

    def discover(self, backend: RunningBackend) -> list[dict[str, Any]]:
        ...

    def call(self, backend: RunningBackend, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        ...


def build_handshake(method: str, params: dict[str, Any] | None = None) -> str:
    """initialize, notifications/initialized, then the real request, newline-joined."""
    messages = [
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        },
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {"jsonrpc": "2.0", "id": RELAY_REQUEST_ID, "method": method, "params": params or {}},
    ]
    return "\n".join(json.dumps(message) for message in messages) + "\n"


def iter_json_objects(text: str) -> Iterator[dict[str, Any]]:
    """Yield every top-level JSON object in text by brace matching.

    Quotes only open strings inside an object, so stray quotes in log noise
    between objects do not throw off the scan.
    """
    depth = 0
    start = 0
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                try:
                    candidate = json.loads(text[start:i + 1])
                except ValueError:
                    continue
                if isinstance(candidate, dict):
                    yield candidate


def _is_response(message: dict[str, Any], request_id: int) -> bool:
    msg_id = message.get("id")
    if isinstance(msg_id, bool) or msg_id != request_id:
        return False
    return "result" in message or "error" in message


def extract_response(output: str, request_id: int = RELAY_REQUEST_ID) -> dict[str, Any] | None:
    """Find the response to request_id in a backend's combined output."""
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except ValueError:
            continue
        if isinstance(message, dict) and _is_response(message, request_id):
            return message

    # Responses split across lines or glued to log output
    for message in iter_json_objects(output):
        if _is_response(message, request_id):
            return message
    return None


class EphemeralRelay:
    """Spawns a fresh backend process per request."""

    def __init__(
        self,
        discovery_timeout: float = DISCOVERY_TIMEOUT,
        call_timeout: float = CALL_TIMEOUT,
        runner: Callable[..., CommandResult] = run_command,
    ):
        self.discovery_timeout = discovery_timeout
        self.call_timeout = call_timeout
        self._run = runner

    def discover(self, backend: RunningBackend) -> list[dict[str, Any]]:
        """List a backend's tools.

        Raises:
            RelayError: On timeout, spawn failure, or no usable response
        """
        response = self._exchange(backend, "tools/list", {}, self.discovery_timeout)
        if "error" in response:
            raise RelayProtocolError(f"{backend.id} rejected tools/list: {response['error']}")

        result = response.get("result")
        tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(tools, list):
            raise RelayProtocolError(f"{backend.id} returned no tools array")
        return [tool for tool in tools if isinstance(tool, dict)]

    def call(self, backend: RunningBackend, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Invoke one tool.

        Returns:
            {"result": ...} on success or {"error": ...} as sent by the backend

        Raises:
            RelayError: On timeout, spawn failure, or no usable response
        """
        response = self._exchange(
            backend,
            "tools/call",
            {"name": name, "arguments": arguments},
            self.call_timeout,
        )
        if "error" in response:
            return {"error": response["error"]}
        return {"result": response.get("result")}

    def _exchange(
        self,
        backend: RunningBackend,
        method: str,
        params: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        argv = [backend.command, *backend.args]
        env = {**os.environ, **backend.env}

        result = self._run(
            argv,
            cwd=backend.install_path,
            env=env,
            timeout_seconds=timeout,
            input_text=build_handshake(method, params),
            merge_stderr=True,
            truncate=False,
        )

        if result.timed_out:
            raise RelayTimeoutError(f"{backend.id} {method} timed out after {timeout}s")
        if result.spawn_failed:
            raise RelaySpawnError(f"{backend.id} could not be started: {result.stderr}")

        response = extract_response(result.stdout)
        if response is None:
            tail = result.stdout[-500:].strip()
            raise RelayProtocolError(
                f"{backend.id} {method}: no response for id {RELAY_REQUEST_ID} "
                f"(exit code {result.exit_code}) {tail}"
            )

        logger.debug(f"{backend.id} {method} answered (exit code {result.exit_code})")
        return response
