"""Downstream client config: the mcpServers entry that launches the gateway."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any

from mcp_orchestrator.errors import OrchestratorError

logger = logging.getLogger(__name__)

GATEWAY_ENTRY_NAME = "mcp-orchestrator"
EXECUTABLE_NAME = "mcp-orchestrator"
GATEWAY_ARGS = ["stdio"]


class ClientConfigError(OrchestratorError):
    """Raised when the client config cannot be read or written."""

    pass


def well_known_locations() -> list[Path]:
    """Places a console-script install of the orchestrator usually lands."""
    return [
        Path(sys.prefix) / "bin" / EXECUTABLE_NAME,
        Path.home() / ".local" / "bin" / EXECUTABLE_NAME,
        Path("/usr/local/bin") / EXECUTABLE_NAME,
        Path("/opt/homebrew/bin") / EXECUTABLE_NAME,
    ]


def is_resolvable(command: str) -> bool:
    """Whether a command names an existing file or something on PATH."""
    if not command:
        return False
    if os.sep in command or "/" in command:
        return Path(command).is_file()
    return shutil.which(command) is not None


def gateway_candidates(explicit: str | None = None) -> list[tuple[str, list[str]]]:
    """Ordered (command, args) choices for launching the gateway."""
    candidates: list[tuple[str, list[str]]] = []
    if explicit:
        candidates.append((explicit, list(GATEWAY_ARGS)))
    found = shutil.which(EXECUTABLE_NAME)
    if found:
        candidates.append((found, list(GATEWAY_ARGS)))
    candidates.extend((str(path), list(GATEWAY_ARGS)) for path in well_known_locations())
    # Module form works wherever this interpreter can import the package
    candidates.append((sys.executable, ["-m", "mcp_orchestrator", "stdio"]))
    return candidates


def resolve_gateway_command(explicit: str | None = None) -> tuple[str, list[str]]:
    """First resolvable gateway launch command."""
    for command, args in gateway_candidates(explicit):
        if is_resolvable(command):
            return command, args
    raise ClientConfigError("No resolvable mcp-orchestrator executable found")


def read_client_config(path: Path) -> dict[str, Any]:
    """Parse the client config; a missing file reads as empty.

    Raises:
        ClientConfigError: If the file is not a JSON object
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ClientConfigError(f"Invalid client config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ClientConfigError(f"Invalid client config {path}: top level is not an object")
    return data


def clean_servers(servers: Any) -> dict[str, Any]:
    """Keep only entries with a non-empty command and a non-empty args list."""
    if not isinstance(servers, dict):
        return {}

    valid: dict[str, Any] = {}
    for name, entry in servers.items():
        if (
            isinstance(entry, dict)
            and isinstance(entry.get("command"), str)
            and entry["command"]
            and isinstance(entry.get("args"), list)
            and entry["args"]
        ):
            valid[name] = entry
        else:
            logger.info(f"Removing invalid MCP server config: {name} (missing command/args)")
    return valid


def gateway_entry(path: Path) -> dict[str, Any] | None:
    """The orchestrator's own entry, if present."""
    servers = read_client_config(path).get("mcpServers")
    if not isinstance(servers, dict):
        return None
    entry = servers.get(GATEWAY_ENTRY_NAME)
    return entry if isinstance(entry, dict) else None


def upsert_gateway_entry(path: Path, command: str, args: list[str]) -> dict[str, Any]:
    """Write the gateway entry, dropping invalid entries; idempotent.

    Returns:
        The config as written
    """
    config = read_client_config(path)
    servers = clean_servers(config.get("mcpServers"))
    servers[GATEWAY_ENTRY_NAME] = {"command": command, "args": list(args)}
    config["mcpServers"] = servers

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ClientConfigError(f"Cannot write client config {path}: {e}") from e

    logger.info(f"Configured {GATEWAY_ENTRY_NAME} in {path}")
    return config


def configure_client(path: Path, explicit_command: str | None = None) -> dict[str, Any]:
    """Upsert the gateway entry pointing at a resolvable orchestrator."""
    command, args = resolve_gateway_command(explicit_command)
    return upsert_gateway_entry(path, command, args)
