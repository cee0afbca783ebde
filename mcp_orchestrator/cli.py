"""CLI for MCP Orchestrator - control API, stdio gateway, and server management."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import httpx

from mcp_orchestrator import __version__
from mcp_orchestrator.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CLIENT_TIMEOUT = 60.0


def _configure_logging(level: str, log_file: str | None = None) -> None:
    """Log to stderr, or to a file; stdout is left alone."""
    kwargs: dict[str, Any] = {"filename": log_file} if log_file else {"stream": sys.stderr}
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, **kwargs)


def _load_catalog(settings: Settings):
    from mcp_orchestrator.catalog import CatalogError, load_catalog

    try:
        return load_catalog(settings.catalog_path)
    except CatalogError as e:
        raise click.ClickException(str(e)) from e


def _api_request(settings: Settings, method: str, path: str, payload: dict | None = None) -> dict[str, Any]:
    """Call the Control API and return the decoded body.

    Raises:
        click.ClickException: If the API is unreachable or answers with an error
    """
    url = f"{settings.control_api_url}{path}"
    try:
        response = httpx.request(method, url, json=payload, timeout=CLIENT_TIMEOUT)
    except httpx.ConnectError as e:
        raise click.ClickException(
            f"Control API not reachable at {settings.control_api_url}. "
            "Start it with: mcp-orchestrator serve"
        ) from e
    except httpx.HTTPError as e:
        raise click.ClickException(f"Control API request failed: {e}") from e

    try:
        body = response.json()
    except ValueError:
        body = {"detail": response.text}

    if response.status_code >= 400:
        detail = body.get("detail") if isinstance(body, dict) else body
        raise click.ClickException(f"{detail} (HTTP {response.status_code})")
    return body


def _parse_config(values: tuple[str, ...]) -> dict[str, str]:
    config: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--config")
        config[key.strip()] = value
    return config


@click.group()
@click.version_option(version=__version__, prog_name="mcp-orchestrator")
@click.pass_context
def main(ctx: click.Context) -> None:
    """MCP Orchestrator - one stdio endpoint for many MCP tool servers.

    Install, start and stop tool backends through the control API, and
    expose every running backend to an LLM client through the stdio gateway.
    """
    ctx.obj = Settings.from_env()


@main.command()
@click.option("--port", default=None, type=int, help="Port to run the control API on")
@click.option("--host", default=None, help="Host to bind to")
@click.pass_obj
def serve(settings: Settings, port: int | None, host: str | None) -> None:
    """Start the control API and the backend lifecycle manager."""
    import uvicorn

    from mcp_orchestrator.api import create_app
    from mcp_orchestrator.manager import LifecycleManager

    _configure_logging(settings.log_level)
    host = host or settings.api_host
    port = port or settings.api_port

    catalog = _load_catalog(settings)
    manager = LifecycleManager(settings, catalog)
    loaded = manager.load_state()

    click.echo(f"Loaded {loaded} installed server(s) from {settings.home}", err=True)
    click.echo(f"Starting MCP Orchestrator control API on {host}:{port}", err=True)
    uvicorn.run(create_app(manager), host=host, port=port, log_level=settings.log_level.lower())


@main.command()
@click.option("--log-file", default=None, type=click.Path(dir_okay=False), help="Write logs to this file instead of stderr")
@click.pass_obj
def stdio(settings: Settings, log_file: str | None) -> None:
    """Run the stdio gateway for an LLM client.

    \b
    Configure in the client's config:
        {
            "mcpServers": {
                "mcp-orchestrator": {
                    "command": "mcp-orchestrator",
                    "args": ["stdio"]
                }
            }
        }
    """
    from mcp_orchestrator.aggregator import ToolAggregator
    from mcp_orchestrator.directory import RemoteDirectory
    from mcp_orchestrator.gateway import ProtocolGateway
    from mcp_orchestrator.relay import EphemeralRelay

    _configure_logging(settings.log_level, log_file)
    catalog = _load_catalog(settings)

    directory = RemoteDirectory(settings.control_api_url, catalog, timeout=settings.probe_timeout)
    relay = EphemeralRelay(discovery_timeout=settings.discovery_timeout, call_timeout=settings.call_timeout)
    aggregator = ToolAggregator(directory, relay, cache_ttl=settings.tool_cache_ttl)
    ProtocolGateway(aggregator).serve()


@main.command()
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_obj
def catalog(settings: Settings, raw: bool) -> None:
    """List the backends that can be installed."""
    definitions = list(_load_catalog(settings))

    if raw:
        click.echo(json.dumps([d.model_dump(mode="json") for d in definitions], indent=2))
        return

    for definition in definitions:
        requires = ", ".join(definition.required_env) or "-"
        click.echo(
            f"  {definition.id:<14} {definition.name:<22} {definition.runtime.value:<7} "
            f"{definition.category:<16} tools: {definition.tools_count:<3} requires: {requires}"
        )


@main.command()
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_obj
def servers(settings: Settings, raw: bool) -> None:
    """Show every backend and its state, as reported by the control API."""
    body = _api_request(settings, "GET", "/api/servers")

    if raw:
        click.echo(json.dumps(body, indent=2))
        return

    for server in body.get("servers", []):
        pid = f" (PID {server['pid']})" if server.get("pid") else ""
        click.echo(f"  {server['id']:<14} {server['status']}{pid}")


@main.command()
@click.argument("server_id")
@click.option("--config", "-c", "config_values", multiple=True, help="Credential or setting as KEY=VALUE")
@click.pass_obj
def install(settings: Settings, server_id: str, config_values: tuple[str, ...]) -> None:
    """Install a backend.

    \b
    Example:
        mcp-orchestrator install github -c GITHUB_PERSONAL_ACCESS_TOKEN=ghp_xxx
    """
    config = _parse_config(config_values)
    body = _api_request(settings, "POST", "/api/servers/install", {"server_id": server_id, "config": config})
    click.echo(f"{body.get('message', 'Installation started')}: {server_id}")
    click.echo("Follow progress with: mcp-orchestrator servers")


@main.command()
@click.argument("server_id")
@click.pass_obj
def start(settings: Settings, server_id: str) -> None:
    """Start an installed backend."""
    body = _api_request(settings, "POST", f"/api/servers/{server_id}/start")
    click.echo(f"{body.get('message', 'Server started')}: {server_id}")


@main.command()
@click.argument("server_id")
@click.pass_obj
def stop(settings: Settings, server_id: str) -> None:
    """Stop a running backend."""
    body = _api_request(settings, "POST", f"/api/servers/{server_id}/stop")
    click.echo(f"{body.get('message', 'Server stopped')}: {server_id}")


@main.command()
@click.argument("server_id")
@click.option("--fix", is_flag=True, help="Apply automatic fixes and re-validate")
@click.pass_obj
def validate(settings: Settings, server_id: str, fix: bool) -> None:
    """Check an installed backend and report problems."""
    if fix:
        body = _api_request(settings, "POST", f"/api/validation/servers/{server_id}/autofix")
        result = body.get("validation_result", {})
    else:
        result = _api_request(settings, "GET", f"/api/validation/servers/{server_id}")

    if result.get("is_valid"):
        click.echo(f"{server_id}: valid")
        return

    click.echo(f"{server_id}: {len(result.get('issues', []))} issue(s)")
    for issue in result.get("issues", []):
        click.echo(f"  [{issue['severity']}] {issue['type']}: {issue['description']}")
    for suggestion in result.get("suggestions", []):
        marker = "auto" if suggestion.get("auto_fix") else "manual"
        hint = f" ({suggestion['command']})" if suggestion.get("command") else ""
        click.echo(f"  -> [{marker}] {suggestion['description']}{hint}")
    sys.exit(1)


@main.command("configure-client")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="Client config file to update")
@click.option("--command", "command", default=None, help="Orchestrator executable to register")
@click.pass_obj
def configure_client_command(settings: Settings, config_path: str | None, command: str | None) -> None:
    """Register the stdio gateway in the LLM client's config."""
    from mcp_orchestrator.client_config import GATEWAY_ENTRY_NAME, ClientConfigError, configure_client

    path = Path(config_path) if config_path else settings.client_config_path
    try:
        config = configure_client(path, command or settings.gateway_command)
    except ClientConfigError as e:
        raise click.ClickException(str(e)) from e

    entry = config["mcpServers"][GATEWAY_ENTRY_NAME]
    click.echo(f"Configured {GATEWAY_ENTRY_NAME} in {path}")
    click.echo(f"  command: {entry['command']} {' '.join(entry['args'])}")


if __name__ == "__main__":
    main()
