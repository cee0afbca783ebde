"""HTTP Control API over the lifecycle manager."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from mcp_orchestrator import __version__
from mcp_orchestrator.aggregator import ToolAggregator
from mcp_orchestrator.catalog import summarize_categories
from mcp_orchestrator.directory import LocalDirectory
from mcp_orchestrator.errors import (
    BackendNotFoundError,
    BackendStartError,
    BackendStateError,
    OrchestratorError,
)
from mcp_orchestrator.manager import LifecycleManager
from mcp_orchestrator.relay import EphemeralRelay
from mcp_orchestrator.schemas import (
    CategoriesResponse,
    ErrorResponse,
    HealthResponse,
    InstallRequest,
    MessageResponse,
    ServerListResponse,
    SystemHealth,
    utc_now,
)
from mcp_orchestrator.validator import RemediationError

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100


def missing_credentials(required: tuple[str, ...], config: dict[str, str]) -> list[str]:
    """Required names absent from both the request config and our environment."""
    return [name for name in required if not config.get(name) and not os.environ.get(name)]


def _error_json(status_code: int, detail: str, error_code: str, server_id: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, server_id=server_id, error_code=error_code).model_dump(),
    )


def create_app(manager: LifecycleManager, aggregator: ToolAggregator | None = None) -> FastAPI:
    """Build the Control API around an explicitly owned manager.

    Args:
        manager: Lifecycle manager holding the backend registry
        aggregator: Tool aggregator for the diagnostics route; built over the
            manager when omitted

    Returns:
        Configured FastAPI application
    """
    if aggregator is None:
        settings = manager.settings
        aggregator = ToolAggregator(
            LocalDirectory(manager),
            EphemeralRelay(
                discovery_timeout=settings.discovery_timeout,
                call_timeout=settings.call_timeout,
            ),
            cache_ttl=settings.tool_cache_ttl,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Control API shutting down, stopping running servers")
        manager.stop_all()

    app = FastAPI(
        title="MCP Orchestrator",
        description="Control API for installing, validating and running MCP tool backends",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.aggregator = aggregator

    # --- Exception mapping ---

    @app.exception_handler(BackendNotFoundError)
    async def not_found_handler(request: Request, exc: BackendNotFoundError) -> JSONResponse:
        return _error_json(404, str(exc), "NOT_FOUND", request.path_params.get("server_id"))

    @app.exception_handler(BackendStateError)
    async def state_handler(request: Request, exc: BackendStateError) -> JSONResponse:
        return _error_json(409, str(exc), "INVALID_STATE", request.path_params.get("server_id"))

    @app.exception_handler(BackendStartError)
    async def start_handler(request: Request, exc: BackendStartError) -> JSONResponse:
        return _error_json(500, str(exc), "START_FAILED", request.path_params.get("server_id"))

    @app.exception_handler(RemediationError)
    async def remediation_handler(request: Request, exc: RemediationError) -> JSONResponse:
        return _error_json(500, str(exc), "AUTOFIX_FAILED", request.path_params.get("server_id"))

    @app.exception_handler(OrchestratorError)
    async def orchestrator_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
        logger.error(f"Request failed: {exc}", exc_info=True)
        return _error_json(500, str(exc), "INTERNAL_ERROR", request.path_params.get("server_id"))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _error_json(500, str(exc), "INTERNAL_ERROR")

    # --- Core routes ---

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    @app.get("/api/servers", response_model=ServerListResponse)
    async def list_servers() -> ServerListResponse:
        """Every catalog backend with its current installation state."""
        return ServerListResponse(servers=manager.list_backends())

    @app.get("/api/categories", response_model=CategoriesResponse)
    async def list_categories() -> CategoriesResponse:
        return CategoriesResponse(categories=summarize_categories(manager.catalog))

    @app.post("/api/servers/install", response_model=MessageResponse)
    async def install_server(request: InstallRequest) -> MessageResponse:
        """Start an installation in the background.

        Args:
            request: Backend id and credential/config values

        Returns:
            Acknowledgement; progress is visible through status and logs
        """
        definition = manager.definition(request.server_id)
        missing = missing_credentials(definition.required_env, request.config)
        if missing:
            raise HTTPException(
                status_code=400,
                detail=f"{', '.join(missing)} required for {definition.name}",
            )

        logger.info(f"Received install request for {request.server_id}")
        manager.install(request.server_id, request.config)
        return MessageResponse(message="Installation started", server_id=request.server_id)

    @app.post("/api/servers/{server_id}/start", response_model=MessageResponse)
    def start_server(server_id: str) -> MessageResponse:
        manager.start(server_id)
        return MessageResponse(message="Server started", server_id=server_id)

    @app.post("/api/servers/{server_id}/stop", response_model=MessageResponse)
    def stop_server(server_id: str) -> MessageResponse:
        manager.stop(server_id)
        return MessageResponse(message="Server stopped", server_id=server_id)

    # --- Per-server details ---

    @app.get("/api/servers/{server_id}/status")
    async def server_status(server_id: str) -> dict[str, Any]:
        installation = manager.get(server_id)
        process = installation.process
        return {
            "server_id": server_id,
            "status": installation.status.value,
            "port": installation.definition.default_port,
            "pid": process.pid if process else None,
        }

    @app.get("/api/servers/{server_id}/logs")
    async def server_logs(server_id: str, limit: int = Query(DEFAULT_LOG_LIMIT, ge=0)) -> dict[str, Any]:
        logs = list(manager.get(server_id).logs)
        return {"server_id": server_id, "logs": logs[max(0, len(logs) - limit):]}

    @app.get("/api/servers/{server_id}/credentials")
    async def server_credentials(server_id: str) -> dict[str, Any]:
        required = list(manager.definition(server_id).required_env)
        return {
            "server_id": server_id,
            "required_credentials": required,
            "requires_credentials": bool(required),
        }

    @app.get("/api/servers/{server_id}/details")
    def server_details(server_id: str) -> dict[str, Any]:
        """Installation snapshot, recorded errors and a fresh validation."""
        installation = manager.get(server_id)
        errors = manager.get_errors(server_id)
        validation = manager.validate(server_id)
        return {
            "server": installation.model_dump(mode="json", exclude={"env"}),
            "errors": [error.model_dump(mode="json") for error in errors],
            "error_count": len(errors),
            "validation_result": validation.model_dump(mode="json"),
            "timestamp": utc_now().isoformat(),
        }

    # --- Validation ---

    @app.get("/api/validation/servers")
    def validate_servers() -> dict[str, Any]:
        results = manager.validate_all()
        return {
            "results": {backend_id: result.model_dump(mode="json") for backend_id, result in results.items()},
            "total": len(results),
            "valid": sum(1 for result in results.values() if result.is_valid),
        }

    @app.get("/api/validation/servers/{server_id}")
    def validate_server(server_id: str) -> dict[str, Any]:
        return manager.validate(server_id).model_dump(mode="json")

    @app.post("/api/validation/servers/{server_id}/autofix")
    def autofix_server(server_id: str) -> dict[str, Any]:
        result = manager.auto_fix(server_id)
        return {
            "server_id": server_id,
            "fixed": result.is_valid,
            "validation_result": result.model_dump(mode="json"),
        }

    # --- Diagnostics & health ---

    @app.get("/api/diagnostics/tools")
    def tool_diagnostics() -> dict[str, Any]:
        """Run one discovery pass over running backends and report problems."""
        discovery = aggregator.discover()
        return {
            "diagnostics": [issue.model_dump(mode="json") for issue in discovery.diagnostics],
            "total_tools": len(discovery.tools),
            "running_servers": len(discovery.backends),
            "timestamp": utc_now().isoformat(),
        }

    @app.get("/api/system/health", response_model=SystemHealth)
    async def system_health() -> SystemHealth:
        return manager.system_health()

    @app.get("/api/errors/servers")
    async def all_server_errors() -> dict[str, Any]:
        errors = manager.all_errors()
        return {
            "errors": {
                backend_id: [error.model_dump(mode="json") for error in history]
                for backend_id, history in errors.items()
            },
            "total": sum(len(history) for history in errors.values()),
        }

    @app.get("/api/errors/servers/{server_id}")
    async def server_errors(server_id: str) -> dict[str, Any]:
        errors = manager.get_errors(server_id)
        return {
            "server_id": server_id,
            "errors": [error.model_dump(mode="json") for error in errors],
            "count": len(errors),
        }

    @app.delete("/api/errors/servers/{server_id}", response_model=MessageResponse)
    async def clear_server_errors(server_id: str) -> MessageResponse:
        manager.clear_errors(server_id)
        return MessageResponse(message="Errors cleared", server_id=server_id)

    return app
