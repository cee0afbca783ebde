"""Tool aggregation across running backends, with context-budget shaping."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from mcp_orchestrator.config import TOOL_CACHE_TTL
from mcp_orchestrator.directory import BackendDirectory, DirectoryUnavailableError
from mcp_orchestrator.envfile import env_file_path
from mcp_orchestrator.errors import ErrorHandler, OrchestratorError
from mcp_orchestrator.installer import missing_runtime_marker
from mcp_orchestrator.relay import RelayError, RelayTimeoutError, ToolRelay
from mcp_orchestrator.schemas import DiagnosticIssue, RunningBackend, Severity, ToolListParams

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 25
MAX_LIMIT = 50

# (filtered count above which, cap) from largest to smallest
CONTEXT_TIERS: tuple[tuple[int, int], ...] = ((200, 20), (100, 30), (50, 40))

UNCATEGORIZED = "uncategorized"
MAX_DISCOVERY_WORKERS = 8

# Discovery attempts per backend; attempt n waits n * RETRY_DELAY before the next
MAX_DISCOVERY_ATTEMPTS = 3
RETRY_DELAY = 2.0

Tool = dict[str, Any]


class ToolNotFoundError(OrchestratorError):
    """Raised when no running backend exposes the requested tool."""

    pass


# --- Pure helpers ---


def filter_tools(
    tools: list[Tool],
    category: str | None = None,
    name_pattern: str | None = None,
) -> list[Tool]:
    """Exact category match AND case-insensitive substring on name."""
    result = tools
    if category:
        result = [tool for tool in result if tool.get("category") == category]
    if name_pattern:
        needle = name_pattern.lower()
        result = [tool for tool in result if needle in str(tool.get("name", "")).lower()]
    return list(result)


def context_cap(total_filtered: int) -> int:
    for threshold, cap in CONTEXT_TIERS:
        if total_filtered > threshold:
            return cap
    return MAX_LIMIT


def adjust_limit_for_context(requested: int, total_filtered: int) -> int:
    """Shrink the page size as the filtered set grows."""
    return min(requested, context_cap(total_filtered))


def paginate(tools: list[Tool], limit: int, offset: int) -> list[Tool]:
    if offset >= len(tools) or limit <= 0:
        return []
    return tools[offset:min(offset + limit, len(tools))]


def _simplify_schema(schema: dict[str, Any]) -> dict[str, Any]:
    properties = schema.get("properties")
    reduced: dict[str, Any] = {}
    if isinstance(properties, dict):
        for name, prop in properties.items():
            if not isinstance(prop, dict):
                continue
            reduced[name] = {key: prop[key] for key in ("type", "description") if key in prop}
    return {"type": "object", "properties": reduced}


def shape_tool(tool: Tool, simplified: bool = True, ultra_minimal: bool = False) -> Tool:
    if ultra_minimal:
        shaped = {"name": tool.get("name"), "description": tool.get("description")}
        if tool.get("category") is not None:
            shaped["category"] = tool["category"]
        return shaped

    if simplified:
        shaped = {
            "name": tool.get("name"),
            "description": tool.get("description"),
            "category": tool.get("category"),
        }
        schema = tool.get("inputSchema")
        if isinstance(schema, dict):
            shaped["inputSchema"] = _simplify_schema(schema)
        return shaped

    return tool


def shape_tools(tools: list[Tool], simplified: bool = True, ultra_minimal: bool = False) -> list[Tool]:
    """Reduce tool metadata; ultra_minimal wins over simplified."""
    return [shape_tool(tool, simplified, ultra_minimal) for tool in tools]


def build_meta(
    total_count: int,
    returned_count: int,
    requested_limit: int,
    adjusted_limit: int,
    offset: int,
    simplified: bool,
    ultra_minimal: bool,
) -> dict[str, Any]:
    return {
        "total_count": total_count,
        "returned_count": returned_count,
        "requested_limit": requested_limit,
        "adjusted_limit": adjusted_limit,
        "offset": offset,
        "simplified": simplified,
        "ultra_minimal": ultra_minimal,
        "has_more": offset + adjusted_limit < total_count,
        "context_optimized": adjusted_limit != requested_limit,
    }


def count_categories(tools: list[Tool]) -> list[dict[str, Any]]:
    """Tool counts per category, in order of first appearance."""
    counts: dict[str, int] = {}
    for tool in tools:
        category = tool.get("category") or UNCATEGORIZED
        counts[category] = counts.get(category, 0) + 1
    return [{"name": name, "count": count} for name, count in counts.items()]


# --- Aggregator ---


@dataclass
class DiscoveryResult:
    """Merged tools from every running backend, plus what went wrong."""

    tools: list[Tool] = field(default_factory=list)
    diagnostics: list[DiagnosticIssue] = field(default_factory=list)
    backends: dict[str, RunningBackend] = field(default_factory=dict)

    def owner_of(self, tool_name: str) -> RunningBackend | None:
        """First backend in aggregation order exposing the name."""
        for tool in self.tools:
            if tool.get("name") == tool_name:
                return self.backends.get(tool.get("_server_id", ""))
        return None


@dataclass
class _CacheEntry:
    tools: list[Tool]
    fetched_at: float


class ToolAggregator:
    """Merges, filters, paginates and shapes tools across running backends."""

    def __init__(
        self,
        directory: BackendDirectory,
        relay: ToolRelay,
        cache_ttl: float = TOOL_CACHE_TTL,
        max_workers: int = MAX_DISCOVERY_WORKERS,
        clock: Callable[[], float] = time.monotonic,
        max_attempts: int = MAX_DISCOVERY_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.directory = directory
        self.relay = relay
        self.cache_ttl = cache_ttl
        self.max_workers = max_workers
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, _CacheEntry] = {}
        self._cache_lock = Lock()

    def invalidate(self, backend_id: str | None = None) -> None:
        with self._cache_lock:
            if backend_id is None:
                self._cache.clear()
            else:
                self._cache.pop(backend_id, None)

    def discover(self) -> DiscoveryResult:
        """Collect tools from every running backend.

        Failures never raise; they become diagnostics and the backend
        contributes nothing.
        """
        result = DiscoveryResult()
        try:
            backends = self.directory.running_backends()
        except DirectoryUnavailableError as e:
            logger.warning(f"Cannot list running backends: {e}")
            result.diagnostics.append(DiagnosticIssue(
                server_id="orchestrator",
                type="api_connection_failed",
                description=str(e),
                severity=Severity.ERROR,
                resolution="Start the control API with: mcp-orchestrator serve",
            ))
            return result

        with self._cache_lock:
            running_ids = {backend.id for backend in backends}
            for stale in set(self._cache) - running_ids:
                del self._cache[stale]

        if not backends:
            return result

        workers = max(1, min(self.max_workers, len(backends)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="discover") as pool:
            outcomes = list(pool.map(self._discover_backend, backends))

        for backend, (tools, issues) in zip(backends, outcomes):
            result.backends[backend.id] = backend
            result.tools.extend(tools)
            result.diagnostics.extend(issues)

        logger.info(f"Discovered {len(result.tools)} tools from {len(backends)} running backend(s)")
        return result

    def _discover_backend(self, backend: RunningBackend) -> tuple[list[Tool], list[DiagnosticIssue]]:
        issues: list[DiagnosticIssue] = []
        if not Path(backend.install_path).is_dir():
            issues.append(DiagnosticIssue(
                server_id=backend.id,
                type="missing_install_directory",
                description=f"Install directory does not exist: {backend.install_path}",
                severity=Severity.ERROR,
                resolution="Reinstall the server",
            ))
            return [], issues

        if not env_file_path(backend.install_path).is_file():
            issues.append(DiagnosticIssue(
                server_id=backend.id,
                type="missing_env_file",
                description=f"No .env file in {backend.install_path}",
                severity=Severity.WARNING,
                resolution="Reinstall the server with its credentials",
            ))

        if backend.runtime is not None:
            missing = missing_runtime_marker(backend.runtime, backend.install_path)
            if missing is not None:
                issues.append(DiagnosticIssue(
                    server_id=backend.id,
                    type="missing_runtime_artifacts",
                    description=f"{backend.runtime.value} install is incomplete: missing {missing}",
                    severity=Severity.ERROR,
                    resolution="Run auto-fix or reinstall the server",
                ))
                return [], issues

        cached = self._cached(backend.id)
        if cached is not None:
            return cached, issues

        raw_tools = self._discover_with_retry(backend, issues)
        if raw_tools is None:
            return [], issues

        tools = [self._tag(tool, backend) for tool in raw_tools]
        with self._cache_lock:
            self._cache[backend.id] = _CacheEntry(tools=tools, fetched_at=self._clock())
        return tools, issues

    def _discover_with_retry(self, backend: RunningBackend, issues: list[DiagnosticIssue]) -> list[Tool] | None:
        """Run discovery with linear backoff; None once every attempt has failed.

        Timeouts are not retried since each one already spent the full
        discovery limit.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                raw_tools = self.relay.discover(backend)
            except RelayTimeoutError as e:
                last_error = e
                break
            except RelayError as e:
                last_error = e
            except Exception as e:
                logger.exception(f"Unexpected error discovering tools for {backend.id}")
                last_error = e
            else:
                if attempt > 1:
                    issues.append(DiagnosticIssue(
                        server_id=backend.id,
                        type="retry_success",
                        description=f"Tool discovery succeeded on attempt {attempt}",
                        severity=Severity.INFO,
                    ))
                return raw_tools

            if attempt < self.max_attempts:
                delay = attempt * self.retry_delay
                logger.info(f"Retrying discovery for {backend.id} in {delay}s: {last_error}")
                issues.append(DiagnosticIssue(
                    server_id=backend.id,
                    type="retry_attempt",
                    description=f"Retry {attempt}/{self.max_attempts} after {delay}s: {last_error}",
                    severity=Severity.WARNING,
                ))
                self._sleep(delay)

        error = ErrorHandler(backend.id, {"operation": "tool_discovery"}).tool_discovery_error(last_error)
        logger.warning(f"Tool discovery failed for {backend.id}: {last_error}")
        issues.append(DiagnosticIssue(
            server_id=backend.id,
            type="tool_discovery_failed",
            description=str(last_error),
            severity=Severity.WARNING,
            resolution="; ".join(error.suggestions),
        ))
        return None

    def _cached(self, backend_id: str) -> list[Tool] | None:
        if self.cache_ttl <= 0:
            return None
        with self._cache_lock:
            entry = self._cache.get(backend_id)
            if entry is None or self._clock() - entry.fetched_at > self.cache_ttl:
                return None
            return entry.tools

    @staticmethod
    def _tag(tool: Tool, backend: RunningBackend) -> Tool:
        tagged = dict(tool)
        tagged["_server_id"] = backend.id
        tagged["_server_name"] = backend.name
        if not tagged.get("category"):
            tagged["category"] = backend.tool_category or backend.id
        return tagged

    # --- Gateway operations ---

    def list_tools(self, params: ToolListParams | None = None) -> dict[str, Any]:
        """tools/list result: one shaped page plus _meta and diagnostics."""
        params = params or ToolListParams()
        discovery = self.discover()

        filtered = filter_tools(discovery.tools, params.category, params.name_pattern)
        adjusted = adjust_limit_for_context(params.limit, len(filtered))
        page = paginate(filtered, adjusted, params.offset)

        return {
            "tools": shape_tools(page, params.simplified, params.ultra_minimal),
            "diagnostics": [issue.model_dump(mode="json") for issue in discovery.diagnostics],
            "_meta": build_meta(
                total_count=len(filtered),
                returned_count=len(page),
                requested_limit=params.limit,
                adjusted_limit=adjusted,
                offset=params.offset,
                simplified=params.simplified,
                ultra_minimal=params.ultra_minimal,
            ),
        }

    def categories(self) -> dict[str, Any]:
        tools = self.discover().tools
        return {"categories": count_categories(tools), "total_tools": len(tools)}

    def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Route a call to the first backend exposing the tool.

        Returns:
            {"result": ...} or {"error": ...} from the backend

        Raises:
            ToolNotFoundError: If no running backend has the tool
            RelayError: If the backend process gives no usable response
        """
        discovery = self.discover()
        backend = discovery.owner_of(name)
        if backend is None:
            raise ToolNotFoundError(f"Tool not found: {name}")

        logger.info(f"Calling {name} on {backend.id}")
        try:
            return self.relay.call(backend, name, arguments)
        except RelayError:
            self.invalidate(backend.id)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error calling {name} on {backend.id}")
            self.invalidate(backend.id)
            raise RelayError(f"{backend.id} tools/call failed: {type(e).__name__}") from e
