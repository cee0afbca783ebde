"""Sources of truth for which backends are currently running."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import httpx

from mcp_orchestrator.catalog import Catalog
from mcp_orchestrator.config import PROBE_TIMEOUT
from mcp_orchestrator.envfile import read_env_file
from mcp_orchestrator.errors import OrchestratorError
from mcp_orchestrator.installer import launch_argv
from mcp_orchestrator.schemas import BackendStatus, RunningBackend

if TYPE_CHECKING:
    from mcp_orchestrator.manager import LifecycleManager

logger = logging.getLogger(__name__)


class DirectoryUnavailableError(OrchestratorError):
    """Raised when the running-backend list cannot be fetched."""

    pass


class BackendDirectory(Protocol):
    def running_backends(self) -> list[RunningBackend]:
        ...


class LocalDirectory:
    """Reads running state straight from an in-process lifecycle manager."""

    def __init__(self, manager: LifecycleManager):
        self.manager = manager

    def running_backends(self) -> list[RunningBackend]:
        return self.manager.running_backends()


class RemoteDirectory:
    """Asks the Control API which backends are running.

    Used by the stdio gateway, which runs in its own process. Launch details
    come from the local catalog and each backend's .env file, so secrets
    never cross HTTP.
    """

    def __init__(
        self,
        base_url: str,
        catalog: Catalog,
        timeout: float = PROBE_TIMEOUT,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.catalog = catalog
        self.timeout = timeout
        self._client = client

    def _fetch_servers(self) -> list[dict]:
        url = f"{self.base_url}/api/servers"
        try:
            if self._client is not None:
                response = self._client.get(url, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.get(url)
            response.raise_for_status()
            data = response.json()
        except httpx.ConnectError as e:
            raise DirectoryUnavailableError(f"Control API not reachable at {self.base_url}") from e
        except httpx.TimeoutException as e:
            raise DirectoryUnavailableError(f"Control API timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise DirectoryUnavailableError(f"Control API error: {e}") from e
        except ValueError as e:
            raise DirectoryUnavailableError(f"Control API returned invalid JSON: {e}") from e

        servers = data.get("servers") if isinstance(data, dict) else None
        return [entry for entry in servers or [] if isinstance(entry, dict)]

    def running_backends(self) -> list[RunningBackend]:
        """Running backends in catalog order.

        Raises:
            DirectoryUnavailableError: If the Control API cannot be queried
        """
        running: list[RunningBackend] = []
        for entry in self._fetch_servers():
            if entry.get("status") != BackendStatus.RUNNING.value:
                continue

            backend_id = entry.get("id", "")
            definition = self.catalog.get(backend_id)
            install_path = entry.get("install_path")
            if definition is None or not install_path:
                logger.warning(f"Skipping running backend {backend_id!r}: unknown to local catalog or no install path")
                continue

            argv = launch_argv(definition, install_path)
            running.append(RunningBackend(
                id=definition.id,
                name=definition.name,
                command=argv[0],
                args=argv[1:],
                install_path=install_path,
                env={**definition.env, **read_env_file(install_path)},
                tool_category=definition.tool_category,
                runtime=definition.runtime,
            ))

        running.sort(key=lambda backend: self.catalog.position(backend.id))
        return running
