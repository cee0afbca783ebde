"""Backend lifecycle: install, validate, start, stop."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path

from mcp_orchestrator.catalog import Catalog
from mcp_orchestrator.client_config import ClientConfigError, configure_client
from mcp_orchestrator.config import Settings
from mcp_orchestrator.envfile import write_env_file
from mcp_orchestrator.errors import (
    BackendNotFoundError,
    BackendStartError,
    BackendStateError,
    BuildError,
    ErrorHandler,
    ErrorHistory,
)
from mcp_orchestrator.installer import Installer, launch_argv
from mcp_orchestrator.registry import BackendRegistry
from mcp_orchestrator.schemas import (
    BackendDefinition,
    BackendInstallation,
    BackendStatus,
    BackendView,
    EnhancedError,
    ErrorStage,
    RunningBackend,
    RuntimeKind,
    Severity,
    SystemHealth,
    ValidationResult,
)
from mcp_orchestrator.validator import RemediationError, Validator

logger = logging.getLogger(__name__)

BACKEND_LOG_FILE = "backend.log"
STARTABLE_STATES = (BackendStatus.INSTALLED, BackendStatus.STOPPED)


class LifecycleManager:
    """Owns the registry and drives every state transition."""

    def __init__(
        self,
        settings: Settings,
        catalog: Catalog,
        registry: BackendRegistry | None = None,
        installer: Installer | None = None,
        validator: Validator | None = None,
        errors: ErrorHistory | None = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.registry = registry or BackendRegistry(settings.home, settings.state_file, catalog)
        self.installer = installer or Installer(timeout_seconds=settings.build_timeout)
        self.validator = validator or Validator(
            settings.client_config_path,
            gateway_command=settings.gateway_command,
            build_timeout=settings.build_timeout,
        )
        self.errors = errors or ErrorHistory()

    def load_state(self) -> int:
        self.settings.home.mkdir(parents=True, exist_ok=True)
        return self.registry.load()

    # --- Lookups ---

    def definition(self, backend_id: str) -> BackendDefinition:
        definition = self.catalog.get(backend_id)
        if definition is None:
            raise BackendNotFoundError(f"server {backend_id} not found in catalog")
        return definition

    def get(self, backend_id: str) -> BackendInstallation:
        with self.registry.lock:
            installation = self.registry.get(backend_id)
            if installation is None:
                raise BackendNotFoundError(f"server {backend_id} not found")
            self._reap(installation)
            return installation

    def list_backends(self) -> list[BackendView]:
        """Every catalog entry, with installation state where one exists."""
        views: list[BackendView] = []
        with self.registry.lock:
            for definition in self.catalog:
                installation = self.registry.get(definition.id)
                if installation is not None:
                    self._reap(installation)
                views.append(_view(definition, installation))
            for installation in self.registry:
                if installation.id not in self.catalog:
                    views.append(_view(installation.definition, installation))
        return views

    def running_backends(self) -> list[RunningBackend]:
        """Backends currently up, in catalog order."""
        running: list[RunningBackend] = []
        with self.registry.lock:
            installations = sorted(self.registry, key=lambda i: self.catalog.position(i.id))
            for installation in installations:
                self._reap(installation)
                if installation.status != BackendStatus.RUNNING:
                    continue
                definition = installation.definition
                argv = launch_argv(definition, installation.install_path)
                running.append(RunningBackend(
                    id=installation.id,
                    name=definition.name,
                    command=argv[0],
                    args=argv[1:],
                    install_path=installation.install_path,
                    env={**definition.env, **installation.env},
                    tool_category=definition.tool_category,
                    runtime=definition.runtime,
                ))
        return running

    # --- Install ---

    def install(
        self,
        backend_id: str,
        config: dict[str, str] | None = None,
        background: bool = True,
    ) -> threading.Thread | None:
        """Register an installing placeholder and run the pipeline.

        Returns:
            The pipeline thread when run in the background, else None

        Raises:
            BackendNotFoundError: If the id is not in the catalog
            BackendStateError: If the backend is installing or running
        """
        definition = self.definition(backend_id)

        with self.registry.lock:
            existing = self.registry.get(backend_id)
            if existing is not None:
                self._reap(existing)
                if existing.status in (BackendStatus.INSTALLING, BackendStatus.RUNNING):
                    raise BackendStateError(f"server {backend_id} is {existing.status.value}")

            installation = BackendInstallation(
                id=backend_id,
                definition=definition,
                install_path=str(self.settings.install_path(backend_id)),
                status=BackendStatus.INSTALLING,
            )
            if existing is not None:
                installation.created_at = existing.created_at
            installation.add_log(f"Installing {definition.name}")
            self.registry.put(installation)

        self.errors.clear(backend_id)
        resolved = {**definition.env, **(config or {})}
        logger.info(f"Installing {definition.name} into {installation.install_path}")

        if not background:
            self._run_install(installation, resolved)
            return None

        thread = threading.Thread(
            target=self._run_install,
            args=(installation, resolved),
            name=f"install-{backend_id}",
            daemon=True,
        )
        thread.start()
        return thread

    def _run_install(self, installation: BackendInstallation, resolved: dict[str, str]) -> None:
        definition = installation.definition
        path = installation.install_path
        handler = ErrorHandler(installation.id, {
            "operation": "install",
            "server_name": definition.name,
            "install_path": path,
        })

        stage = ErrorStage.GIT_CLONE
        try:
            try:
                self.installer.clone(definition, path)
                self._log(installation, f"Cloned {definition.source_url}")
                stage = _build_stage(definition)
                self.installer.build(definition, path)
                self._log(installation, "Build completed")
            except BuildError as e:
                self._fail_install(installation, handler.installation_error(e, e.stage))
                return

            stage = ErrorStage.ENV_FILE
            write_env_file(path, resolved)

            with self.registry.lock:
                installation.env = dict(resolved)

            stage = ErrorStage.VALIDATION
            validation = self.validator.validate(installation)
            if not validation.is_valid:
                logger.info(f"{definition.name} validation failed, attempting auto-fix")
                try:
                    self.validator.auto_fix(validation)
                except RemediationError as e:
                    self._fail_install(installation, handler.installation_error(e, ErrorStage.VALIDATION))
                    return

                validation = self.validator.validate(installation)
                if not validation.is_valid:
                    self._fail_install(
                        installation,
                        handler.installation_error("validation still failed after auto-fix", ErrorStage.VALIDATION),
                    )
                    return
        except Exception as e:
            logger.exception(f"Install of {definition.name} failed during {stage.value}")
            self._fail_install(installation, handler.installation_error(e, stage))
            return

        with self.registry.lock:
            installation.set_status(BackendStatus.INSTALLED)
            installation.add_log(f"Installed {definition.name}")
        logger.info(f"Successfully installed and validated {definition.name}")

        self._persist()

        try:
            configure_client(self.settings.client_config_path, self.settings.gateway_command)
        except ClientConfigError as e:
            logger.warning(f"Failed to configure downstream client: {e}")

    def _fail_install(self, installation: BackendInstallation, error: EnhancedError) -> None:
        self.errors.record(installation.id, error)
        with self.registry.lock:
            installation.set_status(BackendStatus.FAILED)
            installation.add_log(error.message)

    # --- Validate ---

    def validate(self, backend_id: str) -> ValidationResult:
        return self.validator.validate(self.get(backend_id))

    def validate_all(self) -> dict[str, ValidationResult]:
        return {
            installation.id: self.validator.validate(installation)
            for installation in self.registry
        }

    def auto_fix(self, backend_id: str) -> ValidationResult:
        """Validate, apply auto-fixes if needed, and return the fresh result.

        Raises:
            RemediationError: If an auto-fix action fails
        """
        installation = self.get(backend_id)
        result = self.validator.validate(installation)
        if result.is_valid:
            return result
        self.validator.auto_fix(result)
        return self.validator.validate(installation)

    # --- Start / Stop ---

    def start(self, backend_id: str) -> BackendInstallation:
        """Validate (with one auto-fix attempt) and spawn the backend.

        Raises:
            BackendNotFoundError: If nothing is installed under the id
            BackendStateError: If the backend is running, installing, or failed
            BackendStartError: If validation or spawning fails
        """
        installation = self.get(backend_id)
        self._check_startable(installation)

        handler = ErrorHandler(backend_id, {
            "operation": "start",
            "server_name": installation.definition.name,
            "install_path": installation.install_path,
        })

        validation = self.validator.validate(installation)
        if not validation.is_valid:
            logger.info(f"{backend_id} validation failed, attempting auto-fix before start")
            try:
                self.validator.auto_fix(validation)
            except RemediationError as e:
                message = f"server validation failed and auto-fix unsuccessful: {e}"
                self.errors.record(backend_id, handler.startup_error(message))
                raise BackendStartError(message) from e

            validation = self.validator.validate(installation)
            if not validation.is_valid:
                missing = ", ".join(issue.description for issue in validation.issues if issue.severity == Severity.ERROR)
                message = f"server {backend_id} is not valid and cannot be started: {missing}"
                self.errors.record(backend_id, handler.startup_error(message))
                raise BackendStartError(message)

        with self.registry.lock:
            if self.registry.get(backend_id) is not installation:
                raise BackendStateError(f"server {backend_id} was reinstalled during start")
            self._check_startable(installation)

            definition = installation.definition
            argv = launch_argv(definition, installation.install_path)
            env = {**os.environ, **definition.env, **installation.env}
            try:
                process = self._spawn(argv, installation.install_path, env)
            except OSError as e:
                error = handler.startup_error(e)
                self.errors.record(backend_id, error)
                installation.add_log(error.message)
                raise BackendStartError(f"failed to start server: {e}") from e

            installation.attach_process(process)
            installation.set_status(BackendStatus.RUNNING)
            installation.add_log(f"Started {definition.name} (PID {process.pid})")

        logger.info(f"Started server {installation.definition.name} (PID: {process.pid})")
        self._persist()
        return installation

    def stop(self, backend_id: str) -> None:
        """Kill the backend if it has a process and mark it stopped.

        Unknown ids are a no-op.
        """
        with self.registry.lock:
            installation = self.registry.get(backend_id)
            if installation is None:
                logger.info(f"Server {backend_id} not found in active manager, considering it stopped")
                return
            if installation.status == BackendStatus.INSTALLING:
                raise BackendStateError(f"server {backend_id} is installing")

            self._kill(installation)
            installation.set_status(BackendStatus.STOPPED)
            installation.add_log("Stopped")

        logger.info(f"Stopped server {installation.definition.name}")
        self._persist()

    def stop_all(self) -> None:
        stopped = 0
        with self.registry.lock:
            for installation in self.registry:
                if installation.status != BackendStatus.RUNNING and installation.process is None:
                    continue
                self._kill(installation)
                installation.set_status(BackendStatus.STOPPED)
                installation.add_log("Stopped")
                stopped += 1
        if stopped:
            logger.info(f"Stopped {stopped} running server(s)")
            self._persist()

    def _check_startable(self, installation: BackendInstallation) -> None:
        if installation.status == BackendStatus.RUNNING:
            raise BackendStateError(f"server {installation.id} is already running")
        if installation.status not in STARTABLE_STATES:
            raise BackendStateError(
                f"server {installation.id} cannot be started while {installation.status.value}"
            )

    def _spawn(self, argv: list[str], cwd: str, env: dict[str, str]) -> subprocess.Popen:
        log_path = Path(cwd) / BACKEND_LOG_FILE
        with open(log_path, "ab") as log_file:
            # stdin stays open so stdio backends do not see EOF and exit
            return subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                stdin=subprocess.PIPE,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    def _kill(self, installation: BackendInstallation) -> None:
        process = installation.process
        if process is None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
            process.wait(timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Failed to kill process for server {installation.id}: {e}")
        finally:
            if process.stdin is not None:
                process.stdin.close()
            installation.attach_process(None)

    def _reap(self, installation: BackendInstallation) -> None:
        """Mark a running backend stopped if its process has exited."""
        process = installation.process
        if installation.status != BackendStatus.RUNNING or process is None:
            return
        code = process.poll()
        if code is None:
            return
        if process.stdin is not None:
            process.stdin.close()
        installation.attach_process(None)
        installation.set_status(BackendStatus.STOPPED)
        installation.add_log(f"Process exited with code {code}")
        logger.warning(f"Server {installation.id} exited with code {code}")

    def _log(self, installation: BackendInstallation, line: str) -> None:
        with self.registry.lock:
            installation.add_log(line)

    def _persist(self) -> None:
        try:
            self.registry.save()
        except OSError as e:
            logger.warning(f"Failed to save server state: {e}")

    # --- Errors & health ---

    def get_errors(self, backend_id: str) -> list[EnhancedError]:
        return self.errors.get(backend_id)

    def all_errors(self) -> dict[str, list[EnhancedError]]:
        return self.errors.all()

    def clear_errors(self, backend_id: str) -> None:
        self.errors.clear(backend_id)

    def system_health(self) -> SystemHealth:
        breakdown: dict[str, int] = {}
        total = running = failed = 0
        with self.registry.lock:
            for installation in self.registry:
                self._reap(installation)
                status = installation.status.value
                breakdown[status] = breakdown.get(status, 0) + 1
                total += 1
                if installation.status == BackendStatus.RUNNING:
                    running += 1
                elif installation.status == BackendStatus.FAILED:
                    failed += 1

        score = (running * 100) // total if total else 100
        status = "healthy"
        if failed:
            status = "degraded"
        if total and not running:
            status = "unhealthy"

        return SystemHealth(
            status=status,
            score=score,
            total_servers=total,
            running_servers=running,
            error_servers=failed,
            status_breakdown=breakdown,
        )


def _view(definition: BackendDefinition, installation: BackendInstallation | None) -> BackendView:
    process = installation.process if installation else None
    return BackendView(
        id=definition.id,
        name=definition.name,
        description=definition.description,
        category=definition.category,
        runtime=definition.runtime,
        status=installation.status if installation else BackendStatus.NOT_INSTALLED,
        tools_count=definition.tools_count,
        required_env=list(definition.required_env),
        port=definition.default_port,
        install_path=installation.install_path if installation else None,
        command=definition.command,
        args=list(definition.args),
        pid=process.pid if process else None,
    )


def _build_stage(definition: BackendDefinition) -> ErrorStage:
    if definition.runtime == RuntimeKind.PYTHON:
        return ErrorStage.INTERPRETER_ENV
    return ErrorStage.NPM_INSTALL
