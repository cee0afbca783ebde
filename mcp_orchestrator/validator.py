"""Installation validation and automatic remediation."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
from pathlib import Path
from typing import Callable, Mapping

from mcp_orchestrator.client_config import (
    ClientConfigError,
    configure_client,
    gateway_entry,
    is_resolvable,
    read_client_config,
)
from mcp_orchestrator.envfile import env_file_path, read_env_file
from mcp_orchestrator.errors import OrchestratorError
from mcp_orchestrator.installer import (
    NODE_MODULES,
    PACKAGE_JSON,
    REQUIREMENTS_FILE,
    VENV_DIR,
    find_venv_python,
)
from mcp_orchestrator.runner import parse_command, run_command, validate_build_argv
from mcp_orchestrator.schemas import (
    BackendInstallation,
    CommandResult,
    PatchOrchestratorPath,
    RunBuildStep,
    RuntimeKind,
    Severity,
    ValidationIssue,
    ValidationResult,
    ValidationSuggestion,
    WriteClientConfig,
)

logger = logging.getLogger(__name__)

NPX_COMMANDS = {"npx", "npm"}
PYTHON_PROJECT_FILES = (REQUIREMENTS_FILE, "pyproject.toml", "setup.py")


class RemediationError(OrchestratorError):
    """Raised when an auto-fix action fails."""

    pass


def _build_step(action: str, description: str, argv: list[str], cwd: str) -> ValidationSuggestion:
    return ValidationSuggestion(
        action=action,
        description=description,
        command=f"cd {shlex.quote(cwd)} && {shlex.join(argv)}",
        auto_fix=True,
        remedy=RunBuildStep(argv=argv, cwd=cwd),
    )


def _manual(action: str, description: str, command: str | None = None) -> ValidationSuggestion:
    return ValidationSuggestion(action=action, description=description, command=command)


class Validator:
    """Checks that an installation can be started and repairs what it can."""

    def __init__(
        self,
        client_config_path: Path,
        gateway_command: str | None = None,
        build_timeout: int = 600,
        runner: Callable[..., CommandResult] = run_command,
        environ: Mapping[str, str] | None = None,
    ):
        self.client_config_path = Path(client_config_path)
        self.gateway_command = gateway_command
        self.build_timeout = build_timeout
        self._run = runner
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    # --- Validate ---

    def validate(self, installation: BackendInstallation) -> ValidationResult:
        """Validate one installation.

        Covers the install directory, runtime artifacts, required environment
        variables, and the downstream client's gateway entry.
        """
        result = ValidationResult(server_id=installation.id)

        if self._check_install_path(installation, result):
            self._check_runtime(installation, result)
            self._check_env(installation, result)
        self._check_client_config(result)

        if not result.is_valid:
            logger.info(
                f"Validation of {installation.id} found {len(result.issues)} issue(s): "
                + ", ".join(issue.type for issue in result.issues)
            )
        return result

    def _check_install_path(self, installation: BackendInstallation, result: ValidationResult) -> bool:
        reinstall = _manual("reinstall_server", f"Reinstall {installation.definition.name}")

        if not installation.install_path:
            result.add_issue(
                ValidationIssue(
                    type="missing_install_path",
                    severity=Severity.ERROR,
                    description="Install path is not set",
                ),
                reinstall,
            )
            return False

        if not Path(installation.install_path).is_dir():
            result.add_issue(
                ValidationIssue(
                    type="missing_directory",
                    severity=Severity.ERROR,
                    description=f"Install directory does not exist: {installation.install_path}",
                ),
                reinstall,
            )
            return False

        return True

    def _check_runtime(self, installation: BackendInstallation, result: ValidationResult) -> None:
        definition = installation.definition
        if definition.runtime == RuntimeKind.PYTHON:
            self._check_python(installation, result)
        elif definition.entrypoint:
            self._check_node_build(installation, result)
        elif definition.command in NPX_COMMANDS:
            self._check_node_toolchain(result)
        elif not is_resolvable(definition.command):
            result.add_issue(
                ValidationIssue(
                    type="missing_command",
                    severity=Severity.ERROR,
                    description=f"Launch command not found: {definition.command}",
                ),
                _manual("install_runtime", f"Install {definition.command} and make sure it is on PATH"),
            )

    def _check_node_build(self, installation: BackendInstallation, result: ValidationResult) -> None:
        path = Path(installation.install_path)
        cwd = installation.install_path

        if not (path / PACKAGE_JSON).is_file():
            result.add_issue(
                ValidationIssue(
                    type="missing_package_json",
                    severity=Severity.ERROR,
                    description=f"{PACKAGE_JSON} not found in {cwd}",
                ),
                _manual("reinstall_server", f"Reinstall {installation.definition.name}"),
            )
            return

        if not (path / NODE_MODULES).is_dir():
            result.add_issue(
                ValidationIssue(
                    type="missing_dependencies",
                    severity=Severity.ERROR,
                    description="Node.js dependencies are not installed",
                ),
                _build_step("install_dependencies", "Install Node.js dependencies", ["npm", "install"], cwd),
            )

        entrypoint = installation.definition.entrypoint
        if entrypoint and not (path / entrypoint).is_file():
            result.add_issue(
                ValidationIssue(
                    type="missing_build",
                    severity=Severity.ERROR,
                    description=f"Compiled entrypoint not found: {entrypoint}",
                ),
                _build_step("build_server", "Build the server", ["npm", "run", "build"], cwd),
            )

    def _check_node_toolchain(self, result: ValidationResult) -> None:
        install_node = _manual("install_nodejs", "Install Node.js and npm from https://nodejs.org/")
        for tool, issue_type in (("npm", "missing_npm"), ("npx", "missing_npx")):
            if shutil.which(tool) is None:
                result.add_issue(
                    ValidationIssue(
                        type=issue_type,
                        severity=Severity.ERROR,
                        description=f"{tool} is not available on PATH",
                    ),
                    install_node,
                )

    def _check_python(self, installation: BackendInstallation, result: ValidationResult) -> None:
        path = Path(installation.install_path)
        cwd = installation.install_path

        if not (path / VENV_DIR).is_dir():
            result.add_issue(
                ValidationIssue(
                    type="missing_venv",
                    severity=Severity.ERROR,
                    description="Python virtual environment not found",
                ),
                _build_step("create_venv", "Create the virtual environment", ["python3", "-m", "venv", VENV_DIR], cwd),
            )
        elif find_venv_python(path) is None:
            result.add_issue(
                ValidationIssue(
                    type="invalid_venv",
                    severity=Severity.ERROR,
                    description="Virtual environment has no Python interpreter",
                ),
                _build_step(
                    "recreate_venv",
                    "Recreate the virtual environment",
                    ["python3", "-m", "venv", "--clear", VENV_DIR],
                    cwd,
                ),
            )

        if not any((path / name).is_file() for name in PYTHON_PROJECT_FILES):
            result.add_issue(
                ValidationIssue(
                    type="missing_requirements",
                    severity=Severity.WARNING,
                    description="No requirements.txt, pyproject.toml or setup.py found",
                ),
            )

    def _check_env(self, installation: BackendInstallation, result: ValidationResult) -> None:
        if not env_file_path(installation.install_path).is_file():
            result.add_issue(
                ValidationIssue(
                    type="missing_env_file",
                    severity=Severity.WARNING,
                    description="Environment file (.env) not found",
                ),
            )

        file_values = read_env_file(installation.install_path)
        for name in installation.definition.required_env:
            if file_values.get(name) or self.environ.get(name):
                continue
            result.add_issue(
                ValidationIssue(
                    type="missing_env_var",
                    severity=Severity.ERROR,
                    description=f"Required environment variable {name} is not set",
                    field=name,
                ),
                _manual(
                    "configure_env_var",
                    f"Set {name} in {env_file_path(installation.install_path)} or the orchestrator environment",
                ),
            )

    def _check_client_config(self, result: ValidationResult) -> None:
        path = self.client_config_path
        write_config = ValidationSuggestion(
            action="add_orchestrator_config",
            description="Add the mcp-orchestrator entry to the client config",
            auto_fix=True,
            remedy=WriteClientConfig(path=str(path)),
        )

        if not path.exists():
            result.add_issue(
                ValidationIssue(
                    type="missing_client_config",
                    severity=Severity.ERROR,
                    description=f"Client config not found: {path}",
                ),
                write_config.model_copy(update={
                    "action": "create_client_config",
                    "description": "Create the client config with the mcp-orchestrator entry",
                }),
            )
            return

        try:
            read_client_config(path)
            entry = gateway_entry(path)
        except ClientConfigError as e:
            result.add_issue(
                ValidationIssue(
                    type="invalid_client_config",
                    severity=Severity.ERROR,
                    description=str(e),
                ),
                _manual("repair_client_config", f"Fix the JSON syntax in {path}"),
            )
            return

        if entry is None:
            result.add_issue(
                ValidationIssue(
                    type="missing_orchestrator_config",
                    severity=Severity.ERROR,
                    description="Client config has no mcp-orchestrator entry",
                ),
                write_config,
            )
            return

        command = entry.get("command")
        if not isinstance(command, str) or not command:
            result.add_issue(
                ValidationIssue(
                    type="invalid_orchestrator_config",
                    severity=Severity.ERROR,
                    description="mcp-orchestrator entry has an empty command",
                ),
                write_config,
            )
            return

        if not is_resolvable(command):
            result.add_issue(
                ValidationIssue(
                    type="orchestrator_binary_missing",
                    severity=Severity.ERROR,
                    description=f"mcp-orchestrator entry points at a missing executable: {command}",
                ),
                ValidationSuggestion(
                    action="fix_orchestrator_path",
                    description="Point the entry at an installed mcp-orchestrator",
                    auto_fix=True,
                    remedy=PatchOrchestratorPath(path=str(path)),
                ),
            )

    # --- AutoFix ---

    def auto_fix(self, result: ValidationResult) -> list[str]:
        """Apply every auto-fixable suggestion in order.

        Stops at the first failure; earlier fixes are not rolled back.

        Returns:
            Actions applied

        Raises:
            RemediationError: If an action fails
        """
        applied: list[str] = []
        for suggestion in result.suggestions:
            if not suggestion.auto_fix:
                continue
            self._apply(suggestion)
            applied.append(suggestion.action)
            logger.info(f"Auto-fix applied for {result.server_id}: {suggestion.action}")
        return applied

    def _apply(self, suggestion: ValidationSuggestion) -> None:
        remedy = suggestion.remedy
        if remedy is None:
            if not suggestion.command:
                raise RemediationError(f"{suggestion.action} has nothing to run")
            argv, cwd = parse_command(suggestion.command)
            remedy = RunBuildStep(argv=argv, cwd=cwd or os.getcwd())

        if isinstance(remedy, RunBuildStep):
            self._run_build_step(suggestion.action, remedy)
        elif isinstance(remedy, (WriteClientConfig, PatchOrchestratorPath)):
            try:
                configure_client(Path(remedy.path), self.gateway_command)
            except ClientConfigError as e:
                raise RemediationError(f"{suggestion.action} failed: {e}") from e

    def _run_build_step(self, action: str, step: RunBuildStep) -> None:
        allowed, reason = validate_build_argv(step.argv, step.cwd)
        if not allowed:
            raise RemediationError(f"{action} blocked: {reason}")

        outcome = self._run(step.argv, cwd=step.cwd, timeout_seconds=self.build_timeout)
        if not outcome.ok:
            raise RemediationError(f"{action} failed: {outcome.output}")
