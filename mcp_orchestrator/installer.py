"""Clone-and-build pipelines for backend installations."""

from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path
from typing import Callable

from mcp_orchestrator.errors import BuildError
from mcp_orchestrator.runner import run_command
from mcp_orchestrator.schemas import (
    BackendDefinition,
    CommandResult,
    ErrorStage,
    RuntimeKind,
)

logger = logging.getLogger(__name__)

VENV_DIR = "venv"
REQUIREMENTS_FILE = "requirements.txt"
PACKAGE_JSON = "package.json"
NODE_MODULES = "node_modules"

Runner = Callable[..., CommandResult]


def venv_python(install_path: str | Path) -> Path:
    """The backend's private interpreter (POSIX or Windows layout)."""
    venv = Path(install_path) / VENV_DIR
    posix = venv / "bin" / "python"
    if posix.exists() or sys.platform != "win32":
        return posix
    return venv / "Scripts" / "python.exe"


def venv_pip(install_path: str | Path) -> Path:
    venv = Path(install_path) / VENV_DIR
    posix = venv / "bin" / "pip"
    if posix.exists() or sys.platform != "win32":
        return posix
    return venv / "Scripts" / "pip.exe"


def find_venv_python(install_path: str | Path) -> Path | None:
    """Existing private interpreter, checking both layouts."""
    venv = Path(install_path) / VENV_DIR
    for candidate in (venv / "bin" / "python", venv / "Scripts" / "python.exe"):
        if candidate.exists():
            return candidate
    return None


def launch_argv(definition: BackendDefinition, install_path: str | Path) -> list[str]:
    """Command line that starts a backend from its install directory.

    Interpreted backends run under their own virtualenv interpreter.
    """
    if definition.runtime == RuntimeKind.PYTHON:
        python = find_venv_python(install_path) or venv_python(install_path)
        return [str(python), *definition.args]
    return [definition.command, *definition.args]


def missing_runtime_marker(runtime: RuntimeKind, install_path: str | Path) -> str | None:
    """Name of the first build artifact a runtime needs that is absent, or None."""
    path = Path(install_path)
    if not path.is_dir():
        return str(path)
    if runtime == RuntimeKind.PYTHON:
        return None if (path / VENV_DIR).is_dir() else VENV_DIR
    if not (path / PACKAGE_JSON).is_file():
        return PACKAGE_JSON
    if not (path / NODE_MODULES).is_dir():
        return NODE_MODULES
    return None


def has_runtime_markers(definition: BackendDefinition, install_path: str | Path) -> bool:
    """Whether a directory looks like a finished install of this backend."""
    return missing_runtime_marker(definition.runtime, install_path) is None


class Installer:
    """Runs the clone and build steps for one backend at a time."""

    def __init__(self, timeout_seconds: int = 600, runner: Runner = run_command):
        self.timeout_seconds = timeout_seconds
        self._run = runner

    def _step(self, argv: list[str], cwd: str | None, stage: ErrorStage, what: str) -> CommandResult:
        result = self._run(argv, cwd=cwd, timeout_seconds=self.timeout_seconds)
        if not result.ok:
            raise BuildError(stage, f"{what} failed", result.output)
        return result

    def clone(self, definition: BackendDefinition, install_path: str | Path) -> None:
        """Clone the backend's source, replacing any stale directory."""
        path = Path(install_path)
        if path.exists():
            logger.info(f"Removing existing directory: {path}")
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise BuildError(ErrorStage.GIT_CLONE, "failed to remove existing directory", str(e)) from e

        path.parent.mkdir(parents=True, exist_ok=True)
        self._step(
            ["git", "clone", definition.source_url, str(path)],
            None,
            ErrorStage.GIT_CLONE,
            "git clone",
        )

    def build(self, definition: BackendDefinition, install_path: str | Path) -> None:
        """Run the runtime-specific build pipeline."""
        if definition.runtime == RuntimeKind.PYTHON:
            self._build_python(str(install_path))
        else:
            self._build_node(str(install_path))

    def _build_node(self, install_path: str) -> None:
        self._step(["npm", "install"], install_path, ErrorStage.NPM_INSTALL, "npm install")
        self._step(["npm", "run", "build"], install_path, ErrorStage.NPM_BUILD, "npm run build")

    def _build_python(self, install_path: str) -> None:
        if shutil.which("uv"):
            result = self._run(["uv", "venv", VENV_DIR], cwd=install_path, timeout_seconds=self.timeout_seconds)
            if result.ok:
                self._install_python_deps(install_path, ["uv", "pip", "install", "--python", str(venv_python(install_path))])
                return
            logger.warning(f"uv venv failed, falling back to venv+pip: {result.output}")

        self._step(["python3", "-m", "venv", VENV_DIR], install_path, ErrorStage.INTERPRETER_ENV, "python venv creation")

        pip = str(venv_pip(install_path))
        upgrade = self._run([pip, "install", "--upgrade", "pip"], cwd=install_path, timeout_seconds=self.timeout_seconds)
        if not upgrade.ok:
            logger.warning(f"Failed to upgrade pip in {install_path}, continuing")

        self._install_python_deps(install_path, [pip, "install"])

    def _install_python_deps(self, install_path: str, pip_install: list[str]) -> None:
        """Editable install of the project, falling back to requirements.txt."""
        editable = self._run([*pip_install, "-e", "."], cwd=install_path, timeout_seconds=self.timeout_seconds)
        if editable.ok:
            return

        if not (Path(install_path) / REQUIREMENTS_FILE).is_file():
            raise BuildError(
                ErrorStage.DEPENDENCY_INSTALL,
                f"editable install failed and no {REQUIREMENTS_FILE} found",
                editable.output,
            )

        self._step(
            [*pip_install, "-r", REQUIREMENTS_FILE],
            install_path,
            ErrorStage.DEPENDENCY_INSTALL,
            f"install from {REQUIREMENTS_FILE}",
        )
