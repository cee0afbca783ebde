"""Typed failures, remediation hints, and per-backend error history."""

from __future__ import annotations

import logging
from collections import deque
from threading import Lock
from typing import Any

from mcp_orchestrator.schemas import EnhancedError, ErrorStage, ErrorType, Severity

logger = logging.getLogger(__name__)

# Errors kept per backend
MAX_ERRORS_PER_BACKEND = 10


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""

    pass


class BackendNotFoundError(OrchestratorError):
    """Raised when a backend id is not in the catalog or registry."""

    pass


class BackendStateError(OrchestratorError):
    """Raised when an operation is not allowed in the backend's current state."""

    pass


class BackendStartError(OrchestratorError):
    """Raised when a backend fails validation or cannot be spawned."""

    pass


class BuildError(OrchestratorError):
    """Raised when a clone or build step fails."""

    def __init__(self, stage: ErrorStage, message: str, output: str = ""):
        super().__init__(message)
        self.stage = stage
        self.output = output

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}: {self.output}" if self.output else base


# (substrings, suggestions) rules per stage; matching is case-insensitive.
# Rules that match add their suggestions; if none match, the stage fallback applies.
_Rule = tuple[tuple[str, ...], tuple[str, ...]]

_STAGE_RULES: dict[ErrorStage, tuple[_Rule, ...]] = {
    ErrorStage.GIT_CLONE: (
        (("not found", "does not exist"), (
            "Verify the repository URL is correct and accessible",
            "Check if the repository is public or if you have access permissions",
        )),
        (("permission denied", "authentication"), (
            "Configure Git authentication (SSH keys or personal access token)",
            "Run: git config --global credential.helper store",
        )),
        (("network", "timeout", "timed out", "could not resolve host"), (
            "Check your internet connection",
            "Try again in a few minutes - the repository server might be temporarily unavailable",
        )),
    ),
    ErrorStage.NPM_INSTALL: (
        (("enoent", "command not found", "no such file"), (
            "Install Node.js and npm from https://nodejs.org/",
            "Ensure npm is in your PATH",
        )),
        (("eacces", "permission denied"), (
            "Fix npm permissions: npm config set prefix ~/.npm-global",
            "Or use a Node version manager like nvm",
        )),
        (("network", "registry"), (
            "Check your internet connection",
            "Clear npm cache: npm cache clean --force",
            "Try different registry: npm config set registry https://registry.npmjs.org/",
        )),
        (("eresolve", "dependency"), (
            "Try installing with --legacy-peer-deps flag",
            "Update npm: npm install -g npm@latest",
        )),
    ),
    ErrorStage.NPM_BUILD: (
        (("script not found", "missing script"), (
            "Check if 'build' script exists in package.json",
        )),
        (("typescript", "tsc"), (
            "Install TypeScript: npm install -g typescript",
            "Check tsconfig.json configuration",
        )),
        (("memory", "heap"), (
            "Increase Node.js memory: export NODE_OPTIONS='--max-old-space-size=4096'",
            "Close other applications to free up memory",
        )),
    ),
    ErrorStage.INTERPRETER_ENV: (
        (("command not found", "no module named venv", "no such file"), (
            "Install Python 3: https://python.org/downloads/",
            "On Ubuntu: sudo apt-get install python3-venv",
            "On macOS: Install Python via Homebrew: brew install python",
        )),
        (("permission denied",), (
            "Check write permissions in the installation directory",
        )),
    ),
    ErrorStage.DEPENDENCY_INSTALL: (
        (("no such file", "requirements.txt"), (
            "Check if requirements.txt, setup.py or pyproject.toml exists",
            "Some packages might not have proper Python packaging",
        )),
        (("permission denied",), (
            "Check if the virtual environment was created properly",
        )),
        (("network", "timeout"), (
            "Check your internet connection",
            "Try using a different PyPI mirror",
        )),
        (("microsoft visual c++", "compiler"), (
            "Install Microsoft Visual C++ Build Tools (Windows)",
            "Try installing pre-compiled wheels: pip install --only-binary=:all:",
        )),
    ),
    ErrorStage.ENV_FILE: (
        (("permission denied",), ("Check write permissions in the server directory",)),
        (("no such file",), ("The server directory might not exist or be accessible",)),
    ),
    ErrorStage.STARTUP: (
        (("port", "address"), (
            "Check if another service is using the same port",
            "Try changing the server port in configuration",
        )),
        (("permission denied",), (
            "Check if the server executable has proper permissions",
            "Verify the installation completed successfully",
        )),
        (("not found", "no such file"), (
            "Reinstall the server to ensure all files are present",
            "Check if the server was built correctly",
        )),
        (("environment", "config"), (
            "Verify all required environment variables are set",
            "Check the .env file for correct configuration",
        )),
    ),
    ErrorStage.TOOL_DISCOVERY: (
        (("timeout", "timed out"), (
            "The server might be slow to start or respond",
            "Check if the server is running and accessible",
        )),
        (("connection", "network"), (
            "Verify the server is running and reachable",
            "Check firewall settings if applicable",
        )),
        (("parse", "json", "no response"), (
            "The server might not be implementing MCP protocol correctly",
            "Check server logs for MCP protocol errors",
        )),
    ),
}

_STAGE_FALLBACKS: dict[ErrorStage, tuple[str, ...]] = {
    ErrorStage.GIT_CLONE: (
        "Ensure Git is installed and accessible in your PATH",
        "Try running the clone command manually to see detailed error output",
    ),
    ErrorStage.NPM_INSTALL: (
        "Delete node_modules and package-lock.json, then retry",
        "Check if package.json exists and is valid",
    ),
    ErrorStage.NPM_BUILD: (
        "Check the build script in package.json for errors",
        "Try building manually with the exact command from package.json",
    ),
    ErrorStage.INTERPRETER_ENV: (
        "Ensure Python 3 is installed and accessible",
        "Try: python3 --version to verify installation",
    ),
    ErrorStage.DEPENDENCY_INSTALL: (
        "Upgrade pip: pip install --upgrade pip",
        "Try installing in verbose mode to see detailed errors",
    ),
    ErrorStage.STARTUP: (
        "Check server logs for more detailed error information",
        "Try reinstalling the server",
        "Verify all dependencies are properly installed",
    ),
    ErrorStage.TOOL_DISCOVERY: (
        "Restart the server and try again",
        "Check if the server supports the tools/list MCP method",
        "Verify server implementation follows MCP protocol specification",
    ),
}

# Always appended for these stages, after any matched rules
_STAGE_TRAILERS: dict[ErrorStage, tuple[str, ...]] = {
    ErrorStage.ENV_FILE: (
        "Verify the server installation completed successfully",
        "Check if the server directory exists and is writable",
    ),
    ErrorStage.VALIDATION: (
        "Run the auto-fix feature to resolve common issues automatically",
        "Check the validation details for specific problems",
        "Verify all required dependencies are installed",
        "Ensure environment variables are configured correctly",
    ),
}

GENERIC_SUGGESTIONS: tuple[str, ...] = (
    "Check the detailed error message for specific clues",
    "Try the operation again - it might be a temporary issue",
    "Verify all system requirements are met",
    "Check server logs for additional context",
)


def suggestions_for(stage: ErrorStage, error_text: str) -> list[str]:
    """Heuristic remediation hints for a failure at the given stage."""
    text = error_text.lower()
    suggestions: list[str] = []

    for needles, hints in _STAGE_RULES.get(stage, ()):
        if any(needle in text for needle in needles):
            suggestions.extend(hints)

    if stage in _STAGE_TRAILERS:
        suggestions.extend(_STAGE_TRAILERS[stage])
    elif not suggestions:
        suggestions.extend(_STAGE_FALLBACKS.get(stage, GENERIC_SUGGESTIONS))

    return suggestions


class ErrorHandler:
    """Builds EnhancedError records for one backend."""

    def __init__(self, backend_id: str, context: dict[str, Any] | None = None):
        self.backend_id = backend_id
        self.context = dict(context or {})

    def installation_error(self, error: Exception | str, stage: ErrorStage) -> EnhancedError:
        details = str(error)
        return EnhancedError(
            type=ErrorType.INSTALLATION,
            stage=stage,
            message=f"{stage.value} failed for server {self.backend_id}",
            details=details,
            context=self.context,
            suggestions=suggestions_for(stage, details),
        )

    def startup_error(self, error: Exception | str) -> EnhancedError:
        details = str(error)
        return EnhancedError(
            type=ErrorType.STARTUP,
            stage=ErrorStage.STARTUP,
            message=f"Failed to start server {self.backend_id}",
            details=details,
            context=self.context,
            suggestions=suggestions_for(ErrorStage.STARTUP, details),
        )

    def tool_discovery_error(self, error: Exception | str) -> EnhancedError:
        details = str(error)
        return EnhancedError(
            type=ErrorType.TOOL_DISCOVERY,
            stage=ErrorStage.TOOL_DISCOVERY,
            message=f"Tool discovery failed for server {self.backend_id}",
            details=details,
            context=self.context,
            suggestions=suggestions_for(ErrorStage.TOOL_DISCOVERY, details),
            severity=Severity.WARNING,
        )


class ErrorHistory:
    """Bounded per-backend history of EnhancedError records."""

    def __init__(self, max_per_backend: int = MAX_ERRORS_PER_BACKEND):
        self._max = max_per_backend
        self._errors: dict[str, deque[EnhancedError]] = {}
        self._lock = Lock()

    def record(self, backend_id: str, error: EnhancedError) -> None:
        with self._lock:
            history = self._errors.setdefault(backend_id, deque(maxlen=self._max))
            history.append(error)
        logger.error(f"[{backend_id}] {error.message}: {error.details}")

    def get(self, backend_id: str) -> list[EnhancedError]:
        with self._lock:
            return list(self._errors.get(backend_id, ()))

    def all(self) -> dict[str, list[EnhancedError]]:
        with self._lock:
            return {
                backend_id: list(history)
                for backend_id, history in self._errors.items()
                if history
            }

    def clear(self, backend_id: str) -> None:
        with self._lock:
            self._errors.pop(backend_id, None)
