"""Pydantic schemas for orchestrator data and request/response contracts."""

from __future__ import annotations

import subprocess
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

# Rolling log cap per installation
MAX_LOG_LINES = 200


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RuntimeKind(str, Enum):
    """How a backend is built and launched."""

    NODEJS = "nodejs"
    PYTHON = "python"


class BackendStatus(str, Enum):
    """Lifecycle state of an installation."""

    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class Severity(str, Enum):
    """Severity of an issue or error record."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ErrorType(str, Enum):
    """Top-level classes of recorded failures."""

    INSTALLATION = "installation_error"
    STARTUP = "startup_error"
    TOOL_DISCOVERY = "tool_discovery_error"


class ErrorStage(str, Enum):
    """Pipeline stage a failure came from."""

    GIT_CLONE = "git_clone"
    NPM_INSTALL = "npm_install"
    NPM_BUILD = "npm_build"
    INTERPRETER_ENV = "interpreter_env"
    DEPENDENCY_INSTALL = "dependency_install"
    ENV_FILE = "env_file"
    VALIDATION = "validation"
    STARTUP = "startup"
    TOOL_DISCOVERY = "tool_discovery"


# --- Catalog & installations ---


class BackendDefinition(BaseModel):
    """Immutable catalog row describing a known tool backend."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., pattern=r"^[a-z0-9][a-z0-9_-]*$")
    name: str
    description: str = ""
    source_url: str
    runtime: RuntimeKind
    command: str
    args: tuple[str, ...] = ()
    default_port: int | None = None
    category: str = "uncategorized"
    tools_count: int = Field(default=0, ge=0)
    required_env: tuple[str, ...] = ()
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Non-secret defaults merged under the user's config at install",
    )
    entrypoint: str | None = Field(
        default=None,
        description="Compiled entrypoint relative to the install path, if the build produces one",
    )
    tool_category: str | None = Field(
        default=None,
        description="Category attached to discovered tools that declare none",
    )


class BackendInstallation(BaseModel):
    """Mutable installation record for one backend."""

    id: str
    definition: BackendDefinition
    install_path: str
    status: BackendStatus = BackendStatus.NOT_INSTALLED
    env: dict[str, str] = Field(default_factory=dict)
    logs: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    _process: subprocess.Popen | None = PrivateAttr(default=None)

    @property
    def process(self) -> subprocess.Popen | None:
        return self._process

    def attach_process(self, process: subprocess.Popen | None) -> None:
        self._process = process

    def add_log(self, line: str) -> None:
        """Append a timestamped log line, keeping only the newest entries."""
        stamp = utc_now().strftime("%Y-%m-%d %H:%M:%S")
        self.logs.append(f"[{stamp}] {line}")
        if len(self.logs) > MAX_LOG_LINES:
            self.logs = self.logs[-MAX_LOG_LINES:]

    def set_status(self, status: BackendStatus) -> None:
        self.status = status
        self.updated_at = utc_now()


class RunningBackend(BaseModel):
    """A backend that is currently up, as seen by the relay."""

    id: str
    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    install_path: str
    env: dict[str, str] = Field(default_factory=dict)
    tool_category: str | None = None
    runtime: RuntimeKind | None = None


# --- Validation & remediation ---


class RunBuildStep(BaseModel):
    """Run one build-tool command inside a directory."""

    kind: Literal["run_build_step"] = "run_build_step"
    argv: list[str]
    cwd: str


class WriteClientConfig(BaseModel):
    """Create the downstream client config and/or upsert the gateway entry."""

    kind: Literal["write_client_config"] = "write_client_config"
    path: str


class PatchOrchestratorPath(BaseModel):
    """Repoint the gateway entry at a well-known orchestrator location."""

    kind: Literal["patch_orchestrator_path"] = "patch_orchestrator_path"
    path: str


RemediationAction = Annotated[
    Union[RunBuildStep, WriteClientConfig, PatchOrchestratorPath],
    Field(discriminator="kind"),
]


class ValidationIssue(BaseModel):
    """One problem found while validating a backend."""

    type: str
    severity: Severity
    description: str
    field: str | None = None


class ValidationSuggestion(BaseModel):
    """A remediation attached to an issue."""

    action: str
    description: str
    command: str | None = None
    auto_fix: bool = False
    remedy: RemediationAction | None = None


class ValidationResult(BaseModel):
    """Outcome of validating one backend."""

    server_id: str
    is_valid: bool = True
    issues: list[ValidationIssue] = Field(default_factory=list)
    suggestions: list[ValidationSuggestion] = Field(default_factory=list)

    def add_issue(
        self,
        issue: ValidationIssue,
        *suggestions: ValidationSuggestion,
    ) -> None:
        self.issues.append(issue)
        self.suggestions.extend(suggestions)
        if issue.severity == Severity.ERROR:
            self.is_valid = False


# --- Errors & diagnostics ---


class EnhancedError(BaseModel):
    """A recorded failure with remediation hints."""

    type: ErrorType
    stage: ErrorStage
    message: str
    details: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    suggestions: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    severity: Severity = Severity.ERROR


class DiagnosticIssue(BaseModel):
    """Non-fatal problem observed during a discovery pass."""

    server_id: str
    type: str
    description: str
    severity: Severity = Severity.WARNING
    resolution: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


# --- Subprocess results ---


class CommandResult(BaseModel):
    """Result of running an external command."""

    argv: list[str]
    stdout: str
    stderr: str = ""
    exit_code: int
    timed_out: bool = False
    spawn_failed: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined output for error messages."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


# --- JSON-RPC ---


class ToolListParams(BaseModel):
    """Parameters accepted by tools/list."""

    limit: int = Field(default=25, ge=0)
    offset: int = Field(default=0, ge=0)
    category: str | None = None
    name_pattern: str | None = None
    simplified: bool = True
    ultra_minimal: bool = False


class ToolCallParams(BaseModel):
    """Parameters accepted by tools/call."""

    name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


# --- Control API ---


class InstallRequest(BaseModel):
    """Request to install a backend from the catalog."""

    server_id: str
    config: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    """Plain acknowledgement."""

    message: str
    server_id: str | None = None


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    server_id: str | None = None
    error_code: str | None = None


class BackendView(BaseModel):
    """Installation or catalog entry as reported over HTTP."""

    id: str
    name: str
    description: str
    category: str
    runtime: RuntimeKind
    status: BackendStatus
    tools_count: int
    required_env: list[str]
    port: int | None = None
    install_path: str | None = None
    command: str
    args: list[str] = Field(default_factory=list)
    pid: int | None = None


class ServerListResponse(BaseModel):
    servers: list[BackendView]


class CategoryInfo(BaseModel):
    """Catalog category with aggregate counts."""

    id: str
    name: str
    description: str
    server_count: int = 0
    tools_count: int = 0


class CategoriesResponse(BaseModel):
    categories: list[CategoryInfo]


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["ok"] = "ok"


class SystemHealth(BaseModel):
    """Aggregate health across installations."""

    status: Literal["healthy", "degraded", "unhealthy"]
    score: int = Field(..., ge=0, le=100)
    total_servers: int
    running_servers: int
    error_servers: int
    status_breakdown: dict[str, int] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
