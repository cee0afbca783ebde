"""Subprocess execution for build steps and relay spawns."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from pathlib import Path

from mcp_orchestrator.schemas import CommandResult

logger = logging.getLogger(__name__)

# Output limits
MAX_OUTPUT_BYTES = 64 * 1024  # 64KB

# Default timeout
DEFAULT_TIMEOUT = 600  # seconds

# Executables a remediation build step may invoke
BUILD_TOOL_ALLOWLIST = frozenset({
    "git",
    "npm",
    "npx",
    "node",
    "uv",
    "python",
    "python3",
    "pip",
    "pip3",
})


class CommandBlockedError(Exception):
    """Raised when a build step names an executable outside the allowlist."""

    pass


def validate_build_argv(argv: list[str], install_path: str | None = None) -> tuple[bool, str]:
    """Check a build step against the executable allowlist.

    Args:
        argv: Command and arguments
        install_path: Backend directory whose own interpreter/pip is also allowed

    Returns:
        Tuple of (allowed, reason)
    """
    if not argv:
        return False, "Empty command"

    executable = argv[0]
    name = Path(executable).name
    if name.endswith(".exe"):
        name = name[: -len(".exe")]

    if os.sep not in executable and "/" not in executable:
        if name in BUILD_TOOL_ALLOWLIST:
            return True, "Allowed build tool"
        return False, f"'{name}' is not an allowed build tool"

    # Paths are only accepted for the backend's private interpreter or pip
    if install_path and name in {"python", "python3", "pip", "pip3"}:
        try:
            Path(executable).resolve().relative_to(Path(install_path).resolve())
        except ValueError:
            return False, f"'{executable}' is outside {install_path}"
        return True, "Allowed backend interpreter"

    return False, f"'{executable}' is not an allowed build tool"


def parse_command(command: str, default_cwd: str | None = None) -> tuple[list[str], str | None]:
    """Split a "cd DIR && CMD ..." string into (argv, cwd)."""
    command = command.strip()
    cwd = default_cwd

    if command.startswith("cd ") and "&&" in command:
        cd_part, command = command.split("&&", 1)
        cwd = cd_part.strip()[len("cd "):].strip().strip("'\"")
        command = command.strip()

    return shlex.split(command), cwd


def _truncate_output(output: str, max_bytes: int = MAX_OUTPUT_BYTES) -> str:
    """Truncate output to max_bytes."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, preserving valid UTF-8
    encoded = output.encode("utf-8", errors="replace")[:max_bytes]
    truncated = encoded.decode("utf-8", errors="replace")
    return truncated + "\n... [output truncated]"


def run_command(
    argv: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float = DEFAULT_TIMEOUT,
    input_text: str | None = None,
    merge_stderr: bool = False,
    truncate: bool = True,
) -> CommandResult:
    """Run a command to completion with a hard timeout.

    Args:
        argv: Command and arguments (no shell)
        cwd: Working directory
        env: Full environment for the child (defaults to ours)
        timeout_seconds: Wall-clock limit; the child is killed when exceeded
        input_text: Complete stdin for the child
        merge_stderr: Capture stderr into stdout
        truncate: Cap captured output size

    Returns:
        CommandResult; spawn failures and timeouts are reported with exit_code -1
    """
    logger.info(f"Executing command: {shlex.join(argv)} (cwd: {cwd or '.'})")

    try:
        result = subprocess.run(
            argv,
            input=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
            stdin=None if input_text is not None else subprocess.DEVNULL,
            timeout=timeout_seconds,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
            env=env,
        )

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if truncate:
            stdout = _truncate_output(stdout)
            stderr = _truncate_output(stderr)

        return CommandResult(
            argv=list(argv),
            stdout=stdout,
            stderr=stderr,
            exit_code=result.returncode,
        )

    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout_seconds}s: {shlex.join(argv)}")
        return CommandResult(
            argv=list(argv),
            stdout="",
            stderr=f"Command timed out after {timeout_seconds} seconds",
            exit_code=-1,
            timed_out=True,
        )

    except OSError as e:
        logger.error(f"Command could not be started: {e}")
        return CommandResult(
            argv=list(argv),
            stdout="",
            stderr=str(e),
            exit_code=-1,
            spawn_failed=True,
        )
