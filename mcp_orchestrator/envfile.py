"""Per-backend .env files of flat KEY=VALUE lines."""

from __future__ import annotations

from pathlib import Path

ENV_FILE_NAME = ".env"


def env_file_path(install_path: str | Path) -> Path:
    return Path(install_path) / ENV_FILE_NAME


def read_env_file(install_path: str | Path) -> dict[str, str]:
    """Read a backend's .env; a missing file yields an empty map."""
    path = env_file_path(install_path)
    if not path.is_file():
        return {}

    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def write_env_file(install_path: str | Path, values: dict[str, str]) -> Path:
    """Write values unescaped, one KEY=VALUE per line."""
    path = env_file_path(install_path)
    lines = [f"{key}={value}" for key, value in values.items()]
    path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    return path
