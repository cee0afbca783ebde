"""Installation registry with on-disk persistence."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import Iterator

from pydantic import ValidationError

from mcp_orchestrator.catalog import Catalog
from mcp_orchestrator.envfile import read_env_file
from mcp_orchestrator.installer import has_runtime_markers
from mcp_orchestrator.schemas import BackendInstallation, BackendStatus

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Map of backend id to installation, guarded by one lock.

    Callers hold ``registry.lock`` around read-modify-write sequences;
    single reads and writes lock internally.
    """

    def __init__(self, home: Path, state_file: Path, catalog: Catalog):
        self.home = Path(home)
        self.state_file = Path(state_file)
        self.catalog = catalog
        self.lock = RLock()
        self._installations: dict[str, BackendInstallation] = {}

    def get(self, backend_id: str) -> BackendInstallation | None:
        with self.lock:
            return self._installations.get(backend_id)

    def put(self, installation: BackendInstallation) -> None:
        with self.lock:
            self._installations[installation.id] = installation

    def __contains__(self, backend_id: object) -> bool:
        with self.lock:
            return backend_id in self._installations

    def __iter__(self) -> Iterator[BackendInstallation]:
        with self.lock:
            return iter(list(self._installations.values()))

    def __len__(self) -> int:
        with self.lock:
            return len(self._installations)

    # --- Persistence ---

    def save(self) -> None:
        """Write a snapshot of every installation (no process handles).

        Raises:
            OSError: If the state file cannot be written
        """
        with self.lock:
            snapshot = {
                backend_id: installation.model_dump(mode="json")
                for backend_id, installation in self._installations.items()
            }

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.state_file.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2)
            os.replace(tmp_path, self.state_file)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        logger.info(f"Saved {len(snapshot)} installation(s) to {self.state_file}")

    def load(self) -> int:
        """Restore installations from the state file, or detect them on disk.

        Reloaded entries are always marked installed, never running.

        Returns:
            Number of installations loaded
        """
        if not self.state_file.exists():
            logger.info("No state file found, detecting installations from filesystem")
            return self.detect()

        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("state file is not a JSON object")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read state file, falling back to filesystem detection: {e}")
            return self.detect()

        loaded: dict[str, BackendInstallation] = {}
        for backend_id, data in raw.items():
            try:
                installation = BackendInstallation(**data)
            except (TypeError, ValidationError) as e:
                logger.warning(f"Skipping unreadable state entry {backend_id}: {e}")
                continue

            if not Path(installation.install_path).is_dir():
                logger.info(f"{backend_id} installation not found at {installation.install_path}, skipping")
                continue

            current = self.catalog.get(backend_id)
            if current is not None:
                installation.definition = current
            installation.set_status(BackendStatus.INSTALLED)
            installation.env = read_env_file(installation.install_path)
            loaded[backend_id] = installation
            logger.info(f"Loaded existing installation: {installation.definition.name} at {installation.install_path}")

        with self.lock:
            self._installations.update(loaded)
        return len(loaded)

    def detect(self) -> int:
        """Rebuild state from install directories matching catalog ids."""
        if not self.home.is_dir():
            return 0

        detected: dict[str, BackendInstallation] = {}
        for entry in sorted(self.home.iterdir()):
            definition = self.catalog.get(entry.name)
            if definition is None or not entry.is_dir():
                continue
            if not has_runtime_markers(definition, entry):
                logger.info(f"Directory {entry} does not look like a finished install, skipping")
                continue

            installation = BackendInstallation(
                id=definition.id,
                definition=definition,
                install_path=str(entry),
                status=BackendStatus.INSTALLED,
                env=read_env_file(entry),
            )
            installation.add_log("Detected existing installation")
            detected[definition.id] = installation

        if not detected:
            return 0

        with self.lock:
            self._installations.update(detected)
        logger.info(f"Detected {len(detected)} existing installation(s)")

        try:
            self.save()
        except OSError as e:
            logger.warning(f"Failed to save detected installations: {e}")
        return len(detected)
