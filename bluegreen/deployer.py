"""Build/update collaborators that bring an environment up at a version."""

from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

from bluegreen.errors import DeployError
from bluegreen.models import EnvironmentId

logger = logging.getLogger(__name__)


class Deployer(ABC):
    @abstractmethod
    def build_and_start(self, env_id: EnvironmentId, version: str) -> None:
        """Build ``version`` into ``env_id`` and start it; raise DeployError on failure."""

    def stop(self, env_id: EnvironmentId) -> None:
        """Stop a non-serving environment."""
        raise DeployError(f"{type(self).__name__} cannot stop environments")


class CommandDeployer(Deployer):
    """Runs configured command templates, e.g. ``docker compose up -d {environment}``.

    ``{environment}`` and ``{version}`` are substituted per argument; the
    version is also exported as ``BLUEGREEN_VERSION``.
    """

    def __init__(
        self,
        start_command: List[str],
        stop_command: Optional[List[str]] = None,
        timeout: float = 300.0,
    ) -> None:
        if not start_command:
            raise ValueError("start_command is required")
        self.start_command = start_command
        self.stop_command = stop_command or []
        self.timeout = timeout

    def build_and_start(self, env_id: EnvironmentId, version: str) -> None:
        self._run(self.start_command, env_id, version)

    def stop(self, env_id: EnvironmentId) -> None:
        if not self.stop_command:
            raise DeployError("No stop command configured")
        self._run(self.stop_command, env_id, "")

    def _run(self, template: List[str], env_id: EnvironmentId, version: str) -> None:
        command = [part.format(environment=env_id.value, version=version) for part in template]
        env = {**os.environ, "BLUEGREEN_ENVIRONMENT": env_id.value, "BLUEGREEN_VERSION": version}
        logger.info(f"Running: {' '.join(command)}")
        try:
            proc = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout, env=env)
        except subprocess.TimeoutExpired as exc:
            raise DeployError(f"{command[0]} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise DeployError(f"Cannot run {command[0]}: {exc}") from exc
        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "").strip().splitlines()[-5:]
            raise DeployError(
                f"{' '.join(command)} exited {proc.returncode}",
                details={"output": tail},
            )
