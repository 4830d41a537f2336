"""Per-environment CPU and memory usage for the monitor.

Usage is read from the container runtime; ``DockerStatsSampler`` runs
``docker stats --no-stream`` once per cycle for every mapped container.
"""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence

from pydantic import BaseModel

from bluegreen.errors import OperationalError, TransientError
from bluegreen.models import EnvironmentId

logger = logging.getLogger(__name__)

DOCKER_STATS_COMMAND = ["docker", "stats", "--no-stream", "--format", "{{json .}}"]


class ResourceUsage(BaseModel):
    environment_id: EnvironmentId
    container: str
    cpu_ratio: float
    memory_ratio: float


class ResourceSampler(ABC):
    @abstractmethod
    def sample(self) -> Dict[EnvironmentId, ResourceUsage]:
        """Current usage per environment; environments without data are left out."""


class DockerStatsSampler(ResourceSampler):
    def __init__(
        self,
        containers: Dict[EnvironmentId, str],
        command: Optional[Sequence[str]] = None,
        timeout: float = 10.0,
    ) -> None:
        self.containers = dict(containers)
        self.command = list(command or DOCKER_STATS_COMMAND)
        self.timeout = timeout

    def sample(self) -> Dict[EnvironmentId, ResourceUsage]:
        if not self.containers:
            return {}
        command = self.command + list(self.containers.values())
        try:
            proc = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise TransientError(f"{' '.join(command)} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise OperationalError(f"Cannot run {' '.join(command)}: {exc}") from exc
        if proc.returncode != 0:
            raise TransientError(f"{' '.join(command)} exited {proc.returncode}: {(proc.stderr or '').strip()}")

        by_container = {}
        for line in proc.stdout.splitlines():
            parsed = parse_stats_line(line)
            if parsed is not None:
                by_container[parsed[0]] = parsed

        usage = {}
        for env_id, container in self.containers.items():
            parsed = by_container.get(container)
            if parsed is None:
                logger.debug(f"No stats reported for {container} ({env_id.value})")
                continue
            usage[env_id] = ResourceUsage(
                environment_id=env_id, container=container, cpu_ratio=parsed[1], memory_ratio=parsed[2]
            )
        return usage


def parse_stats_line(line: str) -> Optional[tuple]:
    """``{"Name": .., "CPUPerc": "12.5%", "MemPerc": "40%"}`` -> (name, 0.125, 0.4)."""
    try:
        stats = json.loads(line)
        name = stats["Name"]
        cpu = _percent(stats.get("CPUPerc"))
        memory = _percent(stats.get("MemPerc"))
    except (ValueError, KeyError, TypeError):
        return None
    return name, cpu, memory


def _percent(value) -> float:
    text = str(value or "0").strip().rstrip("%").strip()
    if text in ("", "--"):
        return 0.0
    return float(text) / 100

