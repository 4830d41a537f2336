"""Edge router collaborators.

The orchestrator only needs three things from whatever sits at the edge:
adopt a TrafficState on a reload signal, report what it is currently routing,
and hand back recent request outcomes for the monitor.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests
from pydantic import BaseModel, Field

from bluegreen.errors import OperationalError, TransientError
from bluegreen.models import EnvironmentId, TrafficState, utcnow

logger = logging.getLogger(__name__)

REVISION_HEADER = "X-Bluegreen-Revision"


class RouterConfigSnapshot(BaseModel):
    """What the edge reports it is routing."""
    weights: Dict[EnvironmentId, int] = Field(default_factory=dict)
    revision: Optional[int] = None


class RequestOutcome(BaseModel):
    timestamp: datetime
    status_code: int
    latency_ms: float = 0.0

    @property
    def is_error(self) -> bool:
        return self.status_code >= 500 or self.status_code == 0


class EdgeProbe(BaseModel):
    """Result of one synthetic request through the edge."""
    ok: bool
    status_code: Optional[int] = None
    latency_ms: float = 0.0
    revision: Optional[int] = None
    error: Optional[str] = None


class EdgeRouter(ABC):
    @abstractmethod
    def reload(self, state: TrafficState) -> None:
        """Hand ``state`` to the edge and signal it to reload.

        Raises TransientError for hiccups worth retrying.
        """

    @abstractmethod
    def current_config(self) -> RouterConfigSnapshot:
        """What the edge currently routes."""

    @abstractmethod
    def recent_outcomes(self, window_seconds: float) -> List[RequestOutcome]:
        """Request outcomes seen at the edge over the trailing window."""

    def synthetic_request(self, timeout: float = 3.0) -> EdgeProbe:
        """Sampled request through the edge; routers without one report ok."""
        return EdgeProbe(ok=True)


# ----------------------------------------------------------------------
# nginx
# ----------------------------------------------------------------------
_HEADER_RE = re.compile(r"^# bluegreen-state: (?P<payload>\{.*\})\s*$", re.MULTILINE)
_STATUS_RE = re.compile(r'"\s(?P<status>\d{3})\s')
_TIME_RE = re.compile(r"\[(?P<ts>[^\]]+)\]")
_RESPONSE_TIME_RE = re.compile(r"response_time=(?P<rt>\d+\.?\d*)")
_NGINX_TIME_FMT = "%d/%b/%Y:%H:%M:%S %z"


def render_nginx_include(state: TrafficState, endpoints: Dict[EnvironmentId, List[str]]) -> str:
    """Render the http-level include nginx reads the split from.

    The server block is expected to ``proxy_pass http://$bluegreen_upstream``
    and ``add_header X-Bluegreen-Revision $bluegreen_revision always``.
    """
    header = json.dumps({
        "revision": state.revision,
        "weights": {k.value: v for k, v in state.weights.items()},
    })
    lines = [
        f"# bluegreen-state: {header}",
        "# Generated by the bluegreen orchestrator; edits are overwritten.",
        "",
    ]

    serving = [(env_id, pct) for env_id, pct in state.weights.items() if pct > 0]
    lines.append('split_clients "${remote_addr}${request_id}" $bluegreen_upstream {')
    for env_id, pct in serving[:-1]:
        lines.append(f"    {pct}% bluegreen_{env_id.value};")
    lines.append(f"    * bluegreen_{serving[-1][0].value};")
    lines.append("}")
    lines.append("")
    lines.append("map $host $bluegreen_revision {")
    lines.append(f'    default "{state.revision}";')
    lines.append("}")

    for env_id, urls in endpoints.items():
        if not urls:
            continue
        lines.append("")
        lines.append(f"upstream bluegreen_{env_id.value} {{")
        for url in urls:
            parsed = urlparse(url)
            lines.append(f"    server {parsed.netloc or url};")
        lines.append("}")
    return "\n".join(lines) + "\n"


class NginxEdgeRouter(EdgeRouter):
    """Drives nginx through a generated upstream include file."""

    def __init__(
        self,
        include_path: str | Path,
        endpoints: Dict[EnvironmentId, List[str]],
        edge_url: Optional[str] = None,
        access_log: Optional[str | Path] = None,
        reload_command: Optional[List[str]] = None,
        test_command: Optional[List[str]] = None,
        command_timeout: float = 10.0,
        sample_lines: int = 500,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.include_path = Path(include_path)
        self.endpoints = endpoints
        self.edge_url = edge_url
        self.access_log = Path(access_log) if access_log else None
        self.reload_command = reload_command or ["nginx", "-s", "reload"]
        self.test_command = test_command or ["nginx", "-t"]
        self.command_timeout = command_timeout
        self.sample_lines = sample_lines
        self.session = session or requests.Session()

    def reload(self, state: TrafficState) -> None:
        previous = self.include_path.read_text(encoding="utf-8") if self.include_path.exists() else None
        self._write_atomic(render_nginx_include(state, self.endpoints))

        try:
            self._run(self.test_command)
        except OperationalError:
            # keep nginx pointed at something it accepts
            if previous is not None:
                self._write_atomic(previous)
            raise
        self._run(self.reload_command)
        logger.info(f"nginx reloaded with traffic revision {state.revision}")

    def current_config(self) -> RouterConfigSnapshot:
        if not self.include_path.exists():
            return RouterConfigSnapshot()
        match = _HEADER_RE.search(self.include_path.read_text(encoding="utf-8"))
        if not match:
            return RouterConfigSnapshot()
        payload = json.loads(match.group("payload"))
        return RouterConfigSnapshot(
            weights={EnvironmentId(k): int(v) for k, v in payload.get("weights", {}).items()},
            revision=payload.get("revision"),
        )

    def synthetic_request(self, timeout: float = 3.0) -> EdgeProbe:
        if not self.edge_url:
            return EdgeProbe(ok=True)
        start = datetime.now()
        try:
            resp = self.session.get(self.edge_url, timeout=timeout, headers={"User-Agent": "bluegreen-verifier/1.0"})
        except requests.RequestException as exc:
            return EdgeProbe(ok=False, error=str(exc))
        latency_ms = (datetime.now() - start).total_seconds() * 1000
        revision = resp.headers.get(REVISION_HEADER)
        return EdgeProbe(
            ok=resp.status_code < 400,
            status_code=resp.status_code,
            latency_ms=latency_ms,
            revision=int(revision) if revision and revision.isdigit() else None,
        )

    def recent_outcomes(self, window_seconds: float) -> List[RequestOutcome]:
        if not self.access_log or not self.access_log.exists():
            return []
        with open(self.access_log, "r", encoding="utf-8", errors="replace") as f:
            tail = deque(f, maxlen=self.sample_lines)

        cutoff = utcnow() - timedelta(seconds=window_seconds)
        outcomes = []
        for line in tail:
            outcome = parse_access_line(line)
            if outcome is not None and outcome.timestamp >= cutoff:
                outcomes.append(outcome)
        return outcomes

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _write_atomic(self, content: str) -> None:
        self.include_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".bluegreen.", dir=self.include_path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self.include_path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise TransientError(f"Failed to write {self.include_path}: {exc}") from exc

    def _run(self, command: List[str]) -> None:
        try:
            proc = subprocess.run(command, capture_output=True, text=True, timeout=self.command_timeout)
        except subprocess.TimeoutExpired as exc:
            raise TransientError(f"{' '.join(command)} timed out after {self.command_timeout}s") from exc
        except OSError as exc:
            raise OperationalError(f"Cannot run {' '.join(command)}: {exc}") from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            if command == self.test_command:
                raise OperationalError(f"nginx configuration test failed: {stderr}")
            raise TransientError(f"{' '.join(command)} exited {proc.returncode}: {stderr}")


def parse_access_line(line: str) -> Optional[RequestOutcome]:
    """Parse one combined-format access log line with a response_time= field."""
    status_match = _STATUS_RE.search(line)
    time_match = _TIME_RE.search(line)
    if not status_match or not time_match:
        return None
    try:
        ts = datetime.strptime(time_match.group("ts"), _NGINX_TIME_FMT)
    except ValueError:
        return None
    rt_match = _RESPONSE_TIME_RE.search(line)
    latency_ms = float(rt_match.group("rt")) * 1000 if rt_match else 0.0
    return RequestOutcome(timestamp=ts, status_code=int(status_match.group("status")), latency_ms=latency_ms)
