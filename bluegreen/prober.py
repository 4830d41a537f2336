"""Health probing for environments.

Every environment exposes a cheap liveness path and a deep path that
exercises its dependencies. A probe runs both against every instance
endpoint, each request under a timeout and the shared backoff policy, and
folds the results into a HealthVerdict. Remote failures never raise; they
end up as failed checks in the verdict.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Event
from typing import Callable, Dict, List, Optional, Sequence

import requests

from bluegreen import metrics
from bluegreen.backoff import BackoffPolicy
from bluegreen.errors import OperationalError, TransientError
from bluegreen.models import CheckResult, EnvironmentId, HealthVerdict
from bluegreen.registry import EnvironmentRegistry

logger = logging.getLogger(__name__)

HEALTHY_STATUSES = {"ok", "healthy", "pass", "up", "true"}


@dataclass(frozen=True)
class HealthCheck:
    name: str
    path: str
    deep: bool = False


class HealthProber:
    """Probes environments and records each verdict in the registry."""

    def __init__(
        self,
        registry: EnvironmentRegistry,
        policy: BackoffPolicy,
        liveness_path: str = "/health",
        deep_path: str = "/health/deep",
        timeout: float = 3.0,
        latency_budget_ms: float = 1000,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.timeout = timeout
        self.latency_budget_ms = latency_budget_ms
        self.session = session or requests.Session()
        self.sleep = sleep
        self.clock = clock
        self.default_checks = [
            HealthCheck("liveness", liveness_path),
            HealthCheck("deep", deep_path, deep=True),
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def probe(self, env_id: EnvironmentId, checks: Optional[Sequence[HealthCheck]] = None) -> HealthVerdict:
        env = self.registry.get(env_id)
        checks = list(checks or self.default_checks)
        results: Dict[str, CheckResult] = {}

        if not env.instance_endpoints:
            results["endpoints"] = CheckResult(ok=False, attempts=0, error="no instance endpoints registered")

        for endpoint in env.instance_endpoints:
            for check in checks:
                key = check.name if len(env.instance_endpoints) == 1 else f"{check.name}@{endpoint}"
                results[key] = self._run_check(env_id, endpoint, check)

        verdict = HealthVerdict(
            environment_id=env_id,
            healthy=bool(results) and all(r.ok for r in results.values()),
            checks=results,
        )
        self.registry.record_verdict(verdict)
        if not verdict.healthy:
            logger.warning(f"{env_id.value} unhealthy; failed checks: {verdict.failed_checks()}")
        return verdict

    def wait_until_healthy(
        self,
        env_id: EnvironmentId,
        max_wait_seconds: float,
        poll_interval_seconds: float,
        cancel: Optional[Event] = None,
    ) -> HealthVerdict:
        """Poll until a healthy verdict or the deadline; returns the last verdict.

        Setting ``cancel`` ends the wait at the next poll interval.
        """
        deadline = self.clock() + max_wait_seconds
        attempt = 0
        while True:
            attempt += 1
            verdict = self.probe(env_id)
            if verdict.healthy:
                logger.info(f"{env_id.value} healthy after {attempt} poll(s)")
                return verdict
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.error(f"{env_id.value} not healthy within {max_wait_seconds}s ({attempt} polls)")
                return verdict
            pause = min(poll_interval_seconds, remaining)
            if cancel is None:
                self.sleep(pause)
            elif cancel.wait(pause):
                logger.warning(f"Wait for {env_id.value} cancelled after {attempt} poll(s)")
                return verdict

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run_check(self, env_id: EnvironmentId, endpoint: str, check: HealthCheck) -> CheckResult:
        url = endpoint.rstrip("/") + check.path
        attempts = 0
        last: Dict[str, object] = {}

        def once() -> CheckResult:
            nonlocal attempts
            attempts += 1
            start = self.clock()
            try:
                resp = self.session.get(url, timeout=self.timeout, headers={"User-Agent": "bluegreen-prober/1.0"})
            except requests.RequestException as exc:
                last.update(error=f"{type(exc).__name__}: {exc}", status_code=None)
                raise TransientError(str(exc)) from exc
            latency_ms = (self.clock() - start) * 1000
            metrics.PROBE_LATENCY.labels(environment=env_id.value, check=check.name).observe(latency_ms / 1000)
            last.update(status_code=resp.status_code, latency_ms=latency_ms)

            if resp.status_code >= 500:
                last["error"] = f"HTTP {resp.status_code}"
                raise TransientError(f"{url} returned {resp.status_code}")
            if resp.status_code >= 400:
                # a 4xx will not fix itself, stop retrying
                return CheckResult(ok=False, latency_ms=latency_ms, status_code=resp.status_code,
                                   attempts=attempts, error=f"HTTP {resp.status_code}")

            error = _deep_body_error(resp) if check.deep else None
            if error is None and latency_ms > self.latency_budget_ms:
                error = f"latency {latency_ms:.0f}ms over budget {self.latency_budget_ms:.0f}ms"
            return CheckResult(ok=error is None, latency_ms=latency_ms, status_code=resp.status_code,
                               attempts=attempts, error=error)

        try:
            return self.policy.call(once, sleep=self.sleep, description=f"{check.name} probe of {url}")
        except OperationalError:
            return CheckResult(
                ok=False,
                latency_ms=float(last.get("latency_ms") or 0.0),
                status_code=last.get("status_code"),
                attempts=attempts,
                error=str(last.get("error") or "unreachable"),
            )


def _deep_body_error(resp: requests.Response) -> Optional[str]:
    """Interpret a deep health body; None when it reports pass."""
    try:
        body = resp.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    status = body.get("status")
    if status is not None and str(status).lower() not in HEALTHY_STATUSES:
        return f"deep status {status}"
    failing: List[str] = []
    for name, detail in (body.get("checks") or {}).items():
        detail_status = detail.get("status") if isinstance(detail, dict) else detail
        if detail_status is not None and str(detail_status).lower() not in HEALTHY_STATUSES:
            failing.append(name)
    if failing:
        return f"failing dependencies: {', '.join(sorted(failing))}"
    return None
