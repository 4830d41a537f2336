# tests/conftest.py
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from bluegreen.alerting import AlertManager, AlertSink
from bluegreen.backoff import BackoffPolicy
from bluegreen.config import MigrationConfig, MonitorConfig, ProberConfig
from bluegreen.controller import DeploymentController
from bluegreen.deployer import Deployer
from bluegreen.errors import DeployError, TransientError
from bluegreen.executor import TrafficSwitchExecutor
from bluegreen.history import DeploymentHistory
from bluegreen.locking import PlanLock
from bluegreen.models import CheckResult, EnvironmentId, HealthVerdict
from bluegreen.monitor import ContinuousMonitor
from bluegreen.planner import MigrationPlanner
from bluegreen.registry import EnvironmentRegistry
from bluegreen.router import EdgeProbe, EdgeRouter, RequestOutcome, RouterConfigSnapshot
from bluegreen.state_store import TrafficStateStore

PRIMARY = EnvironmentId.PRIMARY
SECONDARY = EnvironmentId.SECONDARY


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRouter(EdgeRouter):
    """Adopts every reload instantly unless told otherwise."""

    def __init__(self):
        self.reloads = []
        self.adopt = True
        self.fail_reloads = 0
        self.fail_after: Optional[int] = None
        self.synthetic_ok = True
        self.outcomes: List[RequestOutcome] = []
        self._config = RouterConfigSnapshot()

    def reload(self, state):
        if self.fail_reloads > 0:
            self.fail_reloads -= 1
            raise TransientError("reload hiccup")
        if self.fail_after is not None and len(self.reloads) >= self.fail_after:
            raise TransientError("edge unreachable")
        self.reloads.append(state)
        if self.adopt:
            self._config = RouterConfigSnapshot(weights=dict(state.weights), revision=state.revision)

    def current_config(self):
        return self._config

    def recent_outcomes(self, window_seconds):
        return list(self.outcomes)

    def synthetic_request(self, timeout=3.0):
        return EdgeProbe(ok=self.synthetic_ok, status_code=200 if self.synthetic_ok else 502)


class FakeProber:
    """Answers from a per-environment script, then from ``health``."""

    def __init__(self, registry: EnvironmentRegistry):
        self.registry = registry
        self.health: Dict[EnvironmentId, bool] = {env_id: True for env_id in registry.ids()}
        self.scripts: Dict[EnvironmentId, List[bool]] = {}
        self.calls: List[EnvironmentId] = []

    def probe(self, env_id, checks=None):
        self.calls.append(env_id)
        script = self.scripts.get(env_id)
        healthy = script.pop(0) if script else self.health[env_id]
        check = CheckResult(
            ok=healthy,
            status_code=200 if healthy else 503,
            latency_ms=12.0,
            error=None if healthy else "HTTP 503",
        )
        verdict = HealthVerdict(environment_id=env_id, healthy=healthy, checks={"liveness": check})
        self.registry.record_verdict(verdict)
        return verdict

    def wait_until_healthy(self, env_id, max_wait_seconds, poll_interval_seconds, cancel=None):
        return self.probe(env_id)


class FakeDeployer(Deployer):
    def __init__(self):
        self.started = []
        self.stopped = []
        self.fail = False

    def build_and_start(self, env_id, version):
        if self.fail:
            raise DeployError(f"build of {version} failed")
        self.started.append((env_id, version))

    def stop(self, env_id):
        self.stopped.append(env_id)


class RecordingSink(AlertSink):
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


@dataclass
class Harness:
    registry: EnvironmentRegistry
    store: TrafficStateStore
    router: FakeRouter
    prober: FakeProber
    executor: TrafficSwitchExecutor
    lock: PlanLock
    alerts: AlertManager
    sink: RecordingSink
    planner: MigrationPlanner
    history: DeploymentHistory
    deployer: FakeDeployer
    controller: DeploymentController
    monitor: ContinuousMonitor
    clock: FakeClock


def make_harness(state_dir, settle_seconds: float = 0.0, monitor_config: Optional[MonitorConfig] = None) -> Harness:
    registry = EnvironmentRegistry.from_endpoints({
        PRIMARY: ["http://127.0.0.1:3001"],
        SECONDARY: ["http://127.0.0.1:3002"],
    })
    clock = FakeClock()
    store = TrafficStateStore(state_dir, registry.ids(), PRIMARY)
    router = FakeRouter()
    prober = FakeProber(registry)
    policy = BackoffPolicy(max_attempts=2, base_delay=0.0, jitter=0.0)
    executor = TrafficSwitchExecutor(store, router, policy, adoption_timeout=0.05, adoption_poll_interval=0.01)
    lock = PlanLock(state_dir)
    sink = RecordingSink()
    alerts = AlertManager([sink], cooldown_seconds=60, clock=clock)
    planner = MigrationPlanner(store, executor, prober, registry, lock, alerts, settle_seconds=settle_seconds)
    history = DeploymentHistory(state_dir)
    deployer = FakeDeployer()
    controller = DeploymentController(
        registry, store, executor, prober, planner, lock, history, alerts,
        deployer=deployer,
        migration=MigrationConfig(),
        prober_config=ProberConfig(wait_max_seconds=0, poll_interval_seconds=0),
        rollback_wait_seconds=5,
    )
    monitor = ContinuousMonitor(
        registry, prober, store, router, alerts,
        monitor_config or MonitorConfig(interval_seconds=0.01, min_requests=5, cooldown_seconds=60),
        advisor=controller,
        clock=clock,
    )
    controller.monitor = monitor
    return Harness(registry, store, router, prober, executor, lock, alerts, sink, planner,
                   history, deployer, controller, monitor, clock)


def outcomes(ok: int, errors: int, latency_ms: float = 50.0) -> List[RequestOutcome]:
    now = datetime.now(timezone.utc)
    return (
        [RequestOutcome(timestamp=now, status_code=200, latency_ms=latency_ms) for _ in range(ok)]
        + [RequestOutcome(timestamp=now, status_code=503, latency_ms=latency_ms) for _ in range(errors)]
    )


@pytest.fixture
def harness(tmp_path):
    h = make_harness(tmp_path / "state")
    yield h
    h.controller.shutdown()
