"""Continuous monitor.

Runs on its own thread at a fixed interval, independent of any migration:
probes every environment, samples recent outcomes at the edge, derives error
rate / P95 latency / availability, and raises alerts on threshold breaches.
It never writes the TrafficState. On a Critical alert it can advise the
controller to roll back a running plan; the controller decides.
"""

from __future__ import annotations

import logging
import time
from threading import Event, Lock, Thread
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

import numpy as np
from pydantic import BaseModel, Field

from bluegreen import metrics
from bluegreen.alerting import AlertManager
from bluegreen.config import MonitorConfig
from bluegreen.errors import OrchestratorError
from bluegreen.models import AlertEvent, EnvironmentId, HealthVerdict, Severity, TrafficState, utcnow
from bluegreen.prober import HealthProber
from bluegreen.registry import EnvironmentRegistry
from bluegreen.resources import ResourceSampler, ResourceUsage
from bluegreen.router import EdgeRouter, RequestOutcome
from bluegreen.state_store import TrafficStateStore

logger = logging.getLogger(__name__)


class RollbackAdvisor(Protocol):
    def advise_rollback(self, alert: AlertEvent) -> bool: ...


class EdgeSample(BaseModel):
    window_seconds: float
    total: int = 0
    errors: int = 0
    error_rate: float = 0.0
    p95_latency_ms: float = 0.0
    availability_percent: float = 100.0


class MonitorSnapshot(BaseModel):
    taken_at: datetime = Field(default_factory=utcnow)
    traffic: Dict[str, int] = Field(default_factory=dict)
    verdicts: Dict[str, bool] = Field(default_factory=dict)
    edge: Optional[EdgeSample] = None
    resources: Dict[str, ResourceUsage] = Field(default_factory=dict)
    alerts: List[str] = Field(default_factory=list)


def summarize(outcomes: List[RequestOutcome], window_seconds: float) -> EdgeSample:
    """Derive error rate, P95 latency and availability from raw outcomes."""
    if not outcomes:
        return EdgeSample(window_seconds=window_seconds)
    total = len(outcomes)
    errors = sum(1 for o in outcomes if o.is_error)
    latencies = np.array([o.latency_ms for o in outcomes], dtype=float)
    return EdgeSample(
        window_seconds=window_seconds,
        total=total,
        errors=errors,
        error_rate=errors / total,
        p95_latency_ms=float(np.percentile(latencies, 95)),
        availability_percent=round((total - errors) / total * 100, 2),
    )


class ContinuousMonitor:
    def __init__(
        self,
        registry: EnvironmentRegistry,
        prober: HealthProber,
        store: TrafficStateStore,
        router: EdgeRouter,
        alerts: AlertManager,
        config: MonitorConfig,
        advisor: Optional[RollbackAdvisor] = None,
        clock: Callable[[], float] = time.monotonic,
        resources: Optional[ResourceSampler] = None,
    ) -> None:
        self.registry = registry
        self.prober = prober
        self.store = store
        self.router = router
        self.alerts = alerts
        self.config = config
        self.advisor = advisor
        self.resources = resources
        self.clock = clock
        self.started_at = clock()
        self._stop = Event()
        self._thread: Optional[Thread] = None
        self._lock = Lock()
        self._latest: Optional[MonitorSnapshot] = None
        self._breach_started: Optional[float] = None

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="bluegreen-monitor", daemon=True)
        self._thread.start()
        logger.info(f"Continuous monitoring started (interval {self.config.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
        logger.info("Continuous monitoring stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as exc:
                logger.exception("Monitoring cycle failed")
                self.alerts.emit(AlertEvent(
                    type="MONITORING_ERROR",
                    message=f"Monitoring cycle failed: {exc}",
                    severity=Severity.WARNING,
                ))
            self._stop.wait(self.config.interval_seconds)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------
    def tick(self) -> MonitorSnapshot:
        state = self.store.read()
        verdicts = {env_id: self.prober.probe(env_id) for env_id in self.registry.ids()}
        sample = self.sample_edge()
        usage = self.sample_resources()
        raised: List[AlertEvent] = []

        for env_id, verdict in verdicts.items():
            event = self._health_alert(env_id, verdict, state)
            if event is not None:
                raised.append(event)
        raised.extend(self._threshold_alerts(sample))
        raised.extend(self._resource_alerts(usage))

        dispatched = [event for event in raised if self.alerts.emit(event)]
        for event in dispatched:
            if event.severity == Severity.CRITICAL and self.advisor is not None:
                try:
                    self.advisor.advise_rollback(event)
                except Exception:
                    logger.exception(f"Rollback advice for {event.type} failed")

        snapshot = MonitorSnapshot(
            traffic={k.value: v for k, v in state.weights.items()},
            verdicts={k.value: v.healthy for k, v in verdicts.items()},
            edge=sample,
            resources={k.value: v for k, v in usage.items()},
            alerts=[event.type for event in dispatched],
        )
        with self._lock:
            self._latest = snapshot
        return snapshot

    def sample_edge(self) -> EdgeSample:
        sample = summarize(self.router.recent_outcomes(self.config.window_seconds), self.config.window_seconds)
        metrics.EDGE_ERROR_RATE.set(sample.error_rate)
        metrics.EDGE_P95_LATENCY.set(sample.p95_latency_ms)
        metrics.EDGE_AVAILABILITY.set(sample.availability_percent)
        return sample

    def sample_resources(self) -> Dict[EnvironmentId, ResourceUsage]:
        """Container usage per environment; empty when unavailable."""
        if self.resources is None:
            return {}
        try:
            usage = self.resources.sample()
        except OrchestratorError as exc:
            logger.warning(f"Resource sampling failed: {exc.message}")
            return {}
        for env_id, item in usage.items():
            metrics.ENV_CPU.labels(environment=env_id.value).set(item.cpu_ratio)
            metrics.ENV_MEMORY.labels(environment=env_id.value).set(item.memory_ratio)
        return usage

    def edge_breached(self) -> bool:
        """Fresh sample says the error-rate threshold is exceeded."""
        sample = self.sample_edge()
        return sample.total >= self.config.min_requests and sample.error_rate > self.config.error_rate_threshold

    def latest(self) -> Optional[MonitorSnapshot]:
        with self._lock:
            return self._latest

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------
    def overall_status(self) -> str:
        verdicts = self.registry.latest_verdicts()
        state = self.store.read()
        serving = state.serving()
        recent = self.alerts.recent(limit=20)
        now = utcnow()

        if any(a.severity == Severity.CRITICAL and (now - a.timestamp).total_seconds() < 300 for a in recent):
            return "CRITICAL"
        serving_health = [verdicts.get(env_id) for env_id in serving]
        if serving_health and all(v is not None and not v.healthy for v in serving_health):
            return "CRITICAL"
        if any(v is not None and not v.healthy for v in verdicts.values()):
            return "DEGRADED"
        if any(a.severity == Severity.WARNING and (now - a.timestamp).total_seconds() < 600 for a in recent):
            return "WARNING"
        return "HEALTHY"

    def dashboard(self) -> dict:
        latest = self.latest()
        return {
            "timestamp": utcnow().isoformat(),
            "status": self.overall_status(),
            "metrics": latest.model_dump(mode="json") if latest else None,
            "alerts": [a.model_dump(mode="json") for a in self.alerts.recent(limit=10)],
            "uptime_seconds": int(self.clock() - self.started_at),
            "thresholds": {
                "error_rate": self.config.error_rate_threshold,
                "p95_latency_ms": self.config.p95_latency_ms_threshold,
                "availability_percent": self.config.availability_threshold,
                "cpu_ratio": self.config.cpu_threshold,
                "memory_ratio": self.config.memory_threshold,
            },
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _health_alert(self, env_id: EnvironmentId, verdict: HealthVerdict, state: TrafficState) -> Optional[AlertEvent]:
        if verdict.healthy:
            return None
        serving = state.weight_of(env_id) > 0
        return AlertEvent(
            type="SERVICE_UNHEALTHY",
            message=f"{env_id.value} is unhealthy: {', '.join(verdict.failed_checks()) or 'unknown'}"
                    f" ({state.weight_of(env_id)}% of traffic)",
            severity=Severity.CRITICAL if serving else Severity.WARNING,
            cooldown_key=f"SERVICE_UNHEALTHY:{env_id.value}",
            environment_id=env_id,
        )

    def _threshold_alerts(self, sample: EdgeSample) -> List[AlertEvent]:
        cfg = self.config
        if sample.total < cfg.min_requests:
            self._breach_started = None
            return []

        events = []
        if sample.error_rate > cfg.error_rate_threshold:
            now = self.clock()
            if self._breach_started is None:
                self._breach_started = now
            sustained = now - self._breach_started >= cfg.cooldown_seconds
            severity = Severity.CRITICAL if sustained else Severity.WARNING
            events.append(AlertEvent(
                type="HIGH_ERROR_RATE",
                message=f"Error rate {sample.error_rate:.2%} exceeds threshold {cfg.error_rate_threshold:.2%}"
                        f" over {sample.total} requests" + (" (sustained)" if sustained else ""),
                severity=severity,
                cooldown_key=f"HIGH_ERROR_RATE:{severity.value}",
            ))
        else:
            self._breach_started = None

        if sample.p95_latency_ms > cfg.p95_latency_ms_threshold:
            events.append(AlertEvent(
                type="HIGH_RESPONSE_TIME",
                message=f"P95 latency {sample.p95_latency_ms:.0f}ms exceeds threshold {cfg.p95_latency_ms_threshold:.0f}ms",
                severity=Severity.WARNING,
            ))
        if sample.availability_percent < cfg.availability_threshold:
            events.append(AlertEvent(
                type="LOW_AVAILABILITY",
                message=f"Availability {sample.availability_percent:.2f}% below {cfg.availability_threshold:.2f}%",
                severity=Severity.WARNING,
            ))
        return events

    def _resource_alerts(self, usage: Dict[EnvironmentId, ResourceUsage]) -> List[AlertEvent]:
        cfg = self.config
        events = []
        for env_id, item in usage.items():
            if item.cpu_ratio > cfg.cpu_threshold:
                events.append(AlertEvent(
                    type="HIGH_CPU",
                    message=f"{env_id.value} ({item.container}) CPU {item.cpu_ratio:.0%} exceeds {cfg.cpu_threshold:.0%}",
                    severity=Severity.WARNING,
                    cooldown_key=f"HIGH_CPU:{env_id.value}",
                    environment_id=env_id,
                ))
            if item.memory_ratio > cfg.memory_threshold:
                events.append(AlertEvent(
                    type="HIGH_MEMORY",
                    message=f"{env_id.value} ({item.container}) memory {item.memory_ratio:.0%} exceeds {cfg.memory_threshold:.0%}",
                    severity=Severity.WARNING,
                    cooldown_key=f"HIGH_MEMORY:{env_id.value}",
                    environment_id=env_id,
                ))
        return events
