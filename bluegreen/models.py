"""Records shared across the orchestrator.

Everything here is a pydantic model so it can be persisted as JSON and handed
straight to the HTTP layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

UTC = timezone.utc


def utcnow() -> datetime:
    return datetime.now(UTC)


class EnvironmentId(str, Enum):
    """Closed set of deployable environments."""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"


class Role(str, Enum):
    ACTIVE = "active"
    STANDBY = "standby"
    DRAINING = "draining"


class TrafficMode(str, Enum):
    SINGLE = "single"                  # one environment takes everything
    DUAL = "dual"                      # split between two environments
    CANARY = "canary"                  # fixed small split held for observation
    HIGH_AVAILABILITY = "high_availability"  # more than two environments serving


class PlanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def terminal(self) -> bool:
        return self in (PlanStatus.SUCCEEDED, PlanStatus.FAILED, PlanStatus.ROLLED_BACK)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Outcome(str, Enum):
    SUCCESS = "success"
    NOOP = "noop"
    REJECTED = "rejected"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------
class CheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    latency_ms: float = 0.0
    status_code: Optional[int] = None
    attempts: int = 1
    error: Optional[str] = None


class HealthVerdict(BaseModel):
    """Outcome of probing one environment at one point in time."""
    model_config = ConfigDict(frozen=True)

    environment_id: EnvironmentId
    healthy: bool
    checks: Dict[str, CheckResult] = Field(default_factory=dict)
    evaluated_at: datetime = Field(default_factory=utcnow)

    def failed_checks(self) -> List[str]:
        return [name for name, check in self.checks.items() if not check.ok]


# ----------------------------------------------------------------------
# Environments and traffic
# ----------------------------------------------------------------------
class Environment(BaseModel):
    id: EnvironmentId
    version: Optional[str] = None
    instance_endpoints: List[str] = Field(default_factory=list)
    health: Optional[HealthVerdict] = None
    role: Role = Role.STANDBY


class TrafficState(BaseModel):
    """Which environment receives what share of incoming requests."""
    model_config = ConfigDict(frozen=True)

    weights: Dict[EnvironmentId, int]
    mode: TrafficMode = TrafficMode.SINGLE
    revision: int = 0
    last_updated: datetime = Field(default_factory=utcnow)

    @field_validator("weights")
    @classmethod
    def _weights_sum_to_100(cls, weights: Dict[EnvironmentId, int]) -> Dict[EnvironmentId, int]:
        if not weights:
            raise ValueError("weights must name at least one environment")
        for env_id, pct in weights.items():
            if pct < 0 or pct > 100:
                raise ValueError(f"weight for {env_id.value} out of range: {pct}")
        total = sum(weights.values())
        if total != 100:
            raise ValueError(f"weights must sum to 100, got {total}")
        return weights

    def weight_of(self, env_id: EnvironmentId) -> int:
        return self.weights.get(env_id, 0)

    def serving(self) -> List[EnvironmentId]:
        return [env_id for env_id, pct in self.weights.items() if pct > 0]

    def dominant(self) -> EnvironmentId:
        """Environment holding the largest share (first one on ties)."""
        return max(self.weights, key=lambda env_id: self.weights[env_id])

    def same_routing(self, weights: Dict[EnvironmentId, int]) -> bool:
        """True when ``weights`` route traffic exactly like this state."""
        keys = set(self.weights) | set(weights)
        return all(self.weights.get(k, 0) == weights.get(k, 0) for k in keys)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights": {k.value: v for k, v in self.weights.items()},
            "mode": self.mode.value,
            "revision": self.revision,
            "last_updated": self.last_updated.isoformat(),
        }


def infer_mode(weights: Dict[EnvironmentId, int]) -> TrafficMode:
    serving = [pct for pct in weights.values() if pct > 0]
    if len(serving) <= 1:
        return TrafficMode.SINGLE
    if len(serving) == 2:
        return TrafficMode.DUAL
    return TrafficMode.HIGH_AVAILABILITY


# ----------------------------------------------------------------------
# Migration plans
# ----------------------------------------------------------------------
class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    percentage: int
    health_verdict: Optional[HealthVerdict] = None
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: float = 0.0
    skipped_apply: bool = False
    error: Optional[str] = None


class MigrationPlan(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    source: EnvironmentId
    target: EnvironmentId
    steps: List[int] = Field(default_factory=lambda: [25, 50, 75, 100])
    mode: TrafficMode = TrafficMode.DUAL
    current_step_index: int = 0
    status: PlanStatus = PlanStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    history: List[StepResult] = Field(default_factory=list)
    baseline: Optional[TrafficState] = None
    error: Optional[str] = None
    rollback_error: Optional[str] = None
    requires_operator: bool = False
    aborted: bool = False

    @field_validator("steps")
    @classmethod
    def _steps_monotonic(cls, steps: List[int]) -> List[int]:
        if not steps:
            raise ValueError("a plan needs at least one step")
        for pct in steps:
            if pct <= 0 or pct > 100:
                raise ValueError(f"step percentage out of range: {pct}")
        if any(b <= a for a, b in zip(steps, steps[1:])):
            raise ValueError(f"steps must be strictly increasing: {steps}")
        return steps


# ----------------------------------------------------------------------
# Alerts, history and results
# ----------------------------------------------------------------------
class AlertEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    message: str
    severity: Severity = Severity.WARNING
    timestamp: datetime = Field(default_factory=utcnow)
    cooldown_key: str = ""
    environment_id: Optional[EnvironmentId] = None

    def key(self) -> str:
        return self.cooldown_key or self.type


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    operation: str
    from_environment: Optional[EnvironmentId] = None
    to_environment: Optional[EnvironmentId] = None
    outcome: Outcome
    duration_ms: float = 0.0
    detail: Optional[str] = None


class OperationResult(BaseModel):
    """What every controller operation returns to its caller."""
    operation: str
    outcome: Outcome
    message: str = ""
    error_kind: Optional[str] = None
    from_environment: Optional[EnvironmentId] = None
    to_environment: Optional[EnvironmentId] = None
    revision: Optional[int] = None
    plan: Optional[MigrationPlan] = None
    rollback: Optional[Dict[str, Any]] = None
    duration_ms: float = 0.0
    history_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.NOOP)
