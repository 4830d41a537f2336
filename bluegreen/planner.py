"""Migration planner: the stepped traffic migration state machine.

    Pending -> Running -> Succeeded
                       -> Failed -> RolledBack

A plan walks its steps strictly in order. Each step applies the next split,
lets in-flight connections settle, then probes the target (and the source
while it still serves). Any failure, or an abort, restores the routing that
was in place before the plan started in a single apply.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from threading import Event, Lock
from typing import Callable, Dict, List, Optional

from bluegreen import metrics
from bluegreen.alerting import AlertManager
from bluegreen.errors import (
    FatalError,
    OrchestratorError,
    OperationalError,
    RollbackError,
    SwitchError,
    ValidationError,
)
from bluegreen.executor import TrafficSwitchExecutor
from bluegreen.locking import PlanLock
from bluegreen.models import (
    AlertEvent,
    EnvironmentId,
    HealthVerdict,
    MigrationPlan,
    PlanStatus,
    Severity,
    StepResult,
    TrafficMode,
    TrafficState,
    infer_mode,
    utcnow,
)
from bluegreen.prober import HealthProber
from bluegreen.registry import EnvironmentRegistry
from bluegreen.state_store import TrafficStateStore

logger = logging.getLogger(__name__)

MAX_TRACKED_PLANS = 50


class MigrationPlanner:
    def __init__(
        self,
        store: TrafficStateStore,
        executor: TrafficSwitchExecutor,
        prober: HealthProber,
        registry: EnvironmentRegistry,
        lock: PlanLock,
        alerts: AlertManager,
        settle_seconds: float = 5.0,
        check_source: bool = True,
    ) -> None:
        self.store = store
        self.executor = executor
        self.prober = prober
        self.registry = registry
        self.lock = lock
        self.alerts = alerts
        self.settle_seconds = settle_seconds
        self.check_source = check_source
        self._plans: "OrderedDict[str, MigrationPlan]" = OrderedDict()
        self._cancel: Dict[str, Event] = {}
        self._done: Dict[str, Event] = {}
        self._running: Optional[str] = None
        self._plans_lock = Lock()

    # ------------------------------------------------------------------
    # Plan construction and lookup
    # ------------------------------------------------------------------
    def create(
        self,
        source: EnvironmentId,
        target: EnvironmentId,
        steps: List[int],
        mode: TrafficMode = TrafficMode.DUAL,
    ) -> MigrationPlan:
        if source == target:
            raise ValidationError(f"Source and target are both {target.value}")
        for env_id in (source, target):
            if env_id not in self.registry:
                raise ValidationError(f"Environment {env_id.value} is not registered")
        try:
            plan = MigrationPlan(source=source, target=target, steps=list(steps), mode=mode)
        except ValueError as exc:
            raise ValidationError(f"Invalid migration plan: {exc}") from exc

        others = sum(pct for env_id, pct in self.store.read().weights.items() if env_id not in (source, target))
        if plan.steps[-1] + others > 100:
            raise ValidationError(
                f"Final step {plan.steps[-1]}% leaves no room for {others}% held by other environments"
            )
        with self._plans_lock:
            self._plans[plan.id] = plan
            while len(self._plans) > MAX_TRACKED_PLANS:
                self._plans.popitem(last=False)
        return plan

    def get(self, plan_id: str) -> Optional[MigrationPlan]:
        with self._plans_lock:
            return self._plans.get(plan_id)

    def running(self) -> Optional[MigrationPlan]:
        with self._plans_lock:
            return self._plans.get(self._running) if self._running else None

    def latest(self) -> Optional[MigrationPlan]:
        with self._plans_lock:
            if self._running:
                return self._plans.get(self._running)
            # plans rejected before they began never touched traffic
            started = [plan for plan in self._plans.values() if plan.started_at is not None]
            return started[-1] if started else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, plan: MigrationPlan, preflight: Optional[Callable[[], None]] = None) -> MigrationPlan:
        """Begin ``plan`` and drive it to a terminal state in this thread."""
        self.begin(plan)
        return self.run(plan, preflight)

    def begin(self, plan: MigrationPlan) -> None:
        """Pending -> Running. Raises ConcurrencyError if another plan runs."""
        if plan.status != PlanStatus.PENDING:
            raise ValidationError(f"Plan {plan.id} is {plan.status.value}, not pending")
        self.lock.acquire(plan.id)
        with self._plans_lock:
            self._plans.setdefault(plan.id, plan)
            self._running = plan.id
            self._cancel[plan.id] = Event()
            self._done[plan.id] = Event()
        plan.baseline = self.store.read()
        plan.started_at = utcnow()
        plan.status = PlanStatus.RUNNING
        metrics.PLAN_RUNNING.set(1)
        logger.info(
            f"Plan {plan.id} running: {plan.source.value} -> {plan.target.value} "
            f"steps={plan.steps} mode={plan.mode.value} baseline=rev{plan.baseline.revision}"
        )

    def run(self, plan: MigrationPlan, preflight: Optional[Callable[[], None]] = None) -> MigrationPlan:
        """Drive a plan that has been begun; always releases the lock.

        ``preflight`` runs under the lock before any traffic moves. If it
        raises, the plan fails without a rollback since routing is untouched.
        """
        try:
            if preflight is None or self._preflight(plan, preflight):
                self._execute(plan)
        except Exception as exc:
            # nothing below should escape, but a bug must not strand the lock
            logger.exception(f"Plan {plan.id} crashed")
            if not plan.status.terminal:
                self._fail(plan, f"internal error: {exc}")
        finally:
            with self._plans_lock:
                self._running = None
                self._cancel.pop(plan.id, None)
                done = self._done.pop(plan.id, None)
            self.lock.release(plan.id)
            metrics.PLAN_RUNNING.set(0)
            metrics.PLANS.labels(status=plan.status.value).inc()
            if done is not None:
                done.set()
        return plan

    def abort(self, plan_id: Optional[str] = None) -> Optional[MigrationPlan]:
        """Ask the running plan to stop and roll back at its next boundary."""
        with self._plans_lock:
            plan_id = plan_id or self._running
            event = self._cancel.get(plan_id) if plan_id else None
            plan = self._plans.get(plan_id) if plan_id else None
        if event is None or plan is None:
            return None
        logger.warning(f"Abort requested for plan {plan_id}")
        event.set()
        return plan

    def cancel_event(self, plan_id: str) -> Optional[Event]:
        """The event ``abort`` sets for ``plan_id`` while it runs."""
        with self._plans_lock:
            return self._cancel.get(plan_id)

    def wait(self, plan_id: str, timeout: Optional[float] = None) -> bool:
        """Block until ``plan_id`` reaches a terminal state."""
        with self._plans_lock:
            done = self._done.get(plan_id)
        return True if done is None else done.wait(timeout)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def rollback(self, plan: MigrationPlan) -> TrafficState:
        """Restore the routing recorded before ``plan`` started in one apply.

        Raises RollbackError when the restoring apply fails and FatalError
        when the restored environment is itself unhealthy.
        """
        if plan.baseline is None:
            raise RollbackError(f"Plan {plan.id} has no recorded baseline")
        baseline = plan.baseline
        logger.warning(f"Rolling back plan {plan.id} to routing of revision {baseline.revision}")
        try:
            self.executor.apply(dict(baseline.weights), mode=baseline.mode, idempotent=True)
        except (SwitchError, OperationalError, ValidationError) as exc:
            raise RollbackError(f"Rollback of plan {plan.id} failed: {exc}") from exc

        restored = baseline.dominant()
        verdict = self.prober.probe(restored)
        self.registry.sync_roles(self.store.read().weights)
        if not verdict.healthy:
            message = (
                f"Rolled back plan {plan.id} to {restored.value}, but {restored.value} is unhealthy "
                f"({', '.join(verdict.failed_checks())}). Manual intervention required."
            )
            self.alerts.emit(AlertEvent(
                type="ROLLBACK_TARGET_UNHEALTHY",
                message=message,
                severity=Severity.CRITICAL,
                cooldown_key=f"rollback-target-unhealthy:{plan.id}",
                environment_id=restored,
            ), cooldown_seconds=0)
            raise FatalError(message, details={"plan_id": plan.id, "environment": restored.value})
        logger.info(f"Rollback of plan {plan.id} complete; {restored.value} healthy")
        return self.store.read()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _preflight(self, plan: MigrationPlan, check: Callable[[], None]) -> bool:
        try:
            check()
        except OrchestratorError as exc:
            if self._cancel[plan.id].is_set():
                # routing was never touched, so the baseline is already in place
                logger.warning(f"Plan {plan.id} aborted during preflight: {exc.message}")
                plan.aborted = True
                plan.error = "aborted by operator before traffic moved"
                self._finish(plan, PlanStatus.ROLLED_BACK)
                return False
            logger.error(f"Plan {plan.id} preflight failed: {exc.message}")
            plan.error = f"preflight failed: {exc.message}"
            self._finish(plan, PlanStatus.FAILED)
            return False
        return True

    def _execute(self, plan: MigrationPlan) -> None:
        cancel = self._cancel[plan.id]

        if self.store.read().weight_of(plan.target) == 100:
            logger.info(f"{plan.target.value} already receives 100% of traffic; nothing to migrate")
            self._finish(plan, PlanStatus.SUCCEEDED)
            return

        for index in range(plan.current_step_index, len(plan.steps)):
            if cancel.is_set():
                self._abort(plan)
                return

            pct = plan.steps[index]
            weights = self._weights_for(plan, pct)
            started = time.monotonic()
            skipped = self.store.read().same_routing(weights)

            if not skipped:
                try:
                    self.executor.apply(weights, mode=self._mode_for(plan, weights))
                except (SwitchError, OperationalError, ValidationError) as exc:
                    self._record(plan, pct, started, None, skipped, error=str(exc))
                    self._fail(plan, f"switch to {pct}% failed: {exc}")
                    return
            else:
                logger.info(f"Plan {plan.id} step {pct}%: traffic already there, skipping apply")

            self.registry.sync_roles(self.store.read().weights)

            # settle; an abort cuts the wait short
            if cancel.wait(self.settle_seconds):
                self._record(plan, pct, started, None, skipped, error="aborted during settle")
                self._abort(plan)
                return

            verdict, failure = self._check_step(plan, weights)
            self._record(plan, pct, started, verdict, skipped, error=failure)
            if failure:
                self._fail(plan, f"health check failed at {pct}%: {failure}")
                return

            plan.current_step_index = index + 1
            self.registry.sync_roles(self.store.read().weights)
            logger.info(f"Plan {plan.id} step {pct}% healthy ({index + 1}/{len(plan.steps)})")

        if cancel.is_set():
            self._abort(plan)
            return
        self.registry.sync_roles(self.store.read().weights)
        self._finish(plan, PlanStatus.SUCCEEDED)
        logger.info(f"Plan {plan.id} succeeded: {plan.target.value} at {plan.steps[-1]}%")

    def _weights_for(self, plan: MigrationPlan, pct: int) -> Dict[EnvironmentId, int]:
        # environments outside the plan keep their baseline share
        others = {env_id: w for env_id, w in plan.baseline.weights.items()
                  if env_id not in (plan.source, plan.target)}
        weights = dict(others)
        weights[plan.target] = pct
        weights[plan.source] = 100 - pct - sum(others.values())
        return weights

    @staticmethod
    def _mode_for(plan: MigrationPlan, weights: Dict[EnvironmentId, int]) -> TrafficMode:
        # once the source is drained the split is whatever is left serving
        return plan.mode if weights.get(plan.source, 0) > 0 else infer_mode(weights)

    def _check_step(self, plan: MigrationPlan, weights: Dict[EnvironmentId, int]):
        verdict = self.prober.probe(plan.target)
        if not verdict.healthy:
            return verdict, f"{plan.target.value} unhealthy ({', '.join(verdict.failed_checks())})"
        if self.check_source and weights.get(plan.source, 0) > 0:
            source_verdict = self.prober.probe(plan.source)
            if not source_verdict.healthy:
                return verdict, f"{plan.source.value} regressed ({', '.join(source_verdict.failed_checks())})"
        return verdict, None

    def _record(
        self,
        plan: MigrationPlan,
        pct: int,
        started: float,
        verdict: Optional[HealthVerdict],
        skipped: bool,
        error: Optional[str] = None,
    ) -> None:
        plan.history.append(StepResult(
            percentage=pct,
            health_verdict=verdict,
            duration_ms=(time.monotonic() - started) * 1000,
            skipped_apply=skipped,
            error=error,
        ))

    def _abort(self, plan: MigrationPlan) -> None:
        plan.aborted = True
        self._fail(plan, "aborted by operator")

    def _fail(self, plan: MigrationPlan, reason: str) -> None:
        logger.error(f"Plan {plan.id} failed: {reason}")
        plan.status = PlanStatus.FAILED
        plan.error = reason
        try:
            self.rollback(plan)
        except FatalError as exc:
            plan.rollback_error = exc.message
            plan.requires_operator = True
            self._finish(plan, PlanStatus.ROLLED_BACK)
        except RollbackError as exc:
            plan.rollback_error = exc.message
            plan.requires_operator = True
            self.alerts.emit(AlertEvent(
                type="ROLLBACK_FAILED",
                message=exc.message,
                severity=Severity.CRITICAL,
                cooldown_key=f"rollback-failed:{plan.id}",
            ), cooldown_seconds=0)
            self._finish(plan, PlanStatus.FAILED)
        else:
            self._finish(plan, PlanStatus.ROLLED_BACK)

    def _finish(self, plan: MigrationPlan, status: PlanStatus) -> None:
        plan.status = status
        plan.finished_at = utcnow()
