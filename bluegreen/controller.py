"""Deployment controller: the single entry point for operators.

Every mutating operation returns an OperationResult instead of raising and
leaves one entry in the deployment history, whatever the outcome.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Lock
from typing import Callable, Dict, List, Optional, Sequence

import requests

from bluegreen import metrics
from bluegreen.alerting import AlertManager, AlertSink, LogSink, WebhookSink
from bluegreen.config import MigrationConfig, OrchestratorConfig, ProberConfig, parse_environment_id
from bluegreen.deployer import CommandDeployer, Deployer
from bluegreen.errors import (
    ConcurrencyError,
    DeployError,
    FatalError,
    OperationalError,
    OrchestratorError,
    UnhealthyTargetError,
    ValidationError,
)
from bluegreen.executor import TrafficSwitchExecutor
from bluegreen.history import DeploymentHistory
from bluegreen.locking import PlanLock
from bluegreen.models import (
    AlertEvent,
    EnvironmentId,
    HealthVerdict,
    HistoryEntry,
    MigrationPlan,
    OperationResult,
    Outcome,
    PlanStatus,
    TrafficMode,
    TrafficState,
)
from bluegreen.monitor import ContinuousMonitor
from bluegreen.planner import MigrationPlanner
from bluegreen.prober import HealthProber
from bluegreen.registry import EnvironmentRegistry
from bluegreen.resources import DockerStatsSampler, ResourceSampler
from bluegreen.router import EdgeRouter, NginxEdgeRouter
from bluegreen.state_store import TrafficStateStore

logger = logging.getLogger(__name__)

Action = Callable[[OperationResult], None]


class DeploymentController:
    def __init__(
        self,
        registry: EnvironmentRegistry,
        store: TrafficStateStore,
        executor: TrafficSwitchExecutor,
        prober: HealthProber,
        planner: MigrationPlanner,
        lock: PlanLock,
        history: DeploymentHistory,
        alerts: AlertManager,
        deployer: Optional[Deployer] = None,
        migration: Optional[MigrationConfig] = None,
        prober_config: Optional[ProberConfig] = None,
        rollback_wait_seconds: float = 60.0,
    ) -> None:
        self.registry = registry
        self.store = store
        self.executor = executor
        self.prober = prober
        self.planner = planner
        self.lock = lock
        self.history = history
        self.alerts = alerts
        self.deployer = deployer
        self.migration = migration or MigrationConfig()
        self.prober_config = prober_config or ProberConfig()
        self.rollback_wait_seconds = rollback_wait_seconds
        self.monitor: Optional[ContinuousMonitor] = None
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="plan")
        self._advised: set = set()
        self._advice_lock = Lock()

    # ------------------------------------------------------------------
    # Deploy and migrate
    # ------------------------------------------------------------------
    def deploy(self, environment: str, version: str) -> OperationResult:
        """Bring ``environment`` up at ``version`` without moving traffic."""
        def action(result: OperationResult) -> None:
            env_id = parse_environment_id(environment)
            result.to_environment = env_id
            owner = f"deploy-{uuid.uuid4().hex[:8]}"
            self.lock.acquire(owner)
            try:
                self._check_deployable(env_id, version)
                self._deploy(env_id, version)
            finally:
                self.lock.release(owner)
            result.message = f"{env_id.value} is running {version} and healthy"

        return self._run("deploy", action)

    def gradual_migrate(
        self,
        target: str,
        version: Optional[str] = None,
        steps: Optional[Sequence[int]] = None,
        background: bool = False,
    ) -> OperationResult:
        def action(result: OperationResult) -> None:
            self._start_plan(result, target, version, list(steps or self.migration.steps), TrafficMode.DUAL, background)

        return self._run("gradual_migrate", action)

    def canary(
        self,
        target: str,
        version: Optional[str] = None,
        percentage: Optional[int] = None,
        background: bool = False,
    ) -> OperationResult:
        """Shift a small fixed share to ``target`` and hold it there."""
        def action(result: OperationResult) -> None:
            pct = self.migration.canary_percentage if percentage is None else percentage
            if not isinstance(pct, int) or pct < 1 or pct > 99:
                raise ValidationError(f"Canary percentage must be an integer in 1..99, got {pct}")
            self._start_plan(result, target, version, [pct], TrafficMode.CANARY, background)

        return self._run("canary", action)

    # ------------------------------------------------------------------
    # Direct switch, rollback, abort
    # ------------------------------------------------------------------
    def direct_switch(self, target: str) -> OperationResult:
        """Send all traffic to ``target`` in one step."""
        def action(result: OperationResult) -> None:
            target_id = self._registered(target)
            result.from_environment = self.store.read().dominant()
            result.to_environment = target_id

            owner = f"switch-{uuid.uuid4().hex[:8]}"
            self.lock.acquire(owner)
            try:
                state = self.store.read()
                if state.weight_of(target_id) == 100:
                    result.outcome = Outcome.NOOP
                    result.revision = state.revision
                    result.message = f"{target_id.value} already receives all traffic"
                    return
                self._require_healthy(target_id)
                weights = {env_id: 0 for env_id in self.registry.ids()}
                weights[target_id] = 100
                result.revision = self.executor.apply(weights, mode=TrafficMode.SINGLE)
                self.registry.sync_roles(self.store.read().weights)
                result.message = f"All traffic on {target_id.value} (revision {result.revision})"
            finally:
                self.lock.release(owner)

        return self._run("direct_switch", action)

    def rollback(self) -> OperationResult:
        """Abort the running plan, or restore the last plan's pre-migration routing."""
        def action(result: OperationResult) -> None:
            running = self.planner.running()
            if running is not None:
                result.from_environment, result.to_environment = running.target, running.source
                self.planner.abort(running.id)
                if not self.planner.wait(running.id, timeout=self.rollback_wait_seconds):
                    raise OperationalError(f"Plan {running.id} did not stop within {self.rollback_wait_seconds}s")
                self._plan_outcome(result, running)
                if running.status == PlanStatus.ROLLED_BACK and not running.requires_operator:
                    result.outcome = Outcome.SUCCESS
                    result.error_kind = None
                return

            plan = self.planner.latest()
            if plan is None or plan.baseline is None:
                raise ValidationError("No migration plan to roll back")
            result.plan = plan
            result.from_environment, result.to_environment = plan.target, plan.baseline.dominant()

            owner = f"rollback-{plan.id}"
            self.lock.acquire(owner)
            try:
                before = self.store.read().revision
                restored = self.planner.rollback(plan)
            finally:
                self.lock.release(owner)
            result.revision = restored.revision
            result.rollback = {"plan_id": plan.id, "restored_revision": plan.baseline.revision}
            if restored.revision == before:
                result.outcome = Outcome.NOOP
                result.message = f"Routing already matches the baseline of plan {plan.id}"
            else:
                result.message = f"Restored routing from before plan {plan.id} as revision {restored.revision}"

        return self._run("rollback", action)

    def abort(self, wait: bool = False) -> OperationResult:
        def action(result: OperationResult) -> None:
            plan = self.planner.abort()
            if plan is None:
                raise ValidationError("No migration plan is running")
            result.from_environment, result.to_environment = plan.source, plan.target
            result.plan = plan
            result.message = f"Abort requested for plan {plan.id}"
            if wait and self.planner.wait(plan.id, timeout=self.rollback_wait_seconds):
                result.message = f"Plan {plan.id} aborted; status {plan.status.value}"

        return self._run("abort", action)

    def cleanup(self, environment: str) -> OperationResult:
        """Stop an environment that no longer receives traffic."""
        def action(result: OperationResult) -> None:
            env_id = self._registered(environment)
            result.to_environment = env_id
            if self.deployer is None:
                raise ValidationError("No deployer configured")
            owner = f"cleanup-{uuid.uuid4().hex[:8]}"
            self.lock.acquire(owner)
            try:
                weight = self.store.read().weight_of(env_id)
                if weight > 0:
                    raise ValidationError(f"{env_id.value} still receives {weight}% of traffic")
                self.deployer.stop(env_id)
                self.registry.sync_roles(self.store.read().weights)
            finally:
                self.lock.release(owner)
            result.message = f"{env_id.value} stopped"

        return self._run("cleanup", action)

    # ------------------------------------------------------------------
    # Monitor advice
    # ------------------------------------------------------------------
    def advise_rollback(self, alert: AlertEvent) -> bool:
        """Roll back the running plan if an independent re-check confirms ``alert``.

        Each plan is rolled back on advice at most once.
        """
        plan = self.planner.running()
        if plan is None:
            logger.info(f"{alert.type} advice ignored: no plan running")
            return False
        with self._advice_lock:
            if plan.id in self._advised:
                return False
            if not self._confirm_regression(plan, alert):
                logger.info(f"{alert.type} advice for plan {plan.id} not confirmed by re-check")
                return False
            self._advised.add(plan.id)

        def action(result: OperationResult) -> None:
            result.from_environment, result.to_environment = plan.target, plan.source
            result.plan = plan
            self.planner.abort(plan.id)
            result.message = f"Rolling back plan {plan.id} on {alert.type}: {alert.message}"

        self._run("advised_rollback", action)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def status(self) -> dict:
        state = self.store.read()
        plan = self.planner.latest()
        return {
            "traffic": state.to_dict(),
            "environments": [env.model_dump(mode="json") for env in self.registry.snapshot()],
            "plan": plan.model_dump(mode="json") if plan else None,
            "plan_running": self.planner.running() is not None,
        }

    def history_entries(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        return list(self.history.entries(limit))

    def validate_environments(self) -> Dict[EnvironmentId, HealthVerdict]:
        """Probe every registered environment now."""
        return {env_id: self.prober.probe(env_id) for env_id in self.registry.ids()}

    def reconcile(self) -> None:
        """Re-signal the edge if it routes an older revision than the store."""
        state = self.store.read()
        snapshot = self.executor.router.current_config()
        if snapshot.revision == state.revision and state.same_routing(snapshot.weights):
            return
        logger.warning(f"Edge reports revision {snapshot.revision}, store has {state.revision}; re-signalling")
        self.executor.router.reload(state)

    def shutdown(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
        self._pool.shutdown(wait=False)
        self.alerts.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run(
        self,
        operation: str,
        action: Action,
        from_environment: Optional[EnvironmentId] = None,
        to_environment: Optional[EnvironmentId] = None,
    ) -> OperationResult:
        result = OperationResult(
            operation=operation,
            outcome=Outcome.SUCCESS,
            from_environment=from_environment,
            to_environment=to_environment,
        )
        started = time.monotonic()
        try:
            action(result)
        except (ValidationError, ConcurrencyError, UnhealthyTargetError) as exc:
            self._failed(result, Outcome.REJECTED, exc)
        except FatalError as exc:
            self._failed(result, Outcome.FATAL, exc)
        except OrchestratorError as exc:
            self._failed(result, Outcome.FAILED, exc)
        except Exception as exc:
            logger.exception(f"{operation} crashed")
            result.outcome = Outcome.FAILED
            result.error_kind = "internal"
            result.message = f"Internal error: {exc}"
        result.duration_ms = (time.monotonic() - started) * 1000

        try:
            self.history.append(HistoryEntry(
                operation=operation,
                from_environment=result.from_environment,
                to_environment=result.to_environment,
                outcome=result.outcome,
                duration_ms=result.duration_ms,
                detail=result.message,
            ))
        except OSError as exc:
            logger.error(f"Could not record {operation} in history: {exc}")
            result.history_error = str(exc)
        metrics.OPERATIONS.labels(operation=operation, outcome=result.outcome.value).inc()
        log = logger.info if result.ok else logger.error
        log(f"{operation}: {result.outcome.value} - {result.message}")
        return result

    @staticmethod
    def _failed(result: OperationResult, outcome: Outcome, exc: OrchestratorError) -> None:
        result.outcome = outcome
        result.error_kind = exc.kind
        result.message = exc.message

    def _start_plan(
        self,
        result: OperationResult,
        target: str,
        version: Optional[str],
        steps: List[int],
        mode: TrafficMode,
        background: bool,
    ) -> None:
        target_id = self._registered(target)
        state = self.store.read()
        result.to_environment = target_id
        if state.weight_of(target_id) == 100:
            result.outcome = Outcome.NOOP
            result.revision = state.revision
            result.message = f"{target_id.value} already receives all traffic"
            return
        source_id = self._source_for(state, target_id)
        result.from_environment = source_id
        if version is not None:
            self._check_deployable(target_id, version)

        plan = self.planner.create(source_id, target_id, steps, mode=mode)
        preflight_errors: List[OrchestratorError] = []

        def preflight() -> None:
            try:
                self._require_healthy(source_id)
                if version is not None:
                    self._deploy(target_id, version, cancel=self.planner.cancel_event(plan.id))
                else:
                    self._require_healthy(target_id)
            except OrchestratorError as exc:
                preflight_errors.append(exc)
                raise

        self.planner.begin(plan)
        result.plan = plan
        if background:
            self._pool.submit(self._finish_in_background, result.operation, plan, preflight, preflight_errors)
            result.message = f"Plan {plan.id} started: {source_id.value} -> {target_id.value} {plan.steps}"
            return
        self.planner.run(plan, preflight)
        if preflight_errors and not plan.aborted:
            raise preflight_errors[0]
        self._plan_outcome(result, plan)

    def _finish_in_background(
        self,
        operation: str,
        plan: MigrationPlan,
        preflight: Callable[[], None],
        preflight_errors: List[OrchestratorError],
    ) -> None:
        def action(result: OperationResult) -> None:
            result.plan = plan
            self.planner.run(plan, preflight)
            if preflight_errors and not plan.aborted:
                raise preflight_errors[0]
            self._plan_outcome(result, plan)

        self._run(f"{operation}_completed", action, plan.source, plan.target)

    def _plan_outcome(self, result: OperationResult, plan: MigrationPlan) -> None:
        result.plan = plan
        result.revision = self.store.read().revision
        if plan.status == PlanStatus.SUCCEEDED:
            result.outcome = Outcome.SUCCESS
            result.message = f"Plan {plan.id} succeeded: {plan.target.value} at {plan.steps[-1]}%"
            return

        result.rollback = {
            "plan_id": plan.id,
            "aborted": plan.aborted,
            "restored_revision": plan.baseline.revision if plan.baseline else None,
            "error": plan.rollback_error,
        }
        if plan.requires_operator:
            result.outcome = Outcome.FATAL
            result.error_kind = FatalError.kind
            result.message = f"Plan {plan.id} failed ({plan.error}); {plan.rollback_error}"
        elif plan.status == PlanStatus.ROLLED_BACK:
            result.outcome = Outcome.ROLLED_BACK
            result.error_kind = OperationalError.kind
            result.message = f"Plan {plan.id} rolled back: {plan.error}"
        else:
            result.outcome = Outcome.FAILED
            result.error_kind = OperationalError.kind
            result.message = f"Plan {plan.id} failed: {plan.error}"

    def _source_for(self, state: TrafficState, target: EnvironmentId) -> EnvironmentId:
        serving = {env_id: pct for env_id, pct in state.weights.items() if env_id != target and pct > 0}
        if not serving:
            raise ValidationError(f"No environment other than {target.value} serves traffic")
        return max(serving, key=lambda env_id: serving[env_id])

    def _registered(self, environment: str) -> EnvironmentId:
        env_id = parse_environment_id(environment)
        if env_id not in self.registry:
            raise ValidationError(f"Environment {env_id.value} is not registered")
        return env_id

    def _require_healthy(self, env_id: EnvironmentId) -> HealthVerdict:
        verdict = self.prober.probe(env_id)
        if not verdict.healthy:
            failed = verdict.failed_checks()
            raise UnhealthyTargetError(
                f"{env_id.value} is unhealthy ({', '.join(failed)})",
                details={"environment": env_id.value, "failed_checks": failed},
            )
        return verdict

    def _check_deployable(self, env_id: EnvironmentId, version: str) -> None:
        if not version:
            raise ValidationError("A version is required to deploy")
        if env_id not in self.registry:
            raise ValidationError(f"Environment {env_id.value} is not registered")
        if self.deployer is None:
            raise ValidationError("No deployer configured")
        weight = self.store.read().weight_of(env_id)
        if weight > 0:
            raise ValidationError(f"{env_id.value} receives {weight}% of traffic; deploy to an idle environment")

    def _deploy(self, env_id: EnvironmentId, version: str, cancel: Optional[Event] = None) -> None:
        logger.info(f"Deploying {version} to {env_id.value}")
        self.deployer.build_and_start(env_id, version)
        verdict = self.prober.wait_until_healthy(
            env_id,
            self.prober_config.wait_max_seconds,
            self.prober_config.poll_interval_seconds,
            cancel=cancel,
        )
        if cancel is not None and cancel.is_set():
            raise OperationalError(f"Deploy of {version} to {env_id.value} interrupted by abort")
        if not verdict.healthy:
            raise DeployError(
                f"{env_id.value} did not become healthy after deploying {version}",
                details={"failed_checks": verdict.failed_checks()},
            )
        self.registry.set_version(env_id, version)

    def _confirm_regression(self, plan: MigrationPlan, alert: AlertEvent) -> bool:
        env_id = alert.environment_id or plan.target
        if env_id not in (plan.source, plan.target):
            return False
        if not self.prober.probe(env_id).healthy:
            return True
        if alert.type == "HIGH_ERROR_RATE" and self.monitor is not None:
            return self.monitor.edge_breached()
        return False


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------
def build_controller(
    config: OrchestratorConfig,
    router: Optional[EdgeRouter] = None,
    deployer: Optional[Deployer] = None,
    sinks: Optional[List[AlertSink]] = None,
    session: Optional[requests.Session] = None,
    resources: Optional[ResourceSampler] = None,
) -> DeploymentController:
    """Assemble every component from ``config``; collaborators can be swapped."""
    session = session or requests.Session()
    endpoints = {env_id: spec.endpoints for env_id, spec in config.environments.items()}
    registry = EnvironmentRegistry.from_endpoints(endpoints)
    state_dir = config.state_path
    store = TrafficStateStore(state_dir, registry.ids(), config.default_environment)
    policy = config.backoff.policy()

    if router is None:
        if config.router.kind != "nginx":
            raise ValidationError(f"Unsupported router kind '{config.router.kind}'")
        router = NginxEdgeRouter(
            include_path=config.router.include_path,
            endpoints=endpoints,
            edge_url=config.router.edge_url,
            access_log=config.router.access_log,
            reload_command=config.router.reload_command,
            test_command=config.router.test_command,
            command_timeout=config.router.command_timeout_seconds,
            sample_lines=config.router.sample_lines,
            session=session,
        )
    if deployer is None and config.deployer.start_command:
        deployer = CommandDeployer(
            config.deployer.start_command,
            config.deployer.stop_command,
            timeout=config.deployer.timeout_seconds,
        )
    if sinks is None:
        sinks = [LogSink()]
        if config.alerting.webhook_url:
            sinks.append(WebhookSink(config.alerting.webhook_url, config.alerting.webhook_timeout_seconds, session))

    alerts = AlertManager(sinks, config.monitor.cooldown_seconds, config.alerting.recent_limit)
    prober = HealthProber(
        registry,
        policy,
        liveness_path=config.prober.liveness_path,
        deep_path=config.prober.deep_path,
        timeout=config.prober.timeout_seconds,
        latency_budget_ms=config.prober.latency_budget_ms,
        session=session,
    )
    executor = TrafficSwitchExecutor(
        store, router, policy, adoption_timeout=config.router.adoption_timeout_seconds
    )
    lock = PlanLock(state_dir, stale_after=config.migration.lock_stale_after_seconds)
    planner = MigrationPlanner(
        store,
        executor,
        prober,
        registry,
        lock,
        alerts,
        settle_seconds=config.migration.settle_seconds,
        check_source=config.migration.check_source,
    )
    controller = DeploymentController(
        registry,
        store,
        executor,
        prober,
        planner,
        lock,
        DeploymentHistory(state_dir),
        alerts,
        deployer=deployer,
        migration=config.migration,
        prober_config=config.prober,
        rollback_wait_seconds=max(60.0, config.deployer.timeout_seconds + config.prober.poll_interval_seconds),
    )
    containers = {env_id: spec.container for env_id, spec in config.environments.items() if spec.container}
    if resources is None and config.monitor.resource_command and containers:
        resources = DockerStatsSampler(
            containers, config.monitor.resource_command, timeout=config.monitor.resource_timeout_seconds
        )
    controller.monitor = ContinuousMonitor(
        registry, prober, store, router, alerts, config.monitor, advisor=controller, resources=resources
    )
    return controller
