"""Traffic switch executor: the only writer of the TrafficState."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Dict, Optional

from bluegreen import metrics
from bluegreen.backoff import BackoffPolicy
from bluegreen.errors import OperationalError, SwitchError, TransientError, ValidationError
from bluegreen.models import EnvironmentId, TrafficMode, TrafficState
from bluegreen.router import EdgeRouter
from bluegreen.state_store import TrafficStateStore

logger = logging.getLogger(__name__)


class TrafficSwitchExecutor:
    """Validate, persist, signal, verify; revert when verification fails."""

    def __init__(
        self,
        store: TrafficStateStore,
        router: EdgeRouter,
        policy: BackoffPolicy,
        adoption_timeout: float = 5.0,
        adoption_poll_interval: float = 0.25,
        verify_timeout: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.router = router
        self.policy = policy
        self.adoption_timeout = adoption_timeout
        self.adoption_poll_interval = adoption_poll_interval
        self.verify_timeout = verify_timeout
        self.sleep = sleep
        self.clock = clock
        self._lock = Lock()

    def apply(
        self,
        weights: Dict[EnvironmentId, int],
        mode: Optional[TrafficMode] = None,
        idempotent: bool = False,
    ) -> int:
        """Make ``weights`` the serving configuration and return its revision.

        Raises ValidationError for malformed weights and SwitchError when the
        change could not be applied or verified; in the latter case the prior
        routing is back in place.
        """
        with self._lock:
            current = self.store.read()
            self._validate(weights)
            if current.same_routing(weights) and (mode is None or mode == current.mode):
                if idempotent:
                    logger.info(f"Traffic already at {_fmt(weights)}; nothing to apply (revision {current.revision})")
                    metrics.TRAFFIC_SWITCHES.labels(outcome="noop").inc()
                    return current.revision
                raise ValidationError(f"Redundant switch: traffic already at {_fmt(weights)}")

            logger.info(f"Switching traffic {_fmt(current.weights)} -> {_fmt(weights)}")
            try:
                state = self._persist_and_signal(weights, mode)
            except OperationalError as exc:
                metrics.TRAFFIC_SWITCHES.labels(outcome="apply_failed").inc()
                self._restore(current, reason=str(exc))
                raise SwitchError(f"Could not apply {_fmt(weights)}: {exc.message}") from exc

            problem = self._verify(state)
            if problem:
                metrics.TRAFFIC_SWITCHES.labels(outcome="verify_failed").inc()
                logger.error(f"Revision {state.revision} not adopted: {problem}; reverting")
                self._restore(current, reason=problem)
                raise SwitchError(
                    f"Edge did not adopt revision {state.revision}: {problem}",
                    details={"reverted_to": current.revision},
                )

            metrics.TRAFFIC_SWITCHES.labels(outcome="success").inc()
            logger.info(f"Traffic revision {state.revision} adopted: {_fmt(state.weights)}")
            return state.revision

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _validate(self, weights: Dict[EnvironmentId, int]) -> None:
        if not weights:
            raise ValidationError("No weights given")
        unknown = [getattr(k, "value", k) for k in weights if k not in self.store.known_ids]
        if unknown:
            raise ValidationError(f"Unknown environments: {unknown}")
        if any(not isinstance(v, int) or v < 0 or v > 100 for v in weights.values()):
            raise ValidationError(f"Weights must be integers in 0..100: {_fmt(weights)}")
        total = sum(weights.values())
        if total != 100:
            raise ValidationError(f"Weights must sum to 100, got {total}")

    def _persist_and_signal(self, weights: Dict[EnvironmentId, int], mode: Optional[TrafficMode]) -> TrafficState:
        state = self.policy.call(
            lambda: self.store.replace(weights, mode),
            sleep=self.sleep,
            description="traffic state write",
        )
        self.policy.call(
            lambda: self.router.reload(state),
            sleep=self.sleep,
            description="edge router reload",
        )
        return state

    def _verify(self, state: TrafficState) -> Optional[str]:
        deadline = self.clock() + self.adoption_timeout
        while True:
            snapshot = self.router.current_config()
            if snapshot.revision == state.revision and state.same_routing(snapshot.weights):
                break
            if self.clock() >= deadline:
                return f"edge reports revision {snapshot.revision}, expected {state.revision}"
            self.sleep(self.adoption_poll_interval)

        probe = self.router.synthetic_request(timeout=self.verify_timeout)
        if not probe.ok:
            return f"synthetic request failed: {probe.error or probe.status_code}"
        if probe.revision is not None and probe.revision < state.revision:
            return f"edge served revision {probe.revision}, expected {state.revision}"
        return None

    def _restore(self, previous: TrafficState, reason: str) -> None:
        """Put the prior routing back after a failed switch."""
        if self.store.read().same_routing(previous.weights):
            # the store was never touched; only the router may be stale
            try:
                self.policy.call(lambda: self.router.reload(self.store.read()), sleep=self.sleep,
                                 description="edge router reload (restore)")
            except OperationalError as exc:
                logger.error(f"Failed to re-signal router after '{reason}': {exc}")
            return
        try:
            restored = self.policy.call(
                lambda: self.store.replace(previous.weights, previous.mode),
                sleep=self.sleep,
                description="traffic state restore",
            )
            self.policy.call(lambda: self.router.reload(restored), sleep=self.sleep,
                             description="edge router reload (restore)")
            logger.warning(f"Restored routing of revision {previous.revision} as revision {restored.revision}")
        except (OperationalError, TransientError) as exc:
            logger.critical(f"Failed to restore routing of revision {previous.revision}: {exc}")
            raise SwitchError(f"Switch failed ({reason}) and restore failed: {exc}") from exc


def _fmt(weights: Dict[EnvironmentId, int]) -> str:
    return ", ".join(f"{getattr(k, 'value', k)}:{v}" for k, v in sorted(weights.items(), key=lambda kv: str(kv[0])))
