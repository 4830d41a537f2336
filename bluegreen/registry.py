"""Static registry of deployable environments."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, Iterable, List, Optional

from bluegreen import metrics
from bluegreen.errors import ValidationError
from bluegreen.models import Environment, EnvironmentId, HealthVerdict, Role

logger = logging.getLogger(__name__)


class EnvironmentRegistry:
    """Keeps track of registered environments, their roles and latest verdicts.

    Records are created once at startup and never removed; only version, role
    and health move.
    """

    def __init__(self, environments: Iterable[Environment]) -> None:
        self._lock = Lock()
        self._envs: Dict[EnvironmentId, Environment] = {env.id: env for env in environments}
        if not self._envs:
            raise ValidationError("No environments registered")

    @classmethod
    def from_endpoints(cls, endpoints: Dict[EnvironmentId, List[str]]) -> "EnvironmentRegistry":
        return cls(Environment(id=env_id, instance_endpoints=list(urls)) for env_id, urls in endpoints.items())

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def ids(self) -> List[EnvironmentId]:
        return list(self._envs)

    def __contains__(self, env_id: object) -> bool:
        return env_id in self._envs

    def get(self, env_id: EnvironmentId) -> Environment:
        with self._lock:
            env = self._envs.get(env_id)
            if env is None:
                raise ValidationError(f"Environment {getattr(env_id, 'value', env_id)} is not registered")
            return env.model_copy(deep=True)

    def snapshot(self) -> List[Environment]:
        with self._lock:
            return [env.model_copy(deep=True) for env in self._envs.values()]

    def latest_verdict(self, env_id: EnvironmentId) -> Optional[HealthVerdict]:
        return self.get(env_id).health

    def latest_verdicts(self) -> Dict[EnvironmentId, Optional[HealthVerdict]]:
        with self._lock:
            return {env_id: env.health for env_id, env in self._envs.items()}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def record_verdict(self, verdict: HealthVerdict) -> None:
        with self._lock:
            env = self._require(verdict.environment_id)
            env.health = verdict
            # Active requires a healthy latest verdict
            if not verdict.healthy and env.role == Role.ACTIVE:
                logger.warning(f"{env.id.value} lost its healthy verdict while active; marking draining")
                env.role = Role.DRAINING
        metrics.ENV_HEALTH.labels(environment=verdict.environment_id.value).set(1 if verdict.healthy else 0)

    def set_version(self, env_id: EnvironmentId, version: str) -> None:
        with self._lock:
            self._require(env_id).version = version

    def set_role(self, env_id: EnvironmentId, role: Role) -> None:
        with self._lock:
            env = self._require(env_id)
            if role == Role.ACTIVE and (env.health is None or not env.health.healthy):
                raise ValidationError(f"{env_id.value} cannot become active without a healthy verdict")
            env.role = role

    def sync_roles(self, weights: Dict[EnvironmentId, int]) -> Dict[EnvironmentId, Role]:
        """Derive roles from the serving weights and latest verdicts.

        Serving and healthy is active, serving but unhealthy or unprobed is
        draining, not serving is standby.
        """
        roles = {}
        with self._lock:
            for env_id, env in self._envs.items():
                if weights.get(env_id, 0) <= 0:
                    env.role = Role.STANDBY
                elif env.health is not None and env.health.healthy:
                    env.role = Role.ACTIVE
                else:
                    env.role = Role.DRAINING
                roles[env_id] = env.role
        return roles

    def _require(self, env_id: EnvironmentId) -> Environment:
        env = self._envs.get(env_id)
        if env is None:
            raise ValidationError(f"Environment {getattr(env_id, 'value', env_id)} is not registered")
        return env
