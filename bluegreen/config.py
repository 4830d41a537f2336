# bluegreen/config.py
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv

from bluegreen.backoff import BackoffPolicy
from bluegreen.errors import ValidationError
from bluegreen.models import EnvironmentId

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"


@dataclass
class BackoffConfig:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )


@dataclass
class ProberConfig:
    liveness_path: str = "/health"
    deep_path: str = "/health/deep"
    timeout_seconds: float = 3.0
    latency_budget_ms: float = 1000
    wait_max_seconds: float = 150
    poll_interval_seconds: float = 5


@dataclass
class MigrationConfig:
    steps: List[int] = field(default_factory=lambda: [25, 50, 75, 100])
    settle_seconds: float = 5
    check_source: bool = True
    canary_percentage: int = 10
    lock_stale_after_seconds: float = 3600


@dataclass
class RouterConfig:
    kind: str = "nginx"
    edge_url: Optional[str] = None
    include_path: str = "/etc/nginx/conf.d/bluegreen-upstream.conf"
    access_log: str = "/var/log/nginx/access.log"
    reload_command: List[str] = field(default_factory=lambda: ["nginx", "-s", "reload"])
    test_command: List[str] = field(default_factory=lambda: ["nginx", "-t"])
    command_timeout_seconds: float = 10
    adoption_timeout_seconds: float = 5
    sample_lines: int = 500


@dataclass
class DeployerConfig:
    start_command: List[str] = field(default_factory=list)
    stop_command: List[str] = field(default_factory=list)
    timeout_seconds: float = 300


@dataclass
class MonitorConfig:
    interval_seconds: float = 10
    window_seconds: float = 60
    error_rate_threshold: float = 0.05
    p95_latency_ms_threshold: float = 1000
    availability_threshold: float = 99.0
    cooldown_seconds: float = 60
    min_requests: int = 20
    cpu_threshold: float = 0.8
    memory_threshold: float = 0.9
    # empty disables container resource sampling
    resource_command: List[str] = field(default_factory=list)
    resource_timeout_seconds: float = 10


@dataclass
class AlertingConfig:
    webhook_url: Optional[str] = None
    webhook_timeout_seconds: float = 3
    recent_limit: int = 100


@dataclass
class EnvironmentSpec:
    id: EnvironmentId
    endpoints: List[str]
    container: Optional[str] = None


@dataclass
class OrchestratorConfig:
    env: str = "dev"
    state_dir: str = "var/bluegreen"
    log_level: str = "INFO"
    default_environment: EnvironmentId = EnvironmentId.PRIMARY
    environments: Dict[EnvironmentId, EnvironmentSpec] = field(default_factory=dict)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    prober: ProberConfig = field(default_factory=ProberConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    deployer: DeployerConfig = field(default_factory=DeployerConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir)


def parse_environment_id(value: str) -> EnvironmentId:
    """Turn operator input into an EnvironmentId or raise ValidationError."""
    if isinstance(value, EnvironmentId):
        return value
    try:
        return EnvironmentId(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(e.value for e in EnvironmentId)
        raise ValidationError(f"Unknown environment '{value}'. Must be one of: {allowed}")


def _merge(base: dict, override: dict) -> dict:
    # one level deep: sections merge key by key, scalars are replaced
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def build_config(raw: dict, env: str = "dev") -> OrchestratorConfig:
    environments = {}
    for name, spec in (raw.get("environments") or {}).items():
        env_id = parse_environment_id(name)
        environments[env_id] = EnvironmentSpec(
            id=env_id,
            endpoints=list(spec.get("endpoints") or []),
            container=spec.get("container"),
        )
    if len(environments) < 2:
        raise ValidationError("At least two environments must be registered")

    default_env = parse_environment_id(raw.get("default_environment", "primary"))
    if default_env not in environments:
        raise ValidationError(f"Default environment {default_env.value} is not registered")

    return OrchestratorConfig(
        env=env,
        state_dir=raw.get("state_dir", "var/bluegreen"),
        log_level=raw.get("log_level", "INFO"),
        default_environment=default_env,
        environments=environments,
        backoff=BackoffConfig(**(raw.get("backoff") or {})),
        prober=ProberConfig(**(raw.get("prober") or {})),
        migration=MigrationConfig(**(raw.get("migration") or {})),
        router=RouterConfig(**(raw.get("router") or {})),
        deployer=DeployerConfig(**(raw.get("deployer") or {})),
        monitor=MonitorConfig(**(raw.get("monitor") or {})),
        alerting=AlertingConfig(**(raw.get("alerting") or {})),
    )


def load_config(env: str | None = None, path: str | None = None) -> OrchestratorConfig:
    """
    Load config with environment override:
      - loads .env
      - resolves env = arg or APP_ENV or 'dev'
      - merges the `base` section of config.yaml with the env section
      - applies BLUEGREEN_STATE_DIR / BLUEGREEN_EDGE_URL overrides
    """
    load_dotenv()

    env = (env or os.getenv("APP_ENV") or "dev").lower()
    cfg_path = Path(path or os.getenv("BLUEGREEN_CONFIG") or DEFAULT_CONFIG_PATH)
    with open(cfg_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    merged = _merge(raw.get("base", {}), raw.get(env, {}))

    state_override = os.getenv("BLUEGREEN_STATE_DIR")
    if state_override:
        merged["state_dir"] = state_override
    edge_override = os.getenv("BLUEGREEN_EDGE_URL")
    if edge_override:
        merged.setdefault("router", {})["edge_url"] = edge_override

    return build_config(merged, env=env)
