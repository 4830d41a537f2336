"""Blue-green deployment orchestrator."""

from bluegreen.controller import DeploymentController, build_controller
from bluegreen.errors import (
    ConcurrencyError,
    FatalError,
    OperationalError,
    OrchestratorError,
    TransientError,
    ValidationError,
)
from bluegreen.models import EnvironmentId, OperationResult, Outcome, TrafficMode, TrafficState

__all__ = [
    "DeploymentController",
    "build_controller",
    "OrchestratorError",
    "ValidationError",
    "ConcurrencyError",
    "TransientError",
    "OperationalError",
    "FatalError",
    "EnvironmentId",
    "OperationResult",
    "Outcome",
    "TrafficMode",
    "TrafficState",
]
