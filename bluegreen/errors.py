"""Error taxonomy for the deployment orchestrator.

Only terminal outcomes cross the controller boundary; everything below it
raises one of these and lets the controller turn it into a result record.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class OrchestratorError(RuntimeError):
    """Base class for every failure the orchestrator knows how to classify."""

    kind = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(OrchestratorError):
    """Malformed request. Rejected before any side effect."""

    kind = "validation"


class ConcurrencyError(OrchestratorError):
    """Another migration plan holds the global plan lock."""

    kind = "concurrency"


class TransientError(OrchestratorError):
    """Network blip or reload hiccup; safe to retry."""

    kind = "transient"


class OperationalError(OrchestratorError):
    """Health-check or switch-verification failure."""

    kind = "operational"


class FatalError(OrchestratorError):
    """The rollback target itself is unhealthy. Needs an operator."""

    kind = "fatal"


class SwitchError(OperationalError):
    """A traffic switch could not be applied or verified."""


class RollbackError(OperationalError):
    """The restoring apply of a rollback failed."""


class DeployError(OperationalError):
    """The build/update collaborator could not bring an environment up."""


class UnhealthyTargetError(OperationalError):
    """An environment failed its health gate before any traffic moved."""
