"""Durable, atomically replaced traffic state.

The state lives in a single JSON file. Writes go to a temp file in the same
directory, are fsynced, then swapped in with ``os.replace`` so a reader (this
process or the edge router tooling) sees either the old or the new revision,
never a partial one.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, Optional

from pydantic import ValidationError as ModelValidationError

from bluegreen import metrics
from bluegreen.errors import FatalError, TransientError, ValidationError
from bluegreen.models import EnvironmentId, TrafficMode, TrafficState, infer_mode, utcnow

logger = logging.getLogger(__name__)

STATE_FILE = "traffic_state.json"
TMP_PREFIX = ".traffic_state."


class TrafficStateStore:
    """Process-wide holder of the current TrafficState."""

    def __init__(
        self,
        state_dir: str | Path,
        known_ids: Iterable[EnvironmentId],
        default_environment: EnvironmentId = EnvironmentId.PRIMARY,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / STATE_FILE
        self.known_ids = list(known_ids)
        self._lock = Lock()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._recover()
        self._current = self._load_or_init(default_environment)
        _export(self._current)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def _recover(self) -> None:
        # a crash between write and replace leaves only a temp file behind
        for leftover in self.state_dir.glob(f"{TMP_PREFIX}*"):
            logger.warning(f"Removing incomplete state write {leftover.name}")
            leftover.unlink(missing_ok=True)

    def _load_or_init(self, default_environment: EnvironmentId) -> TrafficState:
        if self.path.exists():
            try:
                state = TrafficState.model_validate_json(self.path.read_text(encoding="utf-8"))
            except (ModelValidationError, ValueError) as exc:
                raise FatalError(f"Traffic state file {self.path} is unreadable: {exc}") from exc
            unknown = [k.value for k in state.weights if k not in self.known_ids]
            if unknown:
                raise FatalError(f"Traffic state names unregistered environments: {unknown}")
            logger.info(f"Loaded traffic state revision {state.revision}: {state.to_dict()['weights']}")
            return state

        if default_environment not in self.known_ids:
            raise ValidationError(f"Default environment {default_environment.value} is not registered")
        weights = {env_id: (100 if env_id == default_environment else 0) for env_id in self.known_ids}
        state = TrafficState(weights=weights, mode=TrafficMode.SINGLE, revision=0)
        self._write_file(state)
        logger.info(f"Initialised traffic state with {default_environment.value} at 100%")
        return state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def read(self) -> TrafficState:
        """Current fully applied state."""
        with self._lock:
            return self._current

    def replace(
        self,
        weights: Dict[EnvironmentId, int],
        mode: Optional[TrafficMode] = None,
    ) -> TrafficState:
        """Persist ``weights`` as the next revision and make it current.

        Raises ValidationError for bad weights (nothing written) and
        TransientError when the filesystem write fails (old state kept).
        """
        unknown = [getattr(k, "value", k) for k in weights if k not in self.known_ids]
        if unknown:
            raise ValidationError(f"Unknown environments in weights: {unknown}")
        full = {env_id: int(weights.get(env_id, 0)) for env_id in self.known_ids}

        with self._lock:
            try:
                state = TrafficState(
                    weights=full,
                    mode=mode or infer_mode(full),
                    revision=self._current.revision + 1,
                    last_updated=utcnow(),
                )
            except ModelValidationError as exc:
                raise ValidationError(f"Invalid traffic weights: {exc.errors()[0]['msg']}") from exc
            try:
                self._write_file(state)
            except OSError as exc:
                raise TransientError(f"Failed to persist traffic state: {exc}") from exc
            self._current = state

        _export(state)
        return state

    def reload_from_disk(self) -> TrafficState:
        """Re-read the file, e.g. after another process replaced it."""
        with self._lock:
            state = TrafficState.model_validate_json(self.path.read_text(encoding="utf-8"))
            self._current = state
            return state

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _write_file(self, state: TrafficState) -> None:
        payload = json.dumps(json.loads(state.model_dump_json()), indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=TMP_PREFIX, dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _export(state: TrafficState) -> None:
    metrics.TRAFFIC_REVISION.set(state.revision)
    for env_id, pct in state.weights.items():
        metrics.TRAFFIC_WEIGHT.labels(environment=env_id.value).set(pct)
