"""Global mutual exclusion for migration plans.

An in-process lock guards threads; a lease file next to the traffic state
guards against a second orchestrator process. A lease older than
``stale_after`` seconds is treated as left behind by a crashed owner.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from threading import Lock
from typing import Optional

from bluegreen.errors import ConcurrencyError

logger = logging.getLogger(__name__)

LEASE_FILE = "plan.lock"


class PlanLock:
    def __init__(self, state_dir: str | Path, stale_after: float = 3600.0) -> None:
        self.path = Path(state_dir) / LEASE_FILE
        self.stale_after = stale_after
        self._lock = Lock()
        self.owner: Optional[str] = None

    def acquire(self, owner: str) -> None:
        """Take the lock for ``owner`` or raise ConcurrencyError immediately."""
        if not self._lock.acquire(blocking=False):
            raise ConcurrencyError(f"{self.owner} holds the deployment lock", details={"running_plan": self.owner})
        try:
            self._take_lease(owner)
        except BaseException:
            self._lock.release()
            raise
        self.owner = owner

    def release(self, owner: str) -> None:
        if self.owner != owner:
            logger.warning(f"Plan {owner} tried to release a lock held by {self.owner}")
            return
        self.owner = None
        self.path.unlink(missing_ok=True)
        self._lock.release()

    def held(self) -> bool:
        return self._lock.locked()

    def _take_lease(self, owner: str) -> None:
        lease = json.dumps({"owner": owner, "pid": os.getpid(), "acquired_at": time.time()})
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self._read_lease()
            age = time.time() - float(holder.get("acquired_at", 0))
            if age < self.stale_after:
                raise ConcurrencyError(
                    f"Plan {holder.get('owner')} holds the lease (pid {holder.get('pid')})",
                    details={"running_plan": holder.get("owner")},
                )
            logger.warning(f"Breaking stale plan lease of {holder.get('owner')} ({age:.0f}s old)")
            self.path.unlink(missing_ok=True)
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                raise ConcurrencyError(
                    "Another orchestrator took the stale plan lease first",
                    details={"running_plan": self._read_lease().get("owner")},
                )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(lease)

    def _read_lease(self) -> dict:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
