"""Append-only deployment history.

One JSON object per line. Appenders serialize on a lock; nothing is ever
rewritten in place.
"""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import List, Optional, Tuple

from pydantic import ValidationError as ModelValidationError

from bluegreen.models import HistoryEntry

logger = logging.getLogger(__name__)

HISTORY_FILE = "deployment_history.jsonl"


class DeploymentHistory:
    def __init__(self, state_dir: str | Path) -> None:
        self.path = Path(state_dir) / HISTORY_FILE
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._entries: List[HistoryEntry] = self._load()

    def _load(self) -> List[HistoryEntry]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(HistoryEntry.model_validate_json(line))
                except (ModelValidationError, ValueError):
                    # a torn final line from a crash mid-append
                    logger.warning(f"Skipping unreadable history line {lineno}")
        return entries

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")
            self._entries.append(entry)
        return entry

    def entries(self, limit: Optional[int] = None) -> Tuple[HistoryEntry, ...]:
        """Time-ordered, oldest first."""
        with self._lock:
            items = sorted(self._entries, key=lambda e: e.timestamp)
        if limit is not None:
            items = items[-limit:]
        return tuple(items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
