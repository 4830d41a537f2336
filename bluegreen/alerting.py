"""Alert fan-out with per-key cooldown.

Sinks are called from a small worker pool so a slow or failing channel never
holds up the caller (usually the monitor loop).
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

import requests

from bluegreen import metrics
from bluegreen.models import AlertEvent, Severity

logger = logging.getLogger(__name__)


class AlertSink(ABC):
    @abstractmethod
    def send(self, event: AlertEvent) -> None:
        """Deliver ``event``; may raise, the manager contains it."""


class LogSink(AlertSink):
    """Writes alerts to the ``bluegreen.alerts`` logger."""

    _levels = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self) -> None:
        self.logger = logging.getLogger("bluegreen.alerts")

    def send(self, event: AlertEvent) -> None:
        self.logger.log(
            self._levels[event.severity],
            f"{event.severity.value.upper()}: {event.type} - {event.message}",
            extra={"alert_type": event.type, "cooldown_key": event.key()},
        )


class WebhookSink(AlertSink):
    """POSTs alerts as JSON, e.g. to a Slack-compatible incoming webhook."""

    def __init__(self, url: str, timeout: float = 3.0, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, event: AlertEvent) -> None:
        payload = {
            "text": f"[{event.severity.value.upper()}] {event.type}: {event.message}",
            "alert": event.model_dump(mode="json"),
        }
        resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        resp.raise_for_status()


class AlertManager:
    """Deduplicates alerts by cooldown key and fans them out to sinks."""

    def __init__(
        self,
        sinks: Iterable[AlertSink],
        cooldown_seconds: float = 60.0,
        recent_limit: int = 100,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 2,
    ) -> None:
        self.sinks: List[AlertSink] = list(sinks)
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self._last_sent: Dict[str, float] = {}
        self._recent: deque = deque(maxlen=recent_limit)
        self._lock = Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="alert-sink")

    def emit(self, event: AlertEvent, cooldown_seconds: Optional[float] = None) -> bool:
        """Send ``event`` unless its key fired within the cooldown window.

        Returns True when the event was dispatched.
        """
        window = self.cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        now = self.clock()
        with self._lock:
            last = self._last_sent.get(event.key())
            if last is not None and now - last < window:
                logger.debug(f"Suppressed {event.key()} ({now - last:.0f}s into {window:.0f}s cooldown)")
                return False
            self._last_sent[event.key()] = now
            self._recent.appendleft(event)

        metrics.ALERTS.labels(type=event.type, severity=event.severity.value).inc()
        for sink in self.sinks:
            future = self._pool.submit(sink.send, event)
            future.add_done_callback(lambda f, s=sink: self._report(f, s, event))
        return True

    def recent(self, limit: int = 50) -> List[AlertEvent]:
        with self._lock:
            return list(self._recent)[:limit]

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    @staticmethod
    def _report(future: Future, sink: AlertSink, event: AlertEvent) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(f"{type(sink).__name__} failed to deliver {event.type}: {exc}")
