"""Retry policy shared by the health prober and the traffic switch executor."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Tuple, Type, TypeVar

from bluegreen.errors import OperationalError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with bounded attempts and proportional jitter."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based)."""
        raw = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if self.jitter:
            raw += raw * random.uniform(-self.jitter, self.jitter)
        return max(0.0, raw)

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts):
            yield self.delay_for(attempt)

    def call(
        self,
        fn: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
        sleep: Callable[[float], None] = time.sleep,
        description: str = "operation",
    ) -> T:
        """Run ``fn`` until it succeeds or attempts run out.

        Exhaustion is promoted to :class:`OperationalError` carrying the last
        failure, so callers never see a bare transient error.
        """
        last_exc: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except retry_on as exc:
                last_exc = exc
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {exc}; "
                    f"retrying in {delay:.2f}s"
                )
                sleep(delay)
        raise OperationalError(
            f"{description} failed after {self.max_attempts} attempts: {last_exc}",
            details={"attempts": self.max_attempts},
        ) from last_exc
