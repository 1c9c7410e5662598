"""Process-wide request budget for the embedding provider.

One RateBudget is created per run and handed to every RateLimitedEmbedder
(ingestion workers and the query path alike). Slot accounting is done by a
pyrate-limiter bucket; waiters queue on a single lock, so the ceiling holds
under any number of threads.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from pyrate_limiter import Duration, Limiter, Rate
from pyrate_limiter.abstracts import AbstractClock
from pyrate_limiter.buckets import InMemoryBucket

logger = logging.getLogger(__name__)

_LIMITER_NAME = "embeddings"


class _MillisecondClock(AbstractClock):
    """Feeds a seconds-valued clock to the limiter, which counts in milliseconds."""

    def __init__(self, source: Callable[[], float]) -> None:
        self.source = source

    def now(self) -> int:
        return int(self.source() * 1000)


def budget_rates(requests_per_minute: int, min_interval_s: float) -> list[Rate]:
    """Rates enforced together: the per-minute ceiling and one request per min_interval_s."""
    rates = [Rate(requests_per_minute, int(Duration.MINUTE))]
    interval_ms = int(min_interval_s * 1000)
    if interval_ms > 0:
        rates.append(Rate(1, interval_ms))
    return sorted(rates, key=lambda r: r.interval)


@dataclass
class RateBudget:
    """Per-minute request ceiling with a minimum spacing between requests.

    acquire() blocks until issuing one more request keeps both limits:
    at most requests_per_minute acquisitions in any one-minute window, and at
    least min_interval_s since the previous acquisition. A full bucket is
    re-polled every poll_s seconds.
    """

    requests_per_minute: int = 60
    min_interval_s: float = 1.0
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    poll_s: float = 0.05
    bucket: InMemoryBucket | None = None

    _limiter: Limiter = field(init=False, repr=False)
    _lock: threading.Lock = field(init=False, repr=False)
    total_acquired: int = field(init=False, default=0)
    total_waited_s: float = field(init=False, default=0.0)

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0:
            raise ValueError(f"Invalid requests_per_minute: {self.requests_per_minute}. Must be positive.")
        if self.min_interval_s < 0:
            raise ValueError(f"Invalid min_interval_s: {self.min_interval_s}. Must be >= 0.")
        if self.bucket is None:
            self.bucket = InMemoryBucket(budget_rates(self.requests_per_minute, self.min_interval_s))
        self._limiter = Limiter(
            self.bucket,
            clock=_MillisecondClock(self.clock),
            raise_when_fail=False,
            max_delay=None,
        )
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Take one request slot. Returns the seconds spent waiting."""
        waited = 0.0
        with self._lock:
            while not self._limiter.try_acquire(_LIMITER_NAME, weight=1):
                self.sleep(self.poll_s)
                waited += self.poll_s
            self.total_acquired += 1
            self.total_waited_s += waited
        if waited > 1.0:
            logger.debug(f"Rate budget: waited {waited:.1f}s for a slot")
        return waited
