"""In-memory counter store with per-key expiry.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  Use the redis backend when more than one process shares a limit.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from throttle.adapters.counter_store.base import AbstractCounterStore

logger = logging.getLogger(__name__)


@dataclass
class _Counter:
    count: int
    expires_at: float


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store backed by a dict guarded by a lock.

    Expired counters are treated as absent and are swept lazily on writes,
    mirroring how an external store reclaims keys once their TTL elapses.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 1.0,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source function returning UNIX time in seconds.
            sweep_interval_seconds: Minimum time between full expiry sweeps.
        """
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._lock = threading.RLock()
        self._counters: dict[str, _Counter] = {}
        self._last_sweep = 0.0
        self._expirations = 0

    def increment_and_get_with_ttl(self, key: str, ttl_ms: int) -> int:
        if not key:
            raise ValueError("key must be a non-empty string")
        if ttl_ms < 1:
            raise ValueError("ttl_ms must be >= 1")

        with self._lock:
            now = self._clock()
            self._sweep_expired_locked(now)

            counter = self._counters.get(key)
            if counter is None or counter.expires_at <= now:
                counter = _Counter(count=0, expires_at=now + ttl_ms / 1000)
                self._counters[key] = counter

            counter.count += 1
            return counter.count

    def clear(self) -> None:
        """Remove all counters."""

        with self._lock:
            self._counters.clear()
            self._expirations = 0

    def stats(self) -> dict[str, int]:
        """Return lightweight store metrics without exposing keys."""

        with self._lock:
            return {
                "counters": len(self._counters),
                "expirations": self._expirations,
            }

    def _sweep_expired_locked(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now

        expired = [k for k, counter in self._counters.items() if counter.expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._expirations += len(expired)

        if expired:
            logger.debug(
                "counter_store.swept",
                extra={"expired": len(expired), "size": len(self._counters)},
            )
