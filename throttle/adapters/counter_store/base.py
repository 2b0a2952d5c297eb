"""Counter store interface.

The admission engine depends on this abstraction only, so the backing store
(in-process dict, Redis, ...) can be swapped without touching the algorithm.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class AbstractCounterStore(ABC):
    """Interface for shared counter stores."""

    @abstractmethod
    def increment_and_get_with_ttl(self, key: str, ttl_ms: int) -> int:
        """Atomically increment a counter and return its new value.

        The increment, the "did this create the counter" check and the TTL
        assignment happen as one indivisible step for all concurrent
        callers. The TTL is set only by the increment that creates the
        counter; later increments never extend or reset it.

        Args:
            key: Counter key (a window key).
            ttl_ms: Lifetime of a newly created counter in milliseconds.

        Returns:
            The post-increment counter value (1 for a new counter).

        Raises:
            StoreUnavailableError: If the store cannot be reached or times out.
        """
        raise NotImplementedError
