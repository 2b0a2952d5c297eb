"""Counter store adapters.

The admission engine only needs one atomic operation from a store, so any
backend offering increment-with-conditional-TTL can sit behind this package.
"""

from throttle.adapters.counter_store.base import AbstractCounterStore
from throttle.adapters.counter_store.factory import create_counter_store
from throttle.adapters.counter_store.in_memory import InMemoryCounterStore
from throttle.adapters.counter_store.redis_store import RedisCounterStore

__all__ = [
    "AbstractCounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
