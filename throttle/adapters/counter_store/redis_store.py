"""Redis-backed counter store.

Increment and TTL assignment run inside one Lua script, which Redis executes
atomically: no other command can observe the counter between ``INCR`` and
``PEXPIRE``, so two replicas can never both initialise the same window or
push back a running window's expiry.
"""

from __future__ import annotations

import logging

import redis
from redis.exceptions import RedisError

from throttle.adapters.counter_store.base import AbstractCounterStore
from throttle.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class RedisCounterStore(AbstractCounterStore):
    """Counter store using a shared Redis server."""

    # KEYS[1] = counter key, ARGV[1] = ttl in milliseconds
    INCREMENT_WITH_TTL_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    return count
    """

    def __init__(self, client: redis.Redis) -> None:
        """Initialize the store around an existing client.

        Args:
            client: Redis client. Its socket timeouts bound every round trip.
        """
        self.client = client
        # Pre-load the Lua script; redis-py falls back to EVAL on NOSCRIPT.
        self._increment_script = self.client.register_script(self.INCREMENT_WITH_TTL_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float) -> "RedisCounterStore":
        """Create a store with a client connected to ``url``.

        Args:
            url: Redis connection URL (``redis://host:port/db``).
            timeout_seconds: Connect and read timeout for every command.
        """
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=True,
        )
        return cls(client)

    def increment_and_get_with_ttl(self, key: str, ttl_ms: int) -> int:
        if not key:
            raise ValueError("key must be a non-empty string")
        if ttl_ms < 1:
            raise ValueError("ttl_ms must be >= 1")

        try:
            result = self._increment_script(keys=[key], args=[int(ttl_ms)])
        except RedisError as exc:
            logger.warning(
                "counter_store.redis_error",
                extra={"error_type": type(exc).__name__},
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message="Counter store is unavailable",
                details={"backend": "redis", "context": {"error_type": type(exc).__name__}},
            ) from exc

        return int(result)

    def ping(self) -> bool:
        """Check the Redis connection.

        Returns:
            True if the server answered, False otherwise.
        """
        try:
            return bool(self.client.ping())
        except RedisError:
            return False
