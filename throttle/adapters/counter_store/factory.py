"""Factory pattern for creating counter store instances."""

from __future__ import annotations

from throttle.adapters.counter_store.base import AbstractCounterStore
from throttle.adapters.counter_store.in_memory import InMemoryCounterStore
from throttle.adapters.counter_store.redis_store import RedisCounterStore
from throttle.core.config import StoreSettings, settings
from throttle.core.errors import ValidationAppError


def create_counter_store(store_settings: StoreSettings | None = None) -> AbstractCounterStore:
    """Instantiate the counter store selected by configuration.

    Args:
        store_settings: Optional store settings; defaults to global settings.

    Returns:
        AbstractCounterStore: Configured store instance.

    Raises:
        ValidationAppError: If the backend is unknown or misconfigured.
    """
    cfg = store_settings or settings.store
    backend = cfg.backend.lower()

    if backend == "memory":
        return InMemoryCounterStore()

    if backend == "redis":
        if not cfg.url:
            raise ValidationAppError(
                code="store_missing_url",
                message="Redis counter store requires STORE_URL",
                details={"backend": backend},
            )
        return RedisCounterStore.from_url(cfg.url, timeout_seconds=cfg.timeout_seconds)

    raise ValidationAppError(
        code="store_unknown_backend",
        message=f"Unknown counter store backend: '{backend}'. Supported backends: memory, redis",
        details={"backend": backend},
    )
