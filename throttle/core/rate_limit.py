"""Rate limiting dependency for FastAPI routes.

This module wires the admission engine into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Explicit ownership: each FastAPI app owns its engine on ``app.state``, so
  several apps (or tests) can run against independent stores.
- Bounded latency: the store round trip runs in the default executor under
  the configured store timeout; a timeout is handled like a store outage.

Timeouts do not cancel the executor thread. A late increment still lands in
the store, so a request answered by the store-failure policy may still count
against its bucket. For the redis backend the client's socket timeout uses
the same bound, which caps how long such a thread can linger.

Responses:
- over the limit -> 429 Too Many Requests
- counter store unavailable (fail-closed) -> 503 Service Unavailable
- bucket key unresolvable (fail-closed) -> 400 Bad Request
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from fastapi import HTTPException, Request, Response, status

from throttle.adapters.counter_store.base import AbstractCounterStore
from throttle.adapters.counter_store.factory import create_counter_store
from throttle.core.config import settings
from throttle.core.logging import hash_identifier
from throttle.services.admission_service import (
    AdmissionEngine,
    Decision,
    DecisionReason,
    build_admission_engine,
)
from throttle.services.key_resolver import KeyFunc, KeyResolver

logger = logging.getLogger(__name__)


# Shorthands accepted for APP_RATE_LIMIT_KEY
STATIC_KEY_ALIASES: dict[str, str] = {
    "ip": "client.host",
    "api_key": "headers.x-api-key",
}

_REJECTIONS: dict[DecisionReason, tuple[int, str]] = {
    DecisionReason.OVER_LIMIT: (
        status.HTTP_429_TOO_MANY_REQUESTS,
        "Rate limit exceeded. Try again later.",
    ),
    DecisionReason.STORE_UNAVAILABLE: (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Rate limiter unavailable. Try again later.",
    ),
    DecisionReason.KEY_UNRESOLVED: (
        status.HTTP_400_BAD_REQUEST,
        "Unable to identify the client for rate limiting.",
    ),
}


def resolve_key_field(name: str) -> str:
    """Expand a configured key alias into a request field path."""

    return STATIC_KEY_ALIASES.get(name.strip().lower(), name.strip())


def build_engine_from_settings(
    store: AbstractCounterStore | None = None,
    *,
    key: str | KeyFunc | KeyResolver | None = None,
    clock: Callable[[], float] = time.time,
) -> AdmissionEngine:
    """Build an admission engine from application settings.

    Args:
        store: Counter store handle; created from STORE_* settings if omitted.
        key: Overrides APP_RATE_LIMIT_KEY, e.g. with a key function.
        clock: Time source function returning UNIX time in seconds.

    Returns:
        AdmissionEngine: Configured engine.

    Raises:
        InvalidRateSpecError: If APP_RATE_LIMIT_RATE is invalid.
    """

    cfg = settings.app
    return build_admission_engine(
        store=store if store is not None else create_counter_store(),
        key=key if key is not None else resolve_key_field(cfg.rate_limit_key),
        rate=cfg.rate_limit_rate,
        key_error_policy=cfg.rate_limit_key_error_policy,
        store_error_policy=cfg.rate_limit_store_error_policy,
        key_prefix=cfg.rate_limit_key_prefix,
        clock=clock,
    )


def get_admission_engine(request: Request) -> AdmissionEngine:
    """Return the engine owned by the app serving ``request``."""

    engine = getattr(request.app.state, "admission_engine", None)
    if engine is None:
        raise RuntimeError("No admission engine configured on app.state")
    return engine


async def _decide_with_timeout(engine: AdmissionEngine, request: Request) -> Decision:
    """Run the blocking decision in the thread pool with a hard time bound."""

    loop = asyncio.get_running_loop()
    timeout_seconds = settings.store.timeout_seconds

    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, engine.decide, request),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            "rate_limit.store_timeout",
            extra={"timeout_seconds": timeout_seconds},
        )
        return engine.apply_failure_policy(DecisionReason.STORE_UNAVAILABLE)


def _build_headers(decision: Decision) -> dict[str, str]:
    headers: dict[str, str] = {"X-RateLimit-Limit": str(decision.limit)}
    if decision.reason in (DecisionReason.WITHIN_LIMIT, DecisionReason.OVER_LIMIT):
        headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if decision.reset_at is not None:
        headers["X-RateLimit-Reset"] = str(decision.reset_at)
    if decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


async def enforce_rate_limit(request: Request, response: Response) -> None:
    """FastAPI dependency enforcing the admission decision.

    Calls the engine exactly once per request before the route runs. Allowed
    requests pass through (with X-RateLimit-* headers when enabled); denied
    requests are rejected with an HTTPException and never reach the route.

    Args:
        request: FastAPI request.
        response: Response whose headers are decorated on success.

    Raises:
        HTTPException: 429, 503 or 400 depending on why the request was denied.
    """

    if not settings.app.rate_limit_enabled:
        return

    engine = get_admission_engine(request)
    decision = await _decide_with_timeout(engine, request)
    key_hash = hash_identifier(decision.bucket_key) if decision.bucket_key else None
    headers = _build_headers(decision) if settings.app.rate_limit_include_headers else {}

    if decision.allowed:
        logger.info(
            "rate_limit.allowed",
            extra={
                "key_hash": key_hash,
                "reason": decision.reason.value,
                "limit": decision.limit,
                "count": decision.current_count,
                "rate": str(engine.rate),
            },
        )
        response.headers.update(headers)
        return

    status_code, detail = _REJECTIONS[decision.reason]
    logger.warning(
        "rate_limit.exceeded" if decision.reason is DecisionReason.OVER_LIMIT else "rate_limit.rejected",
        extra={
            "key_hash": key_hash,
            "reason": decision.reason.value,
            "limit": decision.limit,
            "count": decision.current_count,
            "rate": str(engine.rate),
            "retry_after_s": decision.retry_after_seconds,
            "status_code": status_code,
        },
    )

    raise HTTPException(
        status_code=status_code,
        detail=detail,
        headers=headers or None,
    )
