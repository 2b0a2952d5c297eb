"""Fixed-window admission decisions against a shared counter store.

For every inbound unit the engine resolves a bucket key, derives the store
key of the current window and performs a single atomic increment. The
returned count alone decides admission, so any number of engines (threads,
processes, hosts) sharing one store agree without further coordination.

Windows are aligned to ``floor(now / window)``: a burst straddling a window
edge can admit up to ``2 x max_count`` units in a short interval. That is
inherent to fixed windows and accepted here.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from throttle.adapters.counter_store.base import AbstractCounterStore
from throttle.core.errors import KeyResolutionError, StoreUnavailableError
from throttle.core.logging import hash_identifier
from throttle.services.key_resolver import KeyFunc, KeyResolver, key_resolver_from_config
from throttle.services.rate_spec import RateSpec, parse_rate

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    """What to do with a unit when the decision cannot be computed."""

    OPEN = "open"
    CLOSED = "closed"


class DecisionReason(str, Enum):
    WITHIN_LIMIT = "within_limit"
    OVER_LIMIT = "over_limit"
    KEY_UNRESOLVED = "key_unresolved"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the unit may proceed.
        current_count: Post-increment window count (0 when not counted).
        limit: Max admissions per window.
        reason: Why the decision was taken.
        reset_at: UNIX epoch seconds when the current window ends.
        retry_after_seconds: Suggested wait in seconds when over the limit.
        bucket_key: Resolved bucket key, None when resolution failed.
    """

    allowed: bool
    current_count: int
    limit: int
    reason: DecisionReason
    reset_at: int | None = None
    retry_after_seconds: int | None = None
    bucket_key: str | None = field(default=None, repr=False)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)


class AdmissionEngine:
    """Decide whether inbound units may proceed under a fixed-window rate.

    The engine is immutable after construction and keeps no per-request
    state; the store handle is injected so independent engines (and tests)
    can run against independent stores.
    """

    def __init__(
        self,
        *,
        store: AbstractCounterStore,
        key_resolver: KeyResolver,
        rate: RateSpec,
        key_error_policy: FailurePolicy = FailurePolicy.CLOSED,
        store_error_policy: FailurePolicy = FailurePolicy.CLOSED,
        key_prefix: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Shared counter store.
            key_resolver: Derives the bucket key from an inbound unit.
            rate: Limit applied to every bucket.
            key_error_policy: Outcome when the key cannot be resolved.
            store_error_policy: Outcome when the store is unavailable.
            key_prefix: Optional namespace for store keys.
            clock: Time source function returning UNIX time in seconds.
        """
        self._store = store
        self._key_resolver = key_resolver
        self._rate = rate
        self._key_error_policy = FailurePolicy(key_error_policy)
        self._store_error_policy = FailurePolicy(store_error_policy)
        self._key_prefix = key_prefix or None
        self._clock = clock

    @property
    def rate(self) -> RateSpec:
        return self._rate

    def window_key(self, bucket_key: str, window_index: int) -> str:
        """Store key of the counter for ``bucket_key`` in ``window_index``."""
        if self._key_prefix:
            return f"{self._key_prefix}:{bucket_key}:{window_index}"
        return f"{bucket_key}:{window_index}"

    def decide(self, unit: Any) -> Decision:
        """Count ``unit`` against its bucket and return the decision.

        Never raises for per-request failures: an unresolvable key or an
        unavailable store is folded into the configured failure policy.

        Args:
            unit: Inbound unit of work (e.g. an HTTP request).

        Returns:
            Decision for this unit.
        """
        try:
            bucket_key = self._key_resolver.resolve(unit)
        except KeyResolutionError as exc:
            logger.warning(
                "rate_limit.key_unresolved",
                extra={
                    "error_code": exc.code,
                    "error_message": exc.message,
                    "policy": self._key_error_policy.value,
                },
            )
            return self.apply_failure_policy(DecisionReason.KEY_UNRESOLVED)

        now = self._clock()
        window_index = self._rate.window_index(now)
        window_key = self.window_key(bucket_key, window_index)

        try:
            count = self._store.increment_and_get_with_ttl(window_key, self._rate.window_ms)
        except StoreUnavailableError as exc:
            logger.error(
                "rate_limit.store_unavailable",
                extra={
                    "error_code": exc.code,
                    "key_hash": hash_identifier(bucket_key),
                    "policy": self._store_error_policy.value,
                },
            )
            return self.apply_failure_policy(DecisionReason.STORE_UNAVAILABLE)

        _, reset_at = self._rate.window_bounds(now)
        if count <= self._rate.max_count:
            return Decision(
                allowed=True,
                current_count=count,
                limit=self._rate.max_count,
                reason=DecisionReason.WITHIN_LIMIT,
                reset_at=int(math.ceil(reset_at)),
                bucket_key=bucket_key,
            )

        return Decision(
            allowed=False,
            current_count=count,
            limit=self._rate.max_count,
            reason=DecisionReason.OVER_LIMIT,
            reset_at=int(math.ceil(reset_at)),
            retry_after_seconds=max(1, int(math.ceil(reset_at - now))),
            bucket_key=bucket_key,
        )

    def apply_failure_policy(self, reason: DecisionReason) -> Decision:
        """Build the decision for a unit whose count could not be taken.

        Args:
            reason: KEY_UNRESOLVED or STORE_UNAVAILABLE.

        Returns:
            Allowing decision under fail-open, denying under fail-closed.
        """
        if reason is DecisionReason.KEY_UNRESOLVED:
            policy = self._key_error_policy
        elif reason is DecisionReason.STORE_UNAVAILABLE:
            policy = self._store_error_policy
        else:
            raise ValueError(f"{reason.value} is not a failure reason")

        return Decision(
            allowed=policy is FailurePolicy.OPEN,
            current_count=0,
            limit=self._rate.max_count,
            reason=reason,
        )


def build_admission_engine(
    *,
    store: AbstractCounterStore,
    key: str | KeyFunc | KeyResolver,
    rate: str | RateSpec,
    key_error_policy: FailurePolicy | str = FailurePolicy.CLOSED,
    store_error_policy: FailurePolicy | str = FailurePolicy.CLOSED,
    key_prefix: str | None = None,
    clock: Callable[[], float] = time.time,
) -> AdmissionEngine:
    """Build an engine from the ``{store, key, rate}`` configuration surface.

    Args:
        store: Shared counter store handle.
        key: Static field name, key function, or resolver.
        rate: Rate expression such as ``"10/second"`` or a RateSpec.
        key_error_policy: "open" or "closed" for unresolvable keys.
        store_error_policy: "open" or "closed" for store outages.
        key_prefix: Optional namespace for store keys.
        clock: Time source function returning UNIX time in seconds.

    Raises:
        InvalidRateSpecError: If ``rate`` cannot be parsed.
    """
    rate_spec = rate if isinstance(rate, RateSpec) else parse_rate(rate)
    engine = AdmissionEngine(
        store=store,
        key_resolver=key_resolver_from_config(key),
        rate=rate_spec,
        key_error_policy=FailurePolicy(key_error_policy),
        store_error_policy=FailurePolicy(store_error_policy),
        key_prefix=key_prefix,
        clock=clock,
    )
    logger.info(
        "rate_limit.engine_configured",
        extra={
            "rate": str(rate_spec),
            "store": type(store).__name__,
            "key_error_policy": FailurePolicy(key_error_policy).value,
            "store_error_policy": FailurePolicy(store_error_policy).value,
        },
    )
    return engine
