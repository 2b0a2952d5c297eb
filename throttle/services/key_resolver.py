"""Bucket key resolution for inbound units of work.

Two variants:
- StaticKeyResolver reads a fixed field of the unit (e.g. ``client.host``).
- DerivedKeyResolver calls an application-supplied function.

Resolvers must be deterministic and must not touch the counter store: the
same unit always maps to the same bucket.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Callable

from throttle.core.errors import KeyResolutionError

KeyFunc = Callable[[Any], Any]


def _coerce_key(value: Any, *, source: str) -> str:
    """Normalize a resolved value into a non-empty bucket key.

    Surrounding whitespace is kept, so ``" a"`` and ``"a"`` stay distinct
    buckets; a value that is blank after stripping is rejected.
    """

    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise KeyResolutionError(
            code="key_unresolved",
            message=f"Key source '{source}' produced no usable value",
            details={"field": source, "context": {"value_type": type(value).__name__}},
        )

    key = str(value)
    if not key.strip():
        raise KeyResolutionError(
            code="key_unresolved",
            message=f"Key source '{source}' produced an empty value",
            details={"field": source},
        )
    return key


class KeyResolver(ABC):
    """Interface for bucket key resolvers."""

    @abstractmethod
    def resolve(self, unit: Any) -> str:
        """Return the bucket key for ``unit``.

        Raises:
            KeyResolutionError: If no non-empty key can be derived.
        """
        raise NotImplementedError


class StaticKeyResolver(KeyResolver):
    """Read a fixed field from the unit.

    ``field`` is a dotted path. Each segment is read as a non-callable
    attribute first and only then as a mapping key (headers, query params,
    dicts), so ``"client.host"`` and ``"headers.x-api-key"`` both work
    against a Starlette request. Attributes must win: ``Request`` is itself a
    mapping over the raw ASGI scope, where ``client`` is a bare tuple.
    """

    def __init__(self, field: str) -> None:
        if not field or not field.strip():
            raise ValueError("field must be a non-empty string")
        self.field = field.strip()
        self._path = tuple(part for part in self.field.split(".") if part)

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"StaticKeyResolver(field={self.field!r})"

    def _lookup(self, current: Any, part: str) -> Any:
        try:
            value = getattr(current, part, None)
        except Exception as exc:
            # Starlette raises AssertionError for request.user/session without middleware
            raise KeyResolutionError(
                code="key_unresolved",
                message=f"Field '{self.field}' cannot be read on the inbound request",
                details={"field": self.field},
            ) from exc

        if value is not None and not callable(value):
            return value
        if isinstance(current, Mapping):
            return current.get(part)
        return None

    def resolve(self, unit: Any) -> str:
        current = unit
        for part in self._path:
            if current is None:
                break
            current = self._lookup(current, part)

        if current is None:
            raise KeyResolutionError(
                code="key_unresolved",
                message=f"Field '{self.field}' is absent on the inbound request",
                details={"field": self.field},
            )
        return _coerce_key(current, source=self.field)


class DerivedKeyResolver(KeyResolver):
    """Compute the key with an application-supplied function of the unit."""

    def __init__(self, func: KeyFunc) -> None:
        if not callable(func):
            raise TypeError("func must be callable")
        self.func = func
        self._name = getattr(func, "__qualname__", None) or repr(func)

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"DerivedKeyResolver(func={self._name})"

    def resolve(self, unit: Any) -> str:
        try:
            value = self.func(unit)
        except KeyResolutionError:
            raise
        except Exception as exc:
            raise KeyResolutionError(
                code="key_function_failed",
                message=f"Key function '{self._name}' raised {type(exc).__name__}",
                details={"field": self._name},
            ) from exc

        if value is None:
            raise KeyResolutionError(
                code="key_unresolved",
                message=f"Key function '{self._name}' returned no value",
                details={"field": self._name},
            )
        return _coerce_key(value, source=self._name)


def key_resolver_from_config(key: str | KeyFunc | KeyResolver) -> KeyResolver:
    """Build the resolver variant for a ``key`` configuration value.

    Args:
        key: Field name (static), a callable (derived), or a ready resolver.

    Returns:
        KeyResolver instance.

    Raises:
        TypeError: If ``key`` is none of the supported shapes.
    """
    if isinstance(key, KeyResolver):
        return key
    if isinstance(key, str):
        return StaticKeyResolver(key)
    if callable(key):
        return DerivedKeyResolver(key)
    raise TypeError(f"key must be a field name or a callable, got {type(key).__name__}")
