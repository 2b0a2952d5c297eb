"""Logging utilities with JSON formatting, redaction, and request correlation.

- request_id propagation via contextvars
- credentials are replaced by "[REDACTED]"
- limiter identifiers (bucket keys, window keys, client addresses) are
  replaced by :func:`hash_identifier` digests, so one client's events can be
  correlated without the raw identifier ever reaching the log stream
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from typing import Any, Mapping

from throttle.core.config import LogSettings, settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

REDACTED = "[REDACTED]"

# Fields whose values are secrets
CREDENTIAL_KEYS: frozenset[str] = frozenset(
    {
        "api_key",
        "x-api-key",
        "authorization",
        "token",
        "secret",
        "password",
        "cookie",
        "set-cookie",
        "store_url",
    }
)

# Fields whose values identify a client
IDENTIFIER_KEYS: frozenset[str] = frozenset({"bucket_key", "window_key", "client_ip"})

# Standard LogRecord attributes, never copied into the JSON payload
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def set_request_id(request_id: str | None) -> None:
    """Store the current request id in a context variable."""

    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def hash_identifier(value: str) -> str:
    """Short, stable digest of a client identifier for log correlation.

    Args:
        value: Raw identifier (bucket key, API key, address).

    Returns:
        First 16 hex chars of the SHA-256 digest.
    """

    return hashlib.sha256(value.encode()).hexdigest()[:16]


def _mask(key: str, value: Any) -> Any:
    """Return ``value`` with credentials redacted and identifiers hashed."""

    lowered = key.lower()
    if lowered in CREDENTIAL_KEYS:
        return REDACTED
    if lowered in IDENTIFIER_KEYS:
        return hash_identifier(str(value)) if value is not None else None
    if isinstance(value, Mapping):
        return {k: _mask(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_mask("", v) for v in value)
    return value


def _extra_fields(record: LogRecord) -> dict[str, Any]:
    """Fields passed through ``extra=``."""

    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class RequestIdFilter(logging.Filter):
    """Attach request_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Mask credentials and client identifiers on the record before formatting.

    Runs before any formatter, so plain-text output is covered as well.
    Masking is idempotent: a hashed identifier is flagged on the record and
    not hashed twice if the record passes through another handler.
    """

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "_masked", False):
            return True
        for key, value in _extra_fields(record).items():
            setattr(record, key, _mask(key, value))
        record._masked = True
        return True


class JsonFormatter(logging.Formatter):
    """Format LogRecord as one JSON object per line."""

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id

        masked = getattr(record, "_masked", False)
        for key, value in _extra_fields(record).items():
            payload[key] = value if masked else _mask(key, value)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Configure the root logger to write masked records to stdout.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.
    """

    cfg = log_settings or settings.log

    level = logging.DEBUG if settings.app.debug else getattr(logging, cfg.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    if cfg.format == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
