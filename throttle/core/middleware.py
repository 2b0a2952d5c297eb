"""HTTP middleware for request ID propagation and access logging.

Every request/response pair carries a correlation id so that admission
decisions logged deep inside the rate limiter can be tied back to the
request that triggered them.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from throttle.core.config import settings
from throttle.core.logging import clear_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """Attach a request id to the logging context and the response.

    Uses the incoming ``X-Request-ID`` header (configurable through
    LOG_REQUEST_ID_HEADER) or generates a UUID. The id is stored in
    contextvars for the lifetime of the request, echoed back on the response
    and cleared afterwards. Total handling time is returned in
    ``X-Request-Duration-ms``.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with correlation headers added.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            "http.request",
            extra={
                "route": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
