"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and
the admission engine) so tests can build isolated apps with their own
counter store and clock.
"""

from __future__ import annotations

from fastapi import FastAPI

from throttle.api.routes import health_router, ping_router
from throttle.core.config import settings
from throttle.core.exception_handlers import setup_exception_handlers
from throttle.core.logging import configure_logging
from throttle.core.middleware import request_id_middleware
from throttle.core.rate_limit import build_engine_from_settings
from throttle.services.admission_service import AdmissionEngine


def create_app(engine: AdmissionEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        engine: Admission engine to use; built from settings when omitted.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.

    Raises:
        InvalidRateSpecError: If the configured rate is invalid.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Throttle API",
        description=(
            "Fixed-window admission control backed by a shared counter store. "
            "Rate-limited routes answer 429 once a client exhausts its window."
        ),
        version="0.1.0",
    )

    # Engine is owned by this app instance, never a module-level singleton
    app.state.admission_engine = engine or build_engine_from_settings()

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    app.include_router(ping_router, prefix="/v1")
    app.include_router(health_router)

    return app
