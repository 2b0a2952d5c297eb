from __future__ import annotations

from throttle.api.routes.health import router as health_router
from throttle.api.routes.ping import router as ping_router

__all__ = ["health_router", "ping_router"]
