"""
Main FastAPI application (entrypoint).

Responsibilities:
- Build the tracking container (fleet directory, connection registry, dispatcher,
  classifier, tracking service) at startup and tear it down at shutdown
- Wire REST routers (/tracking, /admin) and the /ws WebSocket gateway
- Register centralized exception handlers and request-id logging middleware
- Provide health endpoint
"""
from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from api import routes_admin, routes_tracking, routes_ws
from config.settings import settings
from core.container import TrackingContainer, build_container
from core.exception_handlers import register_exception_handlers
from core.logging import configure_logging, request_logging_middleware
from core.response import ok

logger = logging.getLogger(__name__)


def create_app(container: Optional[TrackingContainer] = None) -> FastAPI:
    """
    Application factory. Tests pass a prebuilt container; otherwise one is
    built from settings when the app starts.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container(settings)
        logger.info("Tracking service ready (idle timeout %.0fs, geofence %.0fm)",
                    app.state.container.policy.idle_timeout_sec, app.state.container.policy.geofence_radius_m)
        try:
            yield
        finally:
            await app.state.container.shutdown()

    app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION, lifespan=lifespan)
    app.state.container = container

    # CORS - adjust origins for production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(routes_tracking.router, prefix="/tracking", tags=["tracking"])
    app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])
    app.include_router(routes_ws.router, tags=["realtime"])

    register_exception_handlers(app)

    # Add request logging middleware (adds X-Request-ID header and logs)
    app.middleware("http")(request_logging_middleware)

    @app.get("/health")
    async def health():
        """Simple health endpoint used by load balancers and orchestrators."""
        c = app.state.container
        return ok({
            "status": "ok",
            "active_journeys": len(c.tracking.active_snapshots()) if c else 0,
            "connections": c.registry.connection_count if c else 0,
            "messages_delivered": c.dispatcher.delivered if c else 0,
            "messages_dropped": c.dispatcher.dropped if c else 0,
        })

    return app


app = create_app()

if __name__ == "__main__":
    # Run with: python main.py for local dev. For production use uvicorn with a single worker;
    # tracking state lives in process memory.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
