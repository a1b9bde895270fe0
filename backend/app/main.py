"""Automation Hub - FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from app.dependencies import AutomationHub, build_hub
from api.v1.router import api_v1_router
from api.routes import health
from api.routes.ws import router as ws_router
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from core.metrics import MetricsMiddleware, metrics_router

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        if get_settings().is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    setup_logging()

    try:
        settings.validate_secrets()
    except RuntimeError as e:
        logger.critical("Startup aborted: %s", e)
        raise

    hub: AutomationHub = app.state.hub
    await hub.service.startup(start_scheduler=settings.SCHEDULER_ENABLED)
    logger.info(
        "%s v%s started (%s), %d plugin(s) registered",
        settings.APP_NAME,
        settings.APP_VERSION,
        settings.ENVIRONMENT,
        len(hub.registry.list()),
    )
    yield
    await hub.service.shutdown()
    logger.info("Application shut down")


def create_app(hub: Optional[AutomationHub] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        hub: Pre-built components; assembled from settings when omitted
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Pluggable automation hub: schedule, run and monitor automations "
                    "backed by typed, self-describing plugins.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.hub = hub or build_hub(settings)

    # Prometheus metrics middleware (innermost, sees the final status code)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestTrackingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-User-ID"],
    )

    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    # Event stream (mounted directly on the app)
    app.include_router(ws_router)

    # Prometheus metrics (unauthenticated, for scrapers)
    app.include_router(metrics_router)

    return app


app = create_app()
