"""Health check endpoints.

Provides:
- Basic liveness probe (/health/)
- Dependency check (/health/health)
- Detailed system status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
import logging

from app.config import get_settings
from app.dependencies import AutomationHub, get_hub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Get API root information and version.
    Used as a simple liveness probe.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/health", response_model=dict[str, Any])
async def health_check(hub: AutomationHub = Depends(get_hub)) -> dict[str, Any]:
    """
    Health check with dependency verification.
    Pings storage and checks registered plugins.
    Returns 503 if storage is down.
    """
    checks: dict[str, str] = {}

    try:
        await hub.repository.ping()
        checks["database"] = "ok"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        checks["database"] = "unavailable"

    plugins = hub.registry.get_health_status()
    checks["plugins"] = "ok" if plugins["healthy"] else "degraded"
    checks["scheduler"] = "ok" if hub.scheduler.running else "stopped"

    if checks["database"] == "unavailable":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )

    overall = "healthy" if checks["plugins"] == "ok" else "degraded"
    return {"status": overall, **checks}


@router.get("/status", response_model=dict[str, Any])
async def system_status(hub: AutomationHub = Depends(get_hub)) -> dict[str, Any]:
    """
    Detailed system status including uptime, versions, and component state.
    Intended for admin dashboards and monitoring.
    """
    settings = get_settings()
    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "components": {
            "plugins": len(hub.registry.list()),
            "scheduled_automations": len(hub.scheduler.scheduled_ids),
            "running_executions": len(hub.engine.running_executions()),
            "worker_pool": hub.engine.pool_stats,
            "event_subscribers": hub.event_bus.subscriber_count,
            "webhooks": len(hub.webhooks.urls) if hub.webhooks else 0,
        },
    }
