"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import automations, events, executions, health, plugins

api_v1_router = APIRouter()

api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

api_v1_router.include_router(
    automations.router,
    prefix="/automations",
    tags=["Automations"],
)

api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

api_v1_router.include_router(
    plugins.router,
    prefix="/plugins",
    tags=["Plugins"],
)

api_v1_router.include_router(
    events.router,
    prefix="/events",
    tags=["Events"],
)
