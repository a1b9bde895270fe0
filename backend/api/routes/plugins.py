"""Plugin catalog API endpoints."""

from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from api.schemas.common import ErrorResponse, MessageResponse
from api.schemas.plugin import (
    ConfigValidateRequest,
    ConfigValidateResponse,
    PluginHealthResponse,
    PluginResponse,
)
from app.dependencies import get_registry, get_service
from plugins.registry import PluginRegistry
from services.automation_service import AutomationService

router = APIRouter(
    tags=["plugins"],
    responses={404: {"model": ErrorResponse, "description": "Plugin type not registered"}},
)


def _plugin_to_response(plugin) -> PluginResponse:
    return PluginResponse(**plugin.info(), config_schema=plugin.get_config_schema().to_dict())


@router.get("/", response_model=List[PluginResponse])
async def list_plugins(
    category: Optional[str] = Query(None, description="Filter by category"),
    search: Optional[str] = Query(None, description="Match against type, name and description"),
    registry: PluginRegistry = Depends(get_registry),
) -> List[PluginResponse]:
    """List registered plugins with their configuration schemas."""
    if search:
        plugins = registry.search(search)
    elif category:
        plugins = registry.get_by_category(category)
    else:
        plugins = registry.list()
    if search and category:
        plugins = [p for p in plugins if p.category == category]
    return [_plugin_to_response(p) for p in plugins]


@router.get("/stats")
async def get_plugin_stats(registry: PluginRegistry = Depends(get_registry)) -> dict:
    return {**registry.get_stats(), "health": registry.get_health_status()}


@router.get("/{automation_type}", response_model=PluginResponse)
async def get_plugin(
    automation_type: str,
    registry: PluginRegistry = Depends(get_registry),
) -> PluginResponse:
    return _plugin_to_response(registry.require(automation_type))


@router.get("/{automation_type}/schema")
async def get_plugin_schema(
    automation_type: str,
    registry: PluginRegistry = Depends(get_registry),
) -> dict:
    """Configuration schema and default parameters of a plugin."""
    plugin = registry.require(automation_type)
    return {
        "type": plugin.type,
        "schema": plugin.get_config_schema().to_dict(),
        "defaults": plugin.get_default_config(),
    }


@router.post("/{automation_type}/validate", response_model=ConfigValidateResponse)
async def validate_plugin_config(
    automation_type: str,
    body: ConfigValidateRequest,
    registry: PluginRegistry = Depends(get_registry),
) -> ConfigValidateResponse:
    """Check candidate parameters without storing anything."""
    result = registry.require(automation_type).validate_config(body.parameters)
    return ConfigValidateResponse(**result.to_dict())


@router.get("/{automation_type}/health", response_model=PluginHealthResponse)
async def check_plugin(
    automation_type: str,
    registry: PluginRegistry = Depends(get_registry),
) -> PluginHealthResponse:
    return PluginHealthResponse(**registry.validate_plugin(automation_type))


@router.delete("/{automation_type}", response_model=MessageResponse)
async def uninstall_plugin(
    automation_type: str,
    service: AutomationService = Depends(get_service),
) -> MessageResponse:
    """Unregister a plugin. 409 while one of its executions is in flight."""
    await service.uninstall_plugin(automation_type)
    return MessageResponse(message=f"Plugin {automation_type} uninstalled")
