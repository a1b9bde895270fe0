"""Automation CRUD and run control endpoints."""

from fastapi import APIRouter, Depends, Query, status as http_status
from typing import Optional
import logging

from api.schemas.automation import (
    AutomationCreate,
    AutomationListResponse,
    AutomationResponse,
    AutomationRunRequest,
    AutomationStatusResponse,
    AutomationToggle,
    AutomationUpdate,
)
from api.schemas.common import ErrorResponse, MessageResponse, PaginationParams
from api.schemas.execution import ExecutionListResponse, ExecutionResponse
from app.dependencies import get_service, get_user_id
from core.constants import AutomationStatus, TriggerType
from core.utils import isoformat, paginate
from services.automation_service import AutomationService

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["automations"],
    responses={
        404: {"model": ErrorResponse, "description": "Automation not found"},
        409: {"model": ErrorResponse, "description": "Conflicts with an in-flight execution"},
        422: {"model": ErrorResponse, "description": "Configuration is invalid"},
    },
)


def _execution_to_response(execution) -> ExecutionResponse:
    return ExecutionResponse(**execution.to_dict())


@router.get("/", response_model=AutomationListResponse)
async def list_automations(
    pagination: PaginationParams = Depends(),
    automation_status: Optional[AutomationStatus] = Query(None, alias="status", description="Filter by status"),
    automation_type: Optional[str] = Query(None, alias="type", description="Filter by automation type"),
    search: Optional[str] = Query(None, description="Match against name and description"),
    tag: Optional[str] = Query(None, description="Filter by tag"),
    service: AutomationService = Depends(get_service),
) -> AutomationListResponse:
    """
    List automations (paginated, filterable).
    """
    definitions = await service.list_automations(
        status=automation_status, automation_type=automation_type, search=search, tag=tag
    )
    page = paginate(definitions, pagination.page, pagination.per_page)
    return AutomationListResponse(
        automations=[AutomationResponse(**await service.describe(d)) for d in page["items"]],
        total=page["total"],
        page=page["page"],
        per_page=page["per_page"],
        total_pages=page["total_pages"],
    )


@router.post("/", response_model=AutomationResponse, status_code=http_status.HTTP_201_CREATED)
async def create_automation(
    body: AutomationCreate,
    user_id: str = Depends(get_user_id),
    service: AutomationService = Depends(get_service),
) -> AutomationResponse:
    """
    Create an automation.

    Parameters are validated against the plugin's schema; a 422 response
    carries the offending fields in `field_errors`.
    """
    definition = await service.create_automation(
        body.model_dump(mode="json", exclude_none=True), user_id=user_id
    )
    return AutomationResponse(**await service.describe(definition))


@router.get("/overview")
async def get_overview(service: AutomationService = Depends(get_service)) -> dict:
    """Counts of automations and runs plus overall metrics."""
    return await service.get_overview()


@router.get("/{automation_id}", response_model=AutomationResponse)
async def get_automation(
    automation_id: str,
    service: AutomationService = Depends(get_service),
) -> AutomationResponse:
    definition = await service.get_automation_by_id(automation_id)
    return AutomationResponse(**await service.describe(definition))


@router.put("/{automation_id}", response_model=AutomationResponse)
async def update_automation(
    automation_id: str,
    body: AutomationUpdate,
    service: AutomationService = Depends(get_service),
) -> AutomationResponse:
    """
    Update an automation. Omitted fields stay unchanged; the id and
    type cannot be changed.
    """
    definition = await service.update_automation(
        automation_id, body.model_dump(mode="json", exclude_unset=True)
    )
    return AutomationResponse(**await service.describe(definition))


@router.delete("/{automation_id}", response_model=MessageResponse)
async def delete_automation(
    automation_id: str,
    service: AutomationService = Depends(get_service),
) -> MessageResponse:
    """Delete an automation. Returns 409 while it has a run in flight."""
    await service.delete_automation(automation_id)
    return MessageResponse(message=f"Automation {automation_id} deleted")


@router.post("/{automation_id}/toggle", response_model=AutomationResponse)
async def toggle_automation(
    automation_id: str,
    body: Optional[AutomationToggle] = None,
    service: AutomationService = Depends(get_service),
) -> AutomationResponse:
    definition = await service.toggle_automation(
        automation_id, enabled=body.enabled if body else None
    )
    return AutomationResponse(**await service.describe(definition))


# ─── Run control ───────────────────────────────────────


@router.post(
    "/{automation_id}/start",
    response_model=ExecutionResponse,
    status_code=http_status.HTTP_202_ACCEPTED,
)
async def start_automation(
    automation_id: str,
    body: Optional[AutomationRunRequest] = None,
    user_id: str = Depends(get_user_id),
    service: AutomationService = Depends(get_service),
) -> ExecutionResponse:
    """
    Run an automation now.

    Returns the new execution in `running` status. 409 if the
    automation already has a run in flight.
    """
    execution = await service.start_automation(
        automation_id,
        user_id=user_id,
        triggered_by=TriggerType.MANUAL,
        priority=body.priority if body else None,
    )
    logger.info(f"Automation {automation_id} started by {user_id}: {execution.id}")
    return _execution_to_response(execution)


@router.post("/{automation_id}/stop", response_model=ExecutionResponse)
async def stop_automation(
    automation_id: str,
    wait: bool = Query(True, description="Wait for the execution to close"),
    service: AutomationService = Depends(get_service),
) -> ExecutionResponse:
    execution = await service.stop_automation(automation_id, wait=wait)
    return _execution_to_response(execution)


@router.post("/{automation_id}/pause", response_model=ExecutionResponse)
async def pause_automation(
    automation_id: str,
    service: AutomationService = Depends(get_service),
) -> ExecutionResponse:
    """Pause the in-flight run. 409 if the plugin cannot pause."""
    return _execution_to_response(await service.pause_automation(automation_id))


@router.post("/{automation_id}/resume", response_model=ExecutionResponse)
async def resume_automation(
    automation_id: str,
    service: AutomationService = Depends(get_service),
) -> ExecutionResponse:
    return _execution_to_response(await service.resume_automation(automation_id))


# ─── Status & history ──────────────────────────────────


@router.get("/{automation_id}/status", response_model=AutomationStatusResponse)
async def get_automation_status(
    automation_id: str,
    service: AutomationService = Depends(get_service),
) -> AutomationStatusResponse:
    current_status = await service.get_automation_status(automation_id)
    current = service.engine.current_execution(automation_id)
    return AutomationStatusResponse(
        automation_id=automation_id,
        status=current_status.value,
        current_execution_id=current.id if current else None,
        next_execution=isoformat(service.scheduler.next_fire(automation_id)),
    )


@router.get("/{automation_id}/metrics")
async def get_automation_metrics(
    automation_id: str,
    service: AutomationService = Depends(get_service),
) -> dict:
    """Aggregate run metrics: counts, success rate, durations and next fire."""
    metrics = await service.get_metrics(automation_id)
    return metrics.to_dict()


@router.get("/{automation_id}/executions", response_model=ExecutionListResponse)
async def list_automation_executions(
    automation_id: str,
    exec_status: Optional[AutomationStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum executions returned"),
    service: AutomationService = Depends(get_service),
) -> ExecutionListResponse:
    executions = await service.list_executions(automation_id, status=exec_status, limit=limit)
    return ExecutionListResponse(
        executions=[_execution_to_response(e) for e in executions],
        total=len(executions),
    )
