"""Execution history and control endpoints."""

from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from api.schemas.common import ErrorResponse, MessageResponse
from api.schemas.execution import (
    ExecutionListResponse,
    ExecutionResponse,
    ExecutionStatsResponse,
)
from app.dependencies import get_engine
from core.constants import AutomationStatus
from execution.engine import ExecutionEngine

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["executions"],
    responses={
        404: {"model": ErrorResponse, "description": "Execution not found"},
        409: {"model": ErrorResponse, "description": "Operation not supported by the plugin"},
    },
)


def _execution_to_response(execution) -> ExecutionResponse:
    return ExecutionResponse(**execution.to_dict())


@router.get("/", response_model=ExecutionListResponse)
async def list_executions(
    automation_id: Optional[str] = Query(None, description="Filter by automation ID"),
    exec_status: Optional[AutomationStatus] = Query(None, alias="status", description="Filter by execution status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum executions returned"),
    engine: ExecutionEngine = Depends(get_engine),
) -> ExecutionListResponse:
    """
    List executions, newest first.
    """
    executions = await engine.list_executions(
        status=exec_status, automation_id=automation_id, limit=limit
    )
    return ExecutionListResponse(
        executions=[_execution_to_response(e) for e in executions],
        total=len(executions),
    )


@router.get("/stats", response_model=ExecutionStatsResponse)
async def get_execution_stats(engine: ExecutionEngine = Depends(get_engine)) -> ExecutionStatsResponse:
    """Counts per status, average duration and worker pool usage."""
    return ExecutionStatsResponse(**await engine.get_execution_stats())


@router.get("/running", response_model=ExecutionListResponse)
async def list_running_executions(engine: ExecutionEngine = Depends(get_engine)) -> ExecutionListResponse:
    executions = engine.running_executions()
    return ExecutionListResponse(
        executions=[_execution_to_response(e) for e in executions],
        total=len(executions),
    )


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_engine),
) -> ExecutionResponse:
    return _execution_to_response(await engine.get_execution(execution_id))


@router.post("/{execution_id}/stop", response_model=ExecutionResponse)
async def stop_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_engine),
) -> ExecutionResponse:
    """Request a cooperative stop. The record closes asynchronously."""
    return _execution_to_response(await engine.stop(execution_id))


@router.post("/{execution_id}/pause", response_model=ExecutionResponse)
async def pause_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_engine),
) -> ExecutionResponse:
    return _execution_to_response(await engine.pause(execution_id))


@router.post("/{execution_id}/resume", response_model=ExecutionResponse)
async def resume_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_engine),
) -> ExecutionResponse:
    return _execution_to_response(await engine.resume(execution_id))


@router.post("/cleanup", response_model=MessageResponse)
async def cleanup_executions(
    older_than_days: int = Query(30, ge=1, description="Delete terminal executions older than this"),
    engine: ExecutionEngine = Depends(get_engine),
) -> MessageResponse:
    removed = await engine.cleanup_old_executions(older_than_days)
    return MessageResponse(message=f"Removed {removed} execution(s)")
