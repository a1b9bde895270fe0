"""Execution schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ExecutionResultResponse(BaseModel):
    """Outcome of a terminal execution."""

    success: bool = Field(description="Whether the plugin reported success")
    data: Any = Field(default=None, description="Plugin output")
    error: Optional[str] = Field(default=None, description="Error message if execution failed")
    error_kind: Optional[str] = Field(default=None, description="plugin_error or timeout")
    logs: List[str] = Field(default=[], description="Log lines captured during the run")
    metrics: Dict[str, Any] = Field(default={}, description="Duration and resource usage")


class ExecutionResponse(BaseModel):
    """Execution run information response."""

    id: str = Field(description="Execution ID")
    automation_id: str = Field(description="Automation ID")
    automation_type: str = Field(description="Automation type")
    status: str = Field(description="running, paused, completed, error or stopped")
    triggered_by: str = Field(description="How execution was triggered (schedule, manual, api, webhook)")
    priority: str = Field(description="Run priority")
    user_id: str = Field(description="User the run is attributed to")
    started_at: Optional[str] = Field(default=None, description="Execution start timestamp")
    completed_at: Optional[str] = Field(default=None, description="Execution completion timestamp")
    duration: Optional[float] = Field(default=None, description="Execution duration in seconds")
    result: Optional[ExecutionResultResponse] = Field(default=None, description="Outcome once terminal")


class ExecutionListResponse(BaseModel):
    """List of executions, newest first."""

    executions: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Number of executions returned")


class ExecutionStatsResponse(BaseModel):
    total: int
    running: int
    paused: int
    completed: int
    failed: int
    stopped: int
    average_duration: float
    pool: Dict[str, int]
