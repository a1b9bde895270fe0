"""Automation schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from core.constants import ExecutionPriority, ScheduleType


class ScheduleSchema(BaseModel):
    """When an automation fires on its own."""

    type: ScheduleType = Field(default=ScheduleType.MANUAL, description="manual, interval or cron")
    interval_seconds: Optional[float] = Field(
        default=None, gt=0, description="Interval length in seconds (interval schedules)"
    )
    expression: Optional[str] = Field(
        default=None,
        description="Cron expression, or the interval in milliseconds for interval schedules",
    )
    timezone: str = Field(default="UTC", description="IANA timezone for cron schedules")


class AutomationCreate(BaseModel):
    """Request to create an automation."""

    id: Optional[str] = Field(default=None, min_length=1, description="Explicit automation ID")
    name: str = Field(min_length=1, description="Automation name")
    type: str = Field(min_length=1, description="Automation type (selects the plugin)")
    description: Optional[str] = Field(default="", description="Automation description")
    version: Optional[str] = Field(default="1.0.0", description="Definition version")
    enabled: bool = Field(default=True, description="Whether the schedule is active")
    schedule: Optional[ScheduleSchema] = Field(default=None, description="Schedule, manual if omitted")
    parameters: Dict[str, Any] = Field(default={}, description="Plugin configuration values")
    priority: ExecutionPriority = Field(default=ExecutionPriority.MEDIUM, description="Run priority")
    tags: List[str] = Field(default=[], description="Free-form tags")
    category: Optional[str] = Field(default=None, description="Category, plugin category if omitted")


class AutomationUpdate(BaseModel):
    """Request to update an automation. Omitted fields are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, description="Automation name")
    description: Optional[str] = Field(default=None, description="Automation description")
    version: Optional[str] = Field(default=None, description="Definition version")
    enabled: Optional[bool] = Field(default=None, description="Whether the schedule is active")
    schedule: Optional[ScheduleSchema] = Field(default=None, description="New schedule")
    parameters: Optional[Dict[str, Any]] = Field(default=None, description="Replacement parameters")
    priority: Optional[ExecutionPriority] = Field(default=None, description="Run priority")
    tags: Optional[List[str]] = Field(default=None, description="Replacement tags")
    category: Optional[str] = Field(default=None, description="Category")


class AutomationToggle(BaseModel):
    """Enable/disable request. Flips the current flag when `enabled` is omitted."""

    enabled: Optional[bool] = None


class AutomationRunRequest(BaseModel):
    """Options for a manual run."""

    priority: Optional[ExecutionPriority] = Field(
        default=None, description="Override the automation's priority for this run"
    )


class AutomationResponse(BaseModel):
    """Automation definition plus live status and metrics."""

    id: str = Field(description="Automation ID")
    name: str = Field(description="Automation name")
    type: str = Field(description="Automation type")
    description: str = Field(description="Automation description")
    version: str = Field(description="Definition version")
    enabled: bool = Field(description="Whether the schedule is active")
    schedule: Dict[str, Any] = Field(description="Schedule")
    parameters: Dict[str, Any] = Field(description="Plugin configuration values")
    metadata: Dict[str, Any] = Field(description="Author, timestamps, tags and category")
    priority: str = Field(description="Run priority")
    status: str = Field(description="Current status")
    current_execution_id: Optional[str] = Field(default=None, description="In-flight execution")
    metrics: Dict[str, Any] = Field(description="Aggregate run metrics")


class AutomationListResponse(BaseModel):
    """Paginated list of automations."""

    automations: List[AutomationResponse] = Field(description="List of automations")
    total: int = Field(description="Total number of automations")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")
    total_pages: int = Field(description="Number of pages")


class AutomationStatusResponse(BaseModel):
    automation_id: str
    status: str
    current_execution_id: Optional[str] = None
    next_execution: Optional[str] = None
