"""Domain records for automations and their executions.

AutomationDefinition is the configured unit of work; Execution is one
attempt to run it. Both serialize to plain dicts for the API layer and
the persistence layer.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from core.constants import (
    AutomationStatus,
    ExecutionPriority,
    ScheduleType,
    TriggerType,
)
from core.utils import isoformat, parse_datetime, utc_now


@dataclass(frozen=True)
class Schedule:
    """When an automation fires on its own.

    interval schedules carry `interval_seconds`; cron schedules carry
    `expression` and an IANA `timezone`.
    """

    type: ScheduleType = ScheduleType.MANUAL
    interval_seconds: Optional[float] = None
    expression: Optional[str] = None
    timezone: str = "UTC"

    @classmethod
    def manual(cls) -> "Schedule":
        return cls(type=ScheduleType.MANUAL)

    @classmethod
    def interval(cls, every) -> "Schedule":
        seconds = every.total_seconds() if isinstance(every, timedelta) else float(every)
        if seconds <= 0:
            raise ValueError("Interval must be positive")
        return cls(type=ScheduleType.INTERVAL, interval_seconds=seconds)

    @classmethod
    def cron(cls, expression: str, timezone: str = "UTC") -> "Schedule":
        return cls(type=ScheduleType.CRON, expression=expression.strip(), timezone=timezone or "UTC")

    @property
    def is_manual(self) -> bool:
        return self.type == ScheduleType.MANUAL

    @property
    def interval_delta(self) -> Optional[timedelta]:
        if self.interval_seconds is None:
            return None
        return timedelta(seconds=self.interval_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "interval_seconds": self.interval_seconds,
            "expression": self.expression,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Schedule":
        """Build a schedule from API/storage data.

        For interval schedules an `expression` holding milliseconds is
        accepted as well as `interval_seconds`.
        """
        if not data:
            return cls.manual()
        schedule_type = ScheduleType(data.get("type", ScheduleType.MANUAL.value))
        if schedule_type == ScheduleType.INTERVAL:
            seconds = data.get("interval_seconds")
            if seconds is None and data.get("expression") not in (None, ""):
                seconds = float(data["expression"]) / 1000.0
            if seconds is None:
                raise ValueError("Interval schedule requires interval_seconds")
            return cls.interval(float(seconds))
        if schedule_type == ScheduleType.CRON:
            if not data.get("expression"):
                raise ValueError("Cron schedule requires an expression")
            return cls.cron(data["expression"], data.get("timezone") or "UTC")
        return cls.manual()


@dataclass
class AutomationMetadata:
    author: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    tags: set[str] = field(default_factory=set)
    category: str = "general"

    def to_dict(self) -> dict[str, Any]:
        return {
            "author": self.author,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "tags": sorted(self.tags),
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AutomationMetadata":
        data = data or {}
        now = utc_now()
        return cls(
            author=data.get("author", ""),
            created_at=parse_datetime(data.get("created_at")) or now,
            updated_at=parse_datetime(data.get("updated_at")) or now,
            tags=set(data.get("tags") or ()),
            category=data.get("category") or "general",
        )


@dataclass
class AutomationDefinition:
    """Identity and policy of one configured automation."""

    id: str
    name: str
    type: str
    description: str = ""
    version: str = "1.0.0"
    enabled: bool = True
    schedule: Schedule = field(default_factory=Schedule.manual)
    parameters: dict[str, Any] = field(default_factory=dict)
    metadata: AutomationMetadata = field(default_factory=AutomationMetadata)
    priority: ExecutionPriority = ExecutionPriority.MEDIUM

    def clone(self) -> "AutomationDefinition":
        """Deep copy so callers never share mutable parameters with the store."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "version": self.version,
            "enabled": self.enabled,
            "schedule": self.schedule.to_dict(),
            "parameters": copy.deepcopy(self.parameters),
            "metadata": self.metadata.to_dict(),
            "priority": self.priority.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AutomationDefinition":
        return cls(
            id=data["id"],
            name=data["name"],
            type=data["type"],
            description=data.get("description", ""),
            version=data.get("version", "1.0.0"),
            enabled=data.get("enabled", True),
            schedule=Schedule.from_dict(data.get("schedule")),
            parameters=copy.deepcopy(data.get("parameters") or {}),
            metadata=AutomationMetadata.from_dict(data.get("metadata")),
            priority=ExecutionPriority(data.get("priority", ExecutionPriority.MEDIUM.value)),
        )


@dataclass(frozen=True)
class ResourceUsage:
    cpu: float = 0.0
    memory: float = 0.0
    network: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"cpu": self.cpu, "memory": self.memory, "network": self.network}


@dataclass
class ExecutionResult:
    """Outcome recorded on an execution once it reaches a terminal status."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # "plugin_error" or "timeout"
    logs: list[str] = field(default_factory=list)
    duration: Optional[float] = None
    resource_usage: Optional[ResourceUsage] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind,
            "logs": list(self.logs),
            "metrics": {
                "duration": self.duration,
                "resource_usage": self.resource_usage.to_dict() if self.resource_usage else None,
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ExecutionResult"]:
        if not data:
            return None
        metrics = data.get("metrics") or {}
        usage = metrics.get("resource_usage")
        return cls(
            success=bool(data.get("success")),
            data=data.get("data"),
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            logs=list(data.get("logs") or []),
            duration=metrics.get("duration"),
            resource_usage=ResourceUsage(**usage) if usage else None,
        )


@dataclass
class Execution:
    """One attempt to run an automation."""

    id: str
    automation_id: str
    automation_type: str
    status: AutomationStatus
    triggered_by: TriggerType
    priority: ExecutionPriority
    user_id: str
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    result: Optional[ExecutionResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and completion; None while in flight."""
        if self.completed_at is None:
            return None
        return max((self.completed_at - self.started_at).total_seconds(), 0.0)

    def snapshot(self) -> "Execution":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "automation_type": self.automation_type,
            "status": self.status.value,
            "triggered_by": self.triggered_by.value,
            "priority": self.priority.value,
            "user_id": self.user_id,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "duration": self.duration,
            "result": self.result.to_dict() if self.result else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Execution":
        return cls(
            id=data["id"],
            automation_id=data["automation_id"],
            automation_type=data.get("automation_type", ""),
            status=AutomationStatus(data["status"]),
            triggered_by=TriggerType(data.get("triggered_by", TriggerType.MANUAL.value)),
            priority=ExecutionPriority(data.get("priority", ExecutionPriority.MEDIUM.value)),
            user_id=data.get("user_id", ""),
            started_at=parse_datetime(data.get("started_at")) or utc_now(),
            completed_at=parse_datetime(data.get("completed_at")),
            result=ExecutionResult.from_dict(data.get("result")),
        )
