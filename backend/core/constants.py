"""Constants and enums for the automation hub."""

from enum import Enum


class AutomationStatus(str, Enum):
    """Status of an automation or of one of its executions."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AutomationStatus.COMPLETED, AutomationStatus.ERROR, AutomationStatus.STOPPED}
)


class AutomationType(str, Enum):
    """Automation types known out of the box.

    Plugins may register any type string; these are the well-known ones.
    """

    RH_EVOLUTION = "rh-evolution"
    EMAIL_MARKETING = "email-marketing"
    DATA_SYNC = "data-sync"
    REPORT_GENERATOR = "report-generator"
    BACKUP = "backup"
    MONITORING = "monitoring"


class ExecutionPriority(str, Enum):
    """Advisory priority of an execution."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Lower rank is served first by the worker pool."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ExecutionPriority.CRITICAL: 0,
    ExecutionPriority.HIGH: 1,
    ExecutionPriority.MEDIUM: 2,
    ExecutionPriority.LOW: 3,
}


class TriggerType(str, Enum):
    """What started an execution."""

    SCHEDULE = "schedule"
    MANUAL = "manual"
    API = "api"
    WEBHOOK = "webhook"


class ScheduleType(str, Enum):
    """Schedule descriptor kinds."""

    MANUAL = "manual"
    INTERVAL = "interval"
    CRON = "cron"


class EventType(str, Enum):
    """Lifecycle events published on the event bus."""

    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_PAUSED = "execution.paused"
    EXECUTION_RESUMED = "execution.resumed"
    EXECUTION_STOPPED = "execution.stopped"
    CONFIG_UPDATED = "config.updated"
    PLUGIN_INSTALLED = "plugin.installed"
    PLUGIN_UNINSTALLED = "plugin.uninstalled"
    AUTOMATION_CREATED = "automation.created"
    AUTOMATION_DELETED = "automation.deleted"
    SCHEDULE_COALESCED = "schedule.coalesced"


class Environment(str, Enum):
    """Environment tag handed to plugins."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Capability(str, Enum):
    """Optional plugin capabilities."""

    PAUSE = "pause"
    STOP = "stop"
