"""Automation service: the facade the API and UI call into.

Owns definition CRUD (validated against the plugin schema before
anything is stored), keeps the scheduler in sync with definitions, and
forwards run control to the execution engine.
"""

import copy
from typing import Any, Dict, List, Optional, Union

import structlog

from core.constants import (
    AutomationStatus,
    EventType,
    ExecutionPriority,
    TriggerType,
)
from core.exceptions import (
    AlreadyExistsError,
    ConfigValidationError,
    InUseError,
    NotFoundError,
    UnsupportedOperationError,
)
from core.utils import generate_id, utc_now
from events.bus import Event, EventBus
from execution.engine import ExecutionEngine
from execution.metrics import MetricsSnapshot
from execution.models import (
    AutomationDefinition,
    AutomationMetadata,
    Execution,
    ExecutionResult,
    Schedule,
)
from plugins.base import AutomationPlugin
from plugins.registry import PluginRegistry
from services.repository import Repository
from triggers.scheduler import Scheduler, validate_schedule

logger = structlog.get_logger(__name__)

_EDITABLE_FIELDS = (
    "name", "description", "version", "enabled", "schedule", "parameters",
    "priority", "tags", "category",
)


def _coerce_schedule(value: Union[Schedule, Dict[str, Any], None]) -> Schedule:
    if isinstance(value, Schedule):
        return value
    try:
        return Schedule.from_dict(value)
    except (ValueError, TypeError) as e:
        raise ConfigValidationError([str(e)], field_errors={"schedule": [str(e)]}) from e


class AutomationService:
    """Automation CRUD and run control."""

    def __init__(
        self,
        registry: PluginRegistry,
        repository: Repository,
        engine: ExecutionEngine,
        scheduler: Scheduler,
        event_bus: EventBus,
    ):
        self.registry = registry
        self.repository = repository
        self.engine = engine
        self.scheduler = scheduler
        self.event_bus = event_bus

    # ─── Lifecycle ─────────────────────────────────────────

    async def startup(self, start_scheduler: bool = True) -> None:
        """Load stored state, close interrupted runs and schedule automations."""
        await self.repository.initialize()

        interrupted = 0
        for status in (AutomationStatus.RUNNING, AutomationStatus.PAUSED):
            for execution in await self.repository.list_executions(status=status):
                if self.engine.current_execution(execution.automation_id) is not None:
                    continue
                execution.status = AutomationStatus.ERROR
                execution.completed_at = utc_now()
                execution.result = ExecutionResult(
                    success=False,
                    error="Execution interrupted by service restart",
                    error_kind="plugin_error",
                )
                await self.repository.save_execution(execution)
                interrupted += 1

        definitions = await self.repository.list_automations()
        for definition in definitions:
            history = await self.repository.list_executions(
                automation_id=definition.id, limit=self.engine.history_limit
            )
            self.engine.load_history(definition.id, history)
            try:
                self.scheduler.schedule(definition)
            except ValueError as e:
                logger.warning("Stored schedule is invalid", automation_id=definition.id, error=str(e))

        if start_scheduler:
            self.scheduler.start()
        logger.info(
            "Automation service started",
            automations=len(definitions),
            interrupted_executions=interrupted,
            plugins=len(self.registry.list()),
        )

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.engine.shutdown()
        await self.event_bus.close()
        await self.repository.close()
        logger.info("Automation service stopped")

    # ─── Helpers ───────────────────────────────────────────

    async def _publish(self, event_type: EventType, automation_id: Optional[str], **payload) -> None:
        await self.event_bus.publish(Event(type=event_type, automation_id=automation_id, payload=payload))

    def _validate(self, definition: AutomationDefinition) -> AutomationPlugin:
        """Check type, parameters and schedule before anything is stored."""
        plugin = self.registry.require(definition.type)
        result = plugin.validate_config(definition.parameters)
        errors = list(result.errors)
        field_errors = dict(result.field_errors)

        schedule_errors = validate_schedule(definition.schedule)
        if schedule_errors:
            errors.extend(schedule_errors)
            field_errors["schedule"] = schedule_errors
        if not definition.name or not definition.name.strip():
            errors.insert(0, "Name is required")
            field_errors["name"] = ["Name is required"]

        if errors:
            raise ConfigValidationError(errors, field_errors=field_errors)
        return plugin

    # ─── CRUD ──────────────────────────────────────────────

    async def create_automation(
        self, data: Dict[str, Any], user_id: Optional[str] = None
    ) -> AutomationDefinition:
        """
        Create an automation.

        Parameters are seeded with the plugin's defaults and validated
        before the definition is stored.

        Raises:
            NotFoundError: No plugin for the type
            ConfigValidationError: Parameters or schedule are invalid
            AlreadyExistsError: The requested id is taken
        """
        plugin = self.registry.require(data.get("type", ""))
        automation_id = data.get("id") or generate_id("auto")
        if await self.repository.get_automation(automation_id) is not None:
            raise AlreadyExistsError(f"Automation {automation_id} already exists")

        now = utc_now()
        definition = AutomationDefinition(
            id=automation_id,
            name=data.get("name", ""),
            type=plugin.type,
            description=data.get("description") or "",
            version=data.get("version") or "1.0.0",
            enabled=data.get("enabled", True),
            schedule=_coerce_schedule(data.get("schedule")),
            parameters={**plugin.get_default_config(), **copy.deepcopy(data.get("parameters") or {})},
            metadata=AutomationMetadata(
                author=data.get("author") or user_id or "",
                created_at=now,
                updated_at=now,
                tags=set(data.get("tags") or ()),
                category=data.get("category") or plugin.category,
            ),
            priority=ExecutionPriority(data.get("priority") or ExecutionPriority.MEDIUM),
        )
        self._validate(definition)

        await self.repository.save_automation(definition)
        self.scheduler.schedule(definition)
        await self._publish(
            EventType.AUTOMATION_CREATED, definition.id, type=definition.type, name=definition.name
        )
        logger.info("Automation created", automation_id=definition.id, automation_type=definition.type)
        return definition

    async def get_automation_by_id(self, automation_id: str) -> AutomationDefinition:
        definition = await self.repository.get_automation(automation_id)
        if definition is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        return definition

    async def update_automation(
        self, automation_id: str, changes: Dict[str, Any]
    ) -> AutomationDefinition:
        """
        Apply changes and re-validate. The id and type are immutable.

        Parameters are replaced as a whole when given. The schedule is
        recomputed from now.
        """
        current = await self.get_automation_by_id(automation_id)
        if "id" in changes and changes["id"] != automation_id:
            raise UnsupportedOperationError("Automation id cannot be changed")
        if "type" in changes and changes["type"] != current.type:
            raise UnsupportedOperationError("Automation type cannot be changed")

        updated = current.clone()
        changed = []
        for key in _EDITABLE_FIELDS:
            if key not in changes or changes[key] is None:
                continue
            value = changes[key]
            if key == "schedule":
                updated.schedule = _coerce_schedule(value)
            elif key == "priority":
                updated.priority = ExecutionPriority(value)
            elif key == "tags":
                updated.metadata.tags = set(value)
            elif key == "category":
                updated.metadata.category = value
            elif key == "parameters":
                updated.parameters = copy.deepcopy(value)
            else:
                setattr(updated, key, value)
            changed.append(key)

        self._validate(updated)
        updated.metadata.updated_at = utc_now()

        await self.repository.save_automation(updated)
        self.scheduler.schedule(updated)
        await self._publish(EventType.CONFIG_UPDATED, automation_id, changed=changed)
        logger.info("Automation updated", automation_id=automation_id, changed=changed)
        return updated

    async def delete_automation(self, automation_id: str) -> None:
        """Delete an automation. Fails with InUseError while it has a run in flight."""
        await self.get_automation_by_id(automation_id)
        current = self.engine.current_execution(automation_id)
        if current is not None:
            raise InUseError(
                f"Automation {automation_id} has execution {current.id} in flight"
            )
        self.scheduler.unschedule(automation_id)
        await self.repository.delete_automation(automation_id)
        self.engine.forget(automation_id)
        await self._publish(EventType.AUTOMATION_DELETED, automation_id)
        logger.info("Automation deleted", automation_id=automation_id)

    async def toggle_automation(
        self, automation_id: str, enabled: Optional[bool] = None
    ) -> AutomationDefinition:
        """Enable or disable scheduling. Flips the flag when `enabled` is None."""
        current = await self.get_automation_by_id(automation_id)
        target = (not current.enabled) if enabled is None else enabled
        return await self.update_automation(automation_id, {"enabled": target})

    # ─── Queries ───────────────────────────────────────────

    async def get_automation_status(self, automation_id: str) -> AutomationStatus:
        """
        Current status of an automation.

        In-flight execution status first, then `scheduled` when a future
        fire exists, then the last execution's status, else `idle`.
        """
        await self.get_automation_by_id(automation_id)
        current = self.engine.current_execution(automation_id)
        if current is not None:
            return current.status
        if self.scheduler.next_fire(automation_id) is not None:
            return AutomationStatus.SCHEDULED
        last = self.engine.last_execution(automation_id)
        if last is not None:
            return last.status
        return AutomationStatus.IDLE

    async def list_automations(
        self,
        status: Optional[AutomationStatus] = None,
        automation_type: Optional[str] = None,
        search: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[AutomationDefinition]:
        items = await self.repository.list_automations()
        if automation_type:
            items = [d for d in items if d.type == automation_type]
        if tag:
            items = [d for d in items if tag in d.metadata.tags]
        if search:
            needle = search.lower()
            items = [
                d for d in items
                if needle in d.name.lower() or needle in d.description.lower()
            ]
        if status is not None:
            wanted = AutomationStatus(status)
            items = [d for d in items if await self.get_automation_status(d.id) == wanted]
        return items

    async def get_automations_by_status(self, status: AutomationStatus) -> List[AutomationDefinition]:
        return await self.list_automations(status=status)

    async def get_automations_by_type(self, automation_type: str) -> List[AutomationDefinition]:
        return await self.list_automations(automation_type=automation_type)

    async def get_metrics(self, automation_id: str) -> MetricsSnapshot:
        await self.get_automation_by_id(automation_id)
        return self.engine.metrics.snapshot(automation_id, self.scheduler.next_fire(automation_id))

    async def list_executions(
        self,
        automation_id: Optional[str] = None,
        status: Optional[AutomationStatus] = None,
        limit: Optional[int] = 50,
    ) -> List[Execution]:
        if automation_id is not None:
            await self.get_automation_by_id(automation_id)
        return await self.engine.list_executions(
            status=status, automation_id=automation_id, limit=limit
        )

    async def describe(self, definition: AutomationDefinition) -> Dict[str, Any]:
        """Definition plus live status, metrics and next fire, for display."""
        current = self.engine.current_execution(definition.id)
        status = await self.get_automation_status(definition.id)
        metrics = self.engine.metrics.snapshot(definition.id, self.scheduler.next_fire(definition.id))
        return {
            **definition.to_dict(),
            "status": status.value,
            "current_execution_id": current.id if current else None,
            "metrics": metrics.to_dict(),
        }

    async def get_overview(self) -> Dict[str, Any]:
        definitions = await self.repository.list_automations()
        running = self.engine.running_executions()
        return {
            "total_automations": len(definitions),
            "enabled_automations": sum(1 for d in definitions if d.enabled),
            "scheduled_automations": len(self.scheduler.scheduled_ids),
            "running_executions": len(running),
            "metrics": self.engine.metrics.overall().to_dict(),
        }

    # ─── Run control ───────────────────────────────────────

    async def start_automation(
        self,
        automation_id: str,
        user_id: Optional[str] = None,
        triggered_by: TriggerType = TriggerType.MANUAL,
        priority: Optional[ExecutionPriority] = None,
    ) -> Execution:
        """Run an automation now. Disabled automations can still be run by hand."""
        return await self.engine.invoke(
            automation_id, triggered_by=triggered_by, user_id=user_id, priority=priority
        )

    def _require_current(self, automation_id: str) -> Execution:
        current = self.engine.current_execution(automation_id)
        if current is None:
            raise UnsupportedOperationError(f"Automation {automation_id} is not running")
        return current

    async def stop_automation(self, automation_id: str, wait: bool = True) -> Execution:
        """Stop the in-flight execution; with wait=True return its closed record."""
        await self.get_automation_by_id(automation_id)
        current = self._require_current(automation_id)
        execution = await self.engine.stop(current.id)
        if wait:
            return await self.engine.wait_for(
                current.id, timeout=self.engine.stop_grace_period + 1
            )
        return execution

    async def pause_automation(self, automation_id: str) -> Execution:
        await self.get_automation_by_id(automation_id)
        return await self.engine.pause(self._require_current(automation_id).id)

    async def resume_automation(self, automation_id: str) -> Execution:
        await self.get_automation_by_id(automation_id)
        return await self.engine.resume(self._require_current(automation_id).id)

    # ─── Plugins ───────────────────────────────────────────

    async def install_plugin(self, plugin: AutomationPlugin, replace: bool = False) -> None:
        self.registry.register(plugin, replace=replace)
        await self._publish(
            EventType.PLUGIN_INSTALLED, None, type=plugin.type, name=plugin.name, version=plugin.version
        )

    async def uninstall_plugin(self, automation_type: str) -> None:
        plugin = self.registry.unregister(automation_type)
        await self._publish(EventType.PLUGIN_UNINSTALLED, None, type=plugin.type, name=plugin.name)
