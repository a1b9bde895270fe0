"""
Base plugin interface for all automation implementations.

Every automation type (backup, monitoring, HR sync, etc.) must inherit
from AutomationPlugin and implement the execute() method.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from core.config_schema import ConfigSchema, ValidationResult, validate_parameters
from core.constants import Capability
from core.exceptions import PluginExecutionError, UnsupportedOperationError
from execution.models import ExecutionResult, ResourceUsage

if TYPE_CHECKING:
    from execution.context import ExecutionContext
    from execution.models import AutomationDefinition

logger = structlog.get_logger(__name__)


class PluginResult:
    """Standardized result returned by a plugin's execute()."""

    def __init__(
        self,
        success: bool,
        data: Any = None,
        error: Optional[str] = None,
        logs: Optional[List[str]] = None,
        duration: Optional[float] = None,
        resource_usage: Optional[ResourceUsage] = None,
    ):
        self.success = success
        self.data = data
        self.error = error
        self.logs = logs or []
        self.duration = duration
        self.resource_usage = resource_usage

    @classmethod
    def coerce(cls, raw: Any) -> "PluginResult":
        """
        Turn whatever a plugin returned into a PluginResult.

        Accepts a PluginResult or a dict with a boolean "success" key.
        Anything else raises PluginExecutionError.
        """
        if isinstance(raw, PluginResult):
            result = raw
        elif isinstance(raw, dict) and isinstance(raw.get("success"), bool):
            metrics = raw.get("metrics") or {}
            usage = metrics.get("resource_usage") or metrics.get("resourceUsage")
            try:
                resource_usage = ResourceUsage(**usage) if usage else None
            except TypeError as e:
                raise PluginExecutionError(f"Plugin returned malformed metrics: {e}") from e
            result = cls(
                success=raw["success"],
                data=raw.get("data"),
                error=raw.get("error"),
                logs=list(raw.get("logs") or []),
                duration=metrics.get("duration"),
                resource_usage=resource_usage,
            )
        else:
            raise PluginExecutionError(
                f"Plugin returned a malformed result of type {type(raw).__name__}"
            )

        if not isinstance(result.success, bool):
            raise PluginExecutionError("Plugin result 'success' must be a boolean")
        if not result.success and not result.error:
            result.error = "Plugin reported failure without an error message"
        return result

    def to_execution_result(self, extra_logs: Optional[List[str]] = None) -> ExecutionResult:
        return ExecutionResult(
            success=self.success,
            data=self.data,
            error=self.error,
            error_kind=None if self.success else PluginExecutionError.error_code,
            logs=[*(extra_logs or []), *self.logs],
            duration=self.duration,
            resource_usage=self.resource_usage,
        )


class AutomationPlugin(ABC):
    """
    Abstract base class for all automation plugins.

    Subclasses must implement:
    - execute(definition, context) -> PluginResult
    - get_config_schema() -> ConfigSchema
    - type (class attribute, the automation type string it serves)

    Stop is cooperative: the engine calls stop(), long-running plugins
    poll should_stop(). Plugins listing Capability.PAUSE in
    `capabilities` get pause()/resume() for free and should call
    wait_if_paused() between units of work.
    """

    type: str = "base"
    name: str = "Base Automation"
    version: str = "1.0.0"
    description: str = "Abstract base automation"
    author: str = ""
    icon: str = "⚙️"
    category: str = "general"
    required_secrets: tuple = ()
    capabilities: frozenset = frozenset({Capability.STOP})

    def __init__(self):
        self._stop_requested: set[str] = set()
        self._resume_events: Dict[str, asyncio.Event] = {}

    @abstractmethod
    async def execute(
        self,
        definition: "AutomationDefinition",
        context: "ExecutionContext",
    ) -> PluginResult:
        """
        Run the automation once.

        Args:
            definition: Snapshot of the automation being run
            context: Execution context (ids, secrets, logger, storage)

        Returns:
            PluginResult with data or error
        """
        pass

    @abstractmethod
    def get_config_schema(self) -> ConfigSchema:
        """Describe the parameters this plugin accepts."""
        pass

    def get_default_config(self) -> Dict[str, Any]:
        return self.get_config_schema().defaults()

    def validate_config(self, parameters: Dict[str, Any]) -> ValidationResult:
        """Validate parameters against the plugin schema. Pure."""
        return validate_parameters(self.get_config_schema(), parameters)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    async def stop(self, execution_id: str) -> None:
        """Request a cooperative stop of a running execution."""
        self._stop_requested.add(execution_id)
        event = self._resume_events.get(execution_id)
        if event is not None:
            # A paused run must wake up to notice the stop
            event.set()
        logger.info("Stop requested", plugin_type=self.type, execution_id=execution_id)

    def should_stop(self, execution_id: str) -> bool:
        return execution_id in self._stop_requested

    async def pause(self, execution_id: str) -> None:
        if not self.supports(Capability.PAUSE):
            raise UnsupportedOperationError(f"Plugin '{self.type}' does not support pause")
        self._resume_events.setdefault(execution_id, asyncio.Event()).clear()

    async def resume(self, execution_id: str) -> None:
        if not self.supports(Capability.PAUSE):
            raise UnsupportedOperationError(f"Plugin '{self.type}' does not support resume")
        self._resume_events.setdefault(execution_id, asyncio.Event()).set()

    def is_paused(self, execution_id: str) -> bool:
        event = self._resume_events.get(execution_id)
        return event is not None and not event.is_set()

    async def wait_if_paused(self, execution_id: str) -> None:
        event = self._resume_events.get(execution_id)
        if event is not None:
            await event.wait()

    async def get_status(self, execution_id: str) -> Dict[str, Any]:
        return {
            "execution_id": execution_id,
            "stop_requested": self.should_stop(execution_id),
            "paused": self.is_paused(execution_id),
        }

    def release(self, execution_id: str) -> None:
        """Drop per-execution bookkeeping once the engine closed the run."""
        self._stop_requested.discard(execution_id)
        self._resume_events.pop(execution_id, None)

    def info(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "icon": self.icon,
            "category": self.category,
            "required_secrets": list(self.required_secrets),
            "capabilities": sorted(c.value for c in self.capabilities),
        }
