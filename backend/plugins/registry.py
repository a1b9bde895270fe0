"""
Plugin Registry: central binding of automation types to plugin instances.

At most one plugin per type. The binding table is the only mutable
state here and is guarded by an RLock; readers get snapshots.

Plugins can also be discovered from installed packages through the
"automation_hub.plugins" entry point group:

    [project.entry-points."automation_hub.plugins"]
    my_sync = "my_package.plugins:MySyncPlugin"
"""

import importlib.metadata
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import DuplicateTypeError, InUseError, NotFoundError
from plugins.base import AutomationPlugin

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "automation_hub.plugins"

InUseCheck = Callable[[str], bool]


class PluginRegistry:
    """Type -> plugin table shared by the engine, the scheduler and the API."""

    def __init__(self, in_use: Optional[InUseCheck] = None):
        self._plugins: Dict[str, AutomationPlugin] = {}
        self._lock = threading.RLock()
        self._in_use = in_use

    def set_in_use_check(self, in_use: Optional[InUseCheck]) -> None:
        """Install the predicate telling whether a type has a non-terminal execution."""
        self._in_use = in_use

    def register(self, plugin: AutomationPlugin, replace: bool = False) -> None:
        """Bind plugin.type to plugin. Replacing is an explicit unregister + register."""
        with self._lock:
            if plugin.type in self._plugins:
                if not replace:
                    raise DuplicateTypeError(plugin.type)
                self.unregister(plugin.type)
            self._plugins[plugin.type] = plugin
        logger.info("Registered plugin %s (%s v%s)", plugin.type, plugin.name, plugin.version)

    def unregister(self, automation_type: str) -> AutomationPlugin:
        with self._lock:
            if automation_type not in self._plugins:
                raise NotFoundError(f"No plugin registered for type '{automation_type}'")
            if self._in_use is not None and self._in_use(automation_type):
                raise InUseError(
                    f"Plugin '{automation_type}' has an execution in flight"
                )
            plugin = self._plugins.pop(automation_type)
        logger.info("Unregistered plugin %s", automation_type)
        return plugin

    def get(self, automation_type: str) -> Optional[AutomationPlugin]:
        with self._lock:
            return self._plugins.get(automation_type)

    def require(self, automation_type: str) -> AutomationPlugin:
        plugin = self.get(automation_type)
        if plugin is None:
            raise NotFoundError(f"No plugin registered for type '{automation_type}'")
        return plugin

    def is_registered(self, automation_type: str) -> bool:
        with self._lock:
            return automation_type in self._plugins

    def list(self) -> List[AutomationPlugin]:
        """All plugins in registration order."""
        with self._lock:
            return list(self._plugins.values())

    def get_by_category(self, category: str) -> List[AutomationPlugin]:
        wanted = category.lower()
        return [p for p in self.list() if p.category.lower() == wanted]

    def search(self, query: str) -> List[AutomationPlugin]:
        """Case-insensitive substring match on name, description, category and type."""
        needle = query.strip().lower()
        if not needle:
            return self.list()
        return [
            p for p in self.list()
            if needle in p.name.lower()
            or needle in p.description.lower()
            or needle in p.category.lower()
            or needle in p.type.lower()
        ]

    @property
    def available_types(self) -> List[str]:
        with self._lock:
            return list(self._plugins.keys())

    def get_stats(self) -> Dict[str, Any]:
        by_category: Dict[str, int] = {}
        plugins = self.list()
        for plugin in plugins:
            by_category[plugin.category] = by_category.get(plugin.category, 0) + 1
        return {
            "total_plugins": len(plugins),
            "categories": by_category,
            "types": [p.type for p in plugins],
        }

    def validate_plugin(self, automation_type: str) -> Dict[str, Any]:
        """
        Sanity-check a registered plugin's metadata, schema and defaults.

        Returns:
            {"valid": bool, "errors": [...], "warnings": [...]}
        """
        plugin = self.require(automation_type)
        errors: List[str] = []
        warnings: List[str] = []

        for attr in ("type", "name", "version"):
            if not getattr(plugin, attr, None):
                errors.append(f"Missing plugin {attr}")
        if not plugin.description:
            warnings.append("Plugin has no description")
        if not plugin.author:
            warnings.append("Plugin has no author")

        try:
            schema = plugin.get_config_schema()
        except Exception as e:
            errors.append(f"get_config_schema() raised: {e}")
            schema = None

        if schema is not None:
            keys = [f.key for f in schema.fields]
            duplicates = sorted({k for k in keys if keys.count(k) > 1})
            if duplicates:
                errors.append(f"Duplicate schema keys: {', '.join(duplicates)}")
            group_ids = {g.id for g in schema.groups}
            for f in schema.fields:
                if f.group and f.group not in group_ids:
                    warnings.append(f"Field '{f.key}' references unknown group '{f.group}'")
                if f.depends_on and f.depends_on.field not in keys:
                    errors.append(
                        f"Field '{f.key}' depends on unknown field '{f.depends_on.field}'"
                    )
            if not schema.fields:
                warnings.append("Plugin declares no configuration fields")

        try:
            defaults = plugin.get_default_config()
            result = plugin.validate_config(defaults)
            if not result.valid:
                warnings.append("Default configuration does not validate on its own")
        except Exception as e:
            errors.append(f"Default configuration could not be checked: {e}")

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def export_plugin_info(self) -> List[Dict[str, Any]]:
        """Metadata and schema of every plugin, for catalogs and the API."""
        return [
            {**p.info(), "config_schema": p.get_config_schema().to_dict()}
            for p in self.list()
        ]

    def get_health_status(self) -> Dict[str, Any]:
        plugins = self.list()
        unhealthy = [
            p.type for p in plugins if not self.validate_plugin(p.type)["valid"]
        ]
        return {
            "healthy": not unhealthy,
            "total_plugins": len(plugins),
            "unhealthy_plugins": unhealthy,
        }

    def discover_entry_points(self) -> List[str]:
        """Instantiate and register plugins advertised by installed packages.

        Failures are logged per entry point and never abort discovery.
        """
        loaded: List[str] = []
        for ep in importlib.metadata.entry_points(group=ENTRY_POINT_GROUP):
            try:
                plugin_class = ep.load()
                plugin = plugin_class()
                self.register(plugin)
                loaded.append(plugin.type)
            except Exception as e:
                logger.warning("Failed to load plugin entry point %s: %s", ep.name, e)
        if loaded:
            logger.info("Loaded %d plugin(s) from entry points", len(loaded))
        return loaded


def register_builtin_plugins(registry: PluginRegistry) -> None:
    """Register the reference plugins shipped with the hub."""
    from plugins.implementations.backup import BackupPlugin
    from plugins.implementations.monitoring import MonitoringPlugin

    for plugin_class in (BackupPlugin, MonitoringPlugin):
        if not registry.is_registered(plugin_class.type):
            registry.register(plugin_class())
