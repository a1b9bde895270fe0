"""Tests for the automation service facade."""

import pytest

from core.constants import AutomationStatus, EventType, ExecutionPriority, TriggerType
from core.exceptions import (
    AlreadyExistsError,
    ConfigValidationError,
    InUseError,
    NotFoundError,
    UnsupportedOperationError,
)
from core.utils import utc_now
from execution.models import Execution


def _count(events, event_type, automation_id=None):
    return sum(
        1 for e in events
        if e.type == event_type and (automation_id is None or e.automation_id == automation_id)
    )


@pytest.mark.unit
class TestBackupScenario:
    """Create, validate, run and measure a backup automation end to end."""

    async def test_end_to_end(self, service, backup_plugin, engine, repository, events):
        with pytest.raises(ConfigValidationError) as exc_info:
            await service.create_automation({"name": "Nightly backup", "type": "backup", "parameters": {}})
        assert "targetPath" in exc_info.value.field_errors
        assert exc_info.value.invalid_fields == ["targetPath"]
        assert await repository.list_automations() == []

        definition = await service.create_automation({
            "name": "Nightly backup",
            "type": "backup",
            "parameters": {"targetPath": "/data"},
        })
        assert await service.get_automation_status(definition.id) == AutomationStatus.IDLE

        execution = await service.start_automation(definition.id)
        assert execution.status == AutomationStatus.RUNNING
        assert execution.triggered_by == TriggerType.MANUAL
        assert await service.get_automation_status(definition.id) == AutomationStatus.RUNNING
        assert len(await repository.list_executions(automation_id=definition.id)) == 1

        backup_plugin.gate.set()
        closed = await engine.wait_for(execution.id, timeout=2)

        assert closed.status == AutomationStatus.COMPLETED
        assert await service.get_automation_status(definition.id) == AutomationStatus.COMPLETED
        metrics = await service.get_metrics(definition.id)
        assert metrics.success_rate == 100.0
        assert metrics.total_executions == 1
        assert _count(events, EventType.EXECUTION_COMPLETED, definition.id) == 1
        assert len(await repository.list_executions(automation_id=definition.id)) == 1


@pytest.mark.unit
class TestCreateAndUpdate:
    async def test_create_seeds_plugin_defaults(self, service, events):
        definition = await service.create_automation(
            {"name": "Echo", "type": "quick", "tags": ["demo"]}, user_id="alice"
        )

        assert definition.id.startswith("auto_")
        assert definition.parameters == {"message": "hello"}
        assert definition.metadata.author == "alice"
        assert definition.metadata.tags == {"demo"}
        assert definition.priority == ExecutionPriority.MEDIUM
        assert _count(events, EventType.AUTOMATION_CREATED) == 1

    async def test_create_rejects_unknown_type_and_duplicates(self, service):
        with pytest.raises(NotFoundError):
            await service.create_automation({"name": "X", "type": "nope"})

        await service.create_automation({"id": "fixed", "name": "A", "type": "quick"})
        with pytest.raises(AlreadyExistsError):
            await service.create_automation({"id": "fixed", "name": "B", "type": "quick"})

    async def test_create_validates_schedule_and_name(self, service):
        with pytest.raises(ConfigValidationError) as exc_info:
            await service.create_automation({
                "name": "",
                "type": "quick",
                "schedule": {"type": "cron", "expression": "not cron"},
            })
        assert set(exc_info.value.field_errors) == {"name", "schedule"}

    async def test_create_schedules_interval(self, service, scheduler, clock):
        definition = await service.create_automation({
            "name": "Every minute",
            "type": "quick",
            "schedule": {"type": "interval", "interval_seconds": 60},
        })
        assert scheduler.next_fire(definition.id) == clock.advance(60)
        assert await service.get_automation_status(definition.id) == AutomationStatus.SCHEDULED

    async def test_update_revalidates(self, service, events):
        definition = await service.create_automation({"name": "Steps", "type": "cooperative"})

        with pytest.raises(ConfigValidationError):
            await service.update_automation(definition.id, {"parameters": {"steps": -1}})
        unchanged = await service.get_automation_by_id(definition.id)
        assert unchanged.parameters == {"steps": 1000}

        updated = await service.update_automation(
            definition.id, {"parameters": {"steps": 5}, "name": "Five steps"}
        )
        assert updated.parameters == {"steps": 5}
        assert updated.name == "Five steps"
        config_events = [e for e in events if e.type == EventType.CONFIG_UPDATED]
        assert len(config_events) == 1
        assert sorted(config_events[0].payload["changed"]) == ["name", "parameters"]

    async def test_id_and_type_are_immutable(self, service):
        definition = await service.create_automation({"name": "Echo", "type": "quick"})
        with pytest.raises(UnsupportedOperationError):
            await service.update_automation(definition.id, {"type": "failing"})
        with pytest.raises(UnsupportedOperationError):
            await service.update_automation(definition.id, {"id": "other"})

    async def test_toggle_unschedules_and_reschedules(self, service, scheduler):
        definition = await service.create_automation({
            "name": "Tick",
            "type": "quick",
            "schedule": {"type": "interval", "interval_seconds": 30},
        })
        disabled = await service.toggle_automation(definition.id)
        assert disabled.enabled is False
        assert not scheduler.is_scheduled(definition.id)

        enabled = await service.toggle_automation(definition.id, enabled=True)
        assert enabled.enabled is True
        assert scheduler.is_scheduled(definition.id)

    async def test_disabled_automation_can_run_manually(self, service, engine):
        definition = await service.create_automation({"name": "Off", "type": "quick", "enabled": False})
        execution = await service.start_automation(definition.id)
        closed = await engine.wait_for(execution.id, timeout=2)
        assert closed.status == AutomationStatus.COMPLETED


@pytest.mark.unit
class TestDeleteAndRunControl:
    async def test_delete_blocked_while_running(self, service, engine, gated_plugin, events):
        definition = await service.create_automation({"name": "Gate", "type": "gated"})
        execution = await service.start_automation(definition.id)

        with pytest.raises(InUseError):
            await service.delete_automation(definition.id)

        gated_plugin.gate.set()
        await engine.wait_for(execution.id, timeout=2)
        await service.delete_automation(definition.id)

        with pytest.raises(NotFoundError):
            await service.get_automation_by_id(definition.id)
        assert _count(events, EventType.AUTOMATION_DELETED, definition.id) == 1

    async def test_stop_pause_resume(self, service):
        definition = await service.create_automation({"name": "Steps", "type": "cooperative"})
        await service.start_automation(definition.id)

        paused = await service.pause_automation(definition.id)
        assert paused.status == AutomationStatus.PAUSED
        assert await service.get_automation_status(definition.id) == AutomationStatus.PAUSED

        resumed = await service.resume_automation(definition.id)
        assert resumed.status == AutomationStatus.RUNNING

        stopped = await service.stop_automation(definition.id)
        assert stopped.status == AutomationStatus.STOPPED
        assert await service.get_automation_status(definition.id) == AutomationStatus.STOPPED

    async def test_control_requires_running_execution(self, service):
        definition = await service.create_automation({"name": "Echo", "type": "quick"})
        with pytest.raises(UnsupportedOperationError):
            await service.stop_automation(definition.id)
        with pytest.raises(NotFoundError):
            await service.pause_automation("missing")


@pytest.mark.unit
class TestQueries:
    async def test_list_filters(self, service, engine):
        await service.create_automation({"name": "Backup docs", "type": "quick", "tags": ["docs"]})
        await service.create_automation({"name": "Ping API", "type": "failing"})
        failing = (await service.get_automations_by_type("failing"))[0]

        execution = await service.start_automation(failing.id)
        await engine.wait_for(execution.id, timeout=2)

        assert [d.name for d in await service.list_automations(search="backup")] == ["Backup docs"]
        assert [d.name for d in await service.list_automations(tag="docs")] == ["Backup docs"]
        assert [d.name for d in await service.get_automations_by_status(AutomationStatus.ERROR)] == ["Ping API"]
        assert [d.name for d in await service.get_automations_by_status(AutomationStatus.IDLE)] == ["Backup docs"]

    async def test_overview(self, service):
        await service.create_automation({"name": "A", "type": "quick"})
        await service.create_automation({"name": "B", "type": "quick", "enabled": False})

        overview = await service.get_overview()
        assert overview["total_automations"] == 2
        assert overview["enabled_automations"] == 1
        assert overview["running_executions"] == 0
        assert overview["metrics"]["success_rate"] == 0.0


@pytest.mark.unit
class TestStartup:
    async def test_interrupted_runs_are_closed(self, service, repository, engine):
        definition = await service.create_automation({"name": "A", "type": "quick"})
        await repository.save_execution(Execution(
            id="exec_orphan",
            automation_id=definition.id,
            automation_type="quick",
            status=AutomationStatus.RUNNING,
            triggered_by=TriggerType.SCHEDULE,
            priority=ExecutionPriority.MEDIUM,
            user_id="system",
            started_at=utc_now(),
        ))

        await service.startup(start_scheduler=False)

        orphan = await repository.get_execution("exec_orphan")
        assert orphan.status == AutomationStatus.ERROR
        assert "interrupted" in orphan.result.error
        assert engine.metrics.snapshot(definition.id).failed_executions == 1
        assert await service.get_automation_status(definition.id) == AutomationStatus.ERROR

    async def test_plugin_install_events(self, service, registry, events):
        plugin = registry.unregister("quick")
        await service.install_plugin(plugin)
        await service.uninstall_plugin("quick")

        assert _count(events, EventType.PLUGIN_INSTALLED) == 1
        assert _count(events, EventType.PLUGIN_UNINSTALLED) == 1
        assert not registry.is_registered("quick")
