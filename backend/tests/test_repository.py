"""Tests for the in-memory and SQLAlchemy repositories.

Every test runs against both implementations; the SQLAlchemy one uses
a throwaway SQLite file through aiosqlite.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from core.constants import AutomationStatus, ExecutionPriority, TriggerType
from db.database import create_db_engine
from execution.models import (
    AutomationDefinition,
    AutomationMetadata,
    Execution,
    ExecutionResult,
    ResourceUsage,
    Schedule,
)
from services.repository import InMemoryRepository, SqlAlchemyRepository

T0 = datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def repo(request, tmp_path):
    if request.param == "memory":
        repository = InMemoryRepository()
    else:
        repository = SqlAlchemyRepository(create_db_engine(f"sqlite+aiosqlite:///{tmp_path}/hub.db"))
    await repository.initialize()
    yield repository
    await repository.close()


def _definition(automation_id="a1", minutes=0, **kwargs):
    return AutomationDefinition(
        id=automation_id,
        name=kwargs.pop("name", f"Automation {automation_id}"),
        type=kwargs.pop("type", "backup"),
        metadata=AutomationMetadata(
            author="ops", created_at=T0 + timedelta(minutes=minutes),
            updated_at=T0 + timedelta(minutes=minutes), tags={"nightly"}, category="maintenance",
        ),
        **kwargs,
    )


def _execution(execution_id, automation_id="a1", minutes=0, status=AutomationStatus.COMPLETED):
    started = T0 + timedelta(minutes=minutes)
    terminal = status.is_terminal
    return Execution(
        id=execution_id,
        automation_id=automation_id,
        automation_type="backup",
        status=status,
        triggered_by=TriggerType.SCHEDULE,
        priority=ExecutionPriority.HIGH,
        user_id="system",
        started_at=started,
        completed_at=started + timedelta(seconds=30) if terminal else None,
        result=ExecutionResult(
            success=status == AutomationStatus.COMPLETED,
            data={"files": 3},
            error=None if status == AutomationStatus.COMPLETED else "failed",
            logs=["[INFO] copied"],
            duration=30.0,
            resource_usage=ResourceUsage(cpu=1.5, memory=64.0),
        ) if terminal else None,
    )


@pytest.mark.unit
class TestAutomations:
    async def test_round_trip(self, repo):
        definition = _definition(
            schedule=Schedule.cron("0 2 * * *", "Europe/Berlin"),
            parameters={"targetPath": "/data", "exclude": ["*.tmp"]},
            priority=ExecutionPriority.CRITICAL,
            description="Nightly copy",
        )
        await repo.save_automation(definition)

        loaded = await repo.get_automation("a1")
        assert loaded == definition
        assert loaded is not definition

    async def test_interval_schedule_round_trip(self, repo):
        await repo.save_automation(_definition(schedule=Schedule.interval(90)))
        loaded = await repo.get_automation("a1")
        assert loaded.schedule == Schedule.interval(90)

    async def test_returns_copies(self, repo):
        definition = _definition(parameters={"targetPath": "/data"})
        await repo.save_automation(definition)

        definition.parameters["targetPath"] = "/elsewhere"
        loaded = await repo.get_automation("a1")
        loaded.parameters["targetPath"] = "/mutated"

        assert (await repo.get_automation("a1")).parameters == {"targetPath": "/data"}

    async def test_save_replaces(self, repo):
        await repo.save_automation(_definition())
        updated = _definition(name="Renamed", enabled=False)
        await repo.save_automation(updated)

        automations = await repo.list_automations()
        assert len(automations) == 1
        assert automations[0].name == "Renamed"
        assert automations[0].enabled is False

    async def test_list_oldest_first(self, repo):
        await repo.save_automation(_definition("b", minutes=5))
        await repo.save_automation(_definition("a", minutes=1))
        assert [d.id for d in await repo.list_automations()] == ["a", "b"]

    async def test_delete(self, repo):
        await repo.save_automation(_definition())
        assert await repo.delete_automation("a1") is True
        assert await repo.delete_automation("a1") is False
        assert await repo.get_automation("a1") is None

    async def test_ping(self, repo):
        assert await repo.ping() is True


@pytest.mark.unit
class TestExecutions:
    async def test_round_trip(self, repo):
        execution = _execution("e1")
        await repo.save_execution(execution)
        assert await repo.get_execution("e1") == execution
        assert await repo.get_execution("missing") is None

    async def test_update_in_place(self, repo):
        running = _execution("e1", status=AutomationStatus.RUNNING)
        await repo.save_execution(running)
        assert (await repo.get_execution("e1")).result is None

        closed = _execution("e1", status=AutomationStatus.ERROR)
        await repo.save_execution(closed)
        loaded = await repo.get_execution("e1")
        assert loaded.status == AutomationStatus.ERROR
        assert loaded.result.error == "failed"
        assert len(await repo.list_executions()) == 1

    async def test_list_filters_newest_first(self, repo):
        await repo.save_execution(_execution("e1", minutes=1))
        await repo.save_execution(_execution("e2", minutes=2, status=AutomationStatus.ERROR))
        await repo.save_execution(_execution("e3", minutes=3))
        await repo.save_execution(_execution("x1", automation_id="other", minutes=4))

        assert [e.id for e in await repo.list_executions()] == ["x1", "e3", "e2", "e1"]
        assert [e.id for e in await repo.list_executions(automation_id="a1")] == ["e3", "e2", "e1"]
        assert [e.id for e in await repo.list_executions(status=AutomationStatus.ERROR)] == ["e2"]
        assert [e.id for e in await repo.list_executions(automation_id="a1", limit=2)] == ["e3", "e2"]

    async def test_delete_before_keeps_in_flight(self, repo):
        await repo.save_execution(_execution("old", minutes=0))
        await repo.save_execution(_execution("new", minutes=120))
        await repo.save_execution(_execution("live", minutes=-60, status=AutomationStatus.RUNNING))

        removed = await repo.delete_executions_before(T0 + timedelta(minutes=60))

        assert removed == 1
        assert sorted(e.id for e in await repo.list_executions()) == ["live", "new"]

    async def test_prune_keeps_newest_terminal(self, repo):
        for i in range(5):
            await repo.save_execution(_execution(f"e{i}", minutes=i))
        await repo.save_execution(_execution("running", minutes=10, status=AutomationStatus.RUNNING))
        await repo.save_execution(_execution("other", automation_id="a2", minutes=0))

        assert await repo.prune_executions("a1", keep=2) == 3

        assert [e.id for e in await repo.list_executions(automation_id="a1")] == ["running", "e4", "e3"]
        assert await repo.get_execution("other") is not None
