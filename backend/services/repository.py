"""Persistence of automation definitions and executions.

Repository is the storage contract used by the service and the engine.
InMemoryRepository is the default; SqlAlchemyRepository persists to any
database SQLAlchemy's async engine supports (aiosqlite, asyncpg).
Both hand out copies, never live references.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncEngine

from core.constants import TERMINAL_STATUSES, AutomationStatus, ExecutionPriority, ScheduleType
from core.utils import ensure_utc
from db.database import close_db, create_session_factory, init_db
from db.models import AutomationModel, ExecutionModel
from execution.models import (
    AutomationDefinition,
    AutomationMetadata,
    Execution,
    ExecutionResult,
    Schedule,
)


class Repository(ABC):
    """Storage contract for definitions and execution history."""

    async def initialize(self) -> None:
        """Prepare storage (create tables, open connections)."""

    async def close(self) -> None:
        """Release storage resources."""

    async def ping(self) -> bool:
        """Return True when storage is reachable."""
        return True

    # ─── Automations ───────────────────────────────────────

    @abstractmethod
    async def save_automation(self, definition: AutomationDefinition) -> None:
        """Insert or replace a definition."""

    @abstractmethod
    async def get_automation(self, automation_id: str) -> Optional[AutomationDefinition]:
        pass

    @abstractmethod
    async def list_automations(self) -> list[AutomationDefinition]:
        """All definitions, oldest first."""

    @abstractmethod
    async def delete_automation(self, automation_id: str) -> bool:
        pass

    # ─── Executions ────────────────────────────────────────

    @abstractmethod
    async def save_execution(self, execution: Execution) -> None:
        """Insert or replace an execution record."""

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        pass

    @abstractmethod
    async def list_executions(
        self,
        automation_id: Optional[str] = None,
        status: Optional[AutomationStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        """Executions newest first, optionally filtered."""

    @abstractmethod
    async def delete_executions_before(self, cutoff: datetime) -> int:
        """Delete terminal executions completed before cutoff. Returns the count."""

    @abstractmethod
    async def prune_executions(self, automation_id: str, keep: int) -> int:
        """Keep only the newest `keep` terminal executions of an automation."""


class InMemoryRepository(Repository):
    """Dictionary-backed repository for development and tests."""

    def __init__(self):
        self._automations: dict[str, AutomationDefinition] = {}
        self._executions: dict[str, Execution] = {}

    async def save_automation(self, definition):
        self._automations[definition.id] = definition.clone()

    async def get_automation(self, automation_id):
        definition = self._automations.get(automation_id)
        return definition.clone() if definition else None

    async def list_automations(self):
        ordered = sorted(self._automations.values(), key=lambda d: d.metadata.created_at)
        return [d.clone() for d in ordered]

    async def delete_automation(self, automation_id):
        return self._automations.pop(automation_id, None) is not None

    async def save_execution(self, execution):
        self._executions[execution.id] = execution.snapshot()

    async def get_execution(self, execution_id):
        execution = self._executions.get(execution_id)
        return execution.snapshot() if execution else None

    async def list_executions(self, automation_id=None, status=None, limit=None):
        items = [
            e for e in self._executions.values()
            if (automation_id is None or e.automation_id == automation_id)
            and (status is None or e.status == status)
        ]
        items.sort(key=lambda e: e.started_at, reverse=True)
        if limit is not None:
            items = items[:limit]
        return [copy.deepcopy(e) for e in items]

    async def delete_executions_before(self, cutoff):
        stale = [
            e.id for e in self._executions.values()
            if e.is_terminal and e.completed_at is not None and e.completed_at < cutoff
        ]
        for execution_id in stale:
            del self._executions[execution_id]
        return len(stale)

    async def prune_executions(self, automation_id, keep):
        terminal = sorted(
            (e for e in self._executions.values()
             if e.automation_id == automation_id and e.is_terminal),
            key=lambda e: e.started_at,
            reverse=True,
        )
        for execution in terminal[keep:]:
            del self._executions[execution.id]
        return max(len(terminal) - keep, 0)


# ─── SQLAlchemy ────────────────────────────────────────────


def _definition_to_row(definition: AutomationDefinition, row: AutomationModel) -> AutomationModel:
    row.id = definition.id
    row.name = definition.name
    row.description = definition.description
    row.type = definition.type
    row.version = definition.version
    row.enabled = definition.enabled
    row.schedule_type = definition.schedule.type.value
    row.interval_seconds = definition.schedule.interval_seconds
    row.cron_expression = definition.schedule.expression
    row.timezone = definition.schedule.timezone
    row.parameters = copy.deepcopy(definition.parameters)
    row.author = definition.metadata.author
    row.category = definition.metadata.category
    row.tags = sorted(definition.metadata.tags)
    row.created_at = definition.metadata.created_at
    row.updated_at = definition.metadata.updated_at
    row.priority = definition.priority.value
    return row


def _row_to_definition(row: AutomationModel) -> AutomationDefinition:
    schedule_type = ScheduleType(row.schedule_type)
    if schedule_type == ScheduleType.INTERVAL:
        schedule = Schedule.interval(row.interval_seconds)
    elif schedule_type == ScheduleType.CRON:
        schedule = Schedule.cron(row.cron_expression, row.timezone)
    else:
        schedule = Schedule.manual()
    return AutomationDefinition(
        id=row.id,
        name=row.name,
        type=row.type,
        description=row.description or "",
        version=row.version,
        enabled=row.enabled,
        schedule=schedule,
        parameters=copy.deepcopy(row.parameters or {}),
        metadata=AutomationMetadata(
            author=row.author or "",
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            tags=set(row.tags or ()),
            category=row.category or "general",
        ),
        priority=ExecutionPriority(row.priority),
    )


def _execution_to_row(execution: Execution, row: ExecutionModel) -> ExecutionModel:
    row.id = execution.id
    row.automation_id = execution.automation_id
    row.automation_type = execution.automation_type
    row.status = execution.status.value
    row.triggered_by = execution.triggered_by.value
    row.priority = execution.priority.value
    row.user_id = execution.user_id
    row.started_at = execution.started_at
    row.completed_at = execution.completed_at
    row.result = execution.result.to_dict() if execution.result else None
    return row


def _row_to_execution(row: ExecutionModel) -> Execution:
    return Execution.from_dict({
        "id": row.id,
        "automation_id": row.automation_id,
        "automation_type": row.automation_type,
        "status": row.status,
        "triggered_by": row.triggered_by,
        "priority": row.priority,
        "user_id": row.user_id,
        "started_at": ensure_utc(row.started_at),
        "completed_at": ensure_utc(row.completed_at),
        "result": row.result,
    })


class SqlAlchemyRepository(Repository):
    """Repository over an async SQLAlchemy engine.

    Usage:
        engine = create_db_engine("sqlite+aiosqlite:///automations.db")
        repository = SqlAlchemyRepository(engine)
        await repository.initialize()
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = create_session_factory(engine)

    async def initialize(self):
        await init_db(self.engine)

    async def close(self):
        await close_db(self.engine)

    async def ping(self):
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def save_automation(self, definition):
        async with self._sessions() as session:
            row = await session.get(AutomationModel, definition.id) or AutomationModel()
            session.add(_definition_to_row(definition, row))
            await session.commit()

    async def get_automation(self, automation_id):
        async with self._sessions() as session:
            row = await session.get(AutomationModel, automation_id)
            return _row_to_definition(row) if row else None

    async def list_automations(self):
        async with self._sessions() as session:
            result = await session.execute(
                select(AutomationModel).order_by(AutomationModel.created_at.asc())
            )
            return [_row_to_definition(r) for r in result.scalars().all()]

    async def delete_automation(self, automation_id):
        async with self._sessions() as session:
            result = await session.execute(
                delete(AutomationModel).where(AutomationModel.id == automation_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def save_execution(self, execution):
        async with self._sessions() as session:
            row = await session.get(ExecutionModel, execution.id) or ExecutionModel()
            session.add(_execution_to_row(execution, row))
            await session.commit()

    async def get_execution(self, execution_id):
        async with self._sessions() as session:
            row = await session.get(ExecutionModel, execution_id)
            return _row_to_execution(row) if row else None

    async def list_executions(self, automation_id=None, status=None, limit=None):
        query = select(ExecutionModel).order_by(ExecutionModel.started_at.desc())
        if automation_id is not None:
            query = query.where(ExecutionModel.automation_id == automation_id)
        if status is not None:
            query = query.where(ExecutionModel.status == AutomationStatus(status).value)
        if limit is not None:
            query = query.limit(limit)
        async with self._sessions() as session:
            result = await session.execute(query)
            return [_row_to_execution(r) for r in result.scalars().all()]

    async def delete_executions_before(self, cutoff):
        terminal = [s.value for s in TERMINAL_STATUSES]
        async with self._sessions() as session:
            result = await session.execute(
                delete(ExecutionModel).where(
                    ExecutionModel.status.in_(terminal),
                    ExecutionModel.completed_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount

    async def prune_executions(self, automation_id, keep):
        terminal = [s.value for s in TERMINAL_STATUSES]
        async with self._sessions() as session:
            result = await session.execute(
                select(ExecutionModel.id)
                .where(
                    ExecutionModel.automation_id == automation_id,
                    ExecutionModel.status.in_(terminal),
                )
                .order_by(ExecutionModel.started_at.desc())
                .offset(keep)
            )
            stale = list(result.scalars().all())
            if stale:
                await session.execute(delete(ExecutionModel).where(ExecutionModel.id.in_(stale)))
                await session.commit()
            return len(stale)
