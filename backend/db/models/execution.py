"""Execution history table."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import AutomationStatus, ExecutionPriority, TriggerType
from db.base import Base, TimestampMixin


class ExecutionModel(TimestampMixin, Base):
    """One execution of an automation.

    No foreign key to automations: history outlives deleted automations
    until it is cleaned up.
    """

    __tablename__ = "executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    automation_id: Mapped[str] = mapped_column(String(64), index=True)
    automation_type: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(
        String(16), default=AutomationStatus.RUNNING.value, index=True
    )
    triggered_by: Mapped[str] = mapped_column(String(16), default=TriggerType.MANUAL.value)
    priority: Mapped[str] = mapped_column(String(16), default=ExecutionPriority.MEDIUM.value)
    user_id: Mapped[str] = mapped_column(String(255), default="")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
