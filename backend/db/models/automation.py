"""Automation definition table."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionPriority, ScheduleType
from db.base import Base, TimestampMixin


class AutomationModel(TimestampMixin, Base):
    """Persisted AutomationDefinition.

    Attributes:
        id: Automation id (immutable)
        type: Automation type selecting the plugin
        enabled: Whether the scheduler may fire it
        schedule_type: manual, interval or cron
        interval_seconds / cron_expression / timezone: schedule details
        parameters: Plugin parameters (JSON)
        tags: Metadata tags (JSON list)
        priority: Default priority of runs it starts
    """

    __tablename__ = "automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(64), index=True)
    version: Mapped[str] = mapped_column(String(32), default="1.0.0")
    enabled: Mapped[bool] = mapped_column(default=True, index=True)

    schedule_type: Mapped[str] = mapped_column(String(16), default=ScheduleType.MANUAL.value)
    interval_seconds: Mapped[Optional[float]] = mapped_column(nullable=True)
    cron_expression: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    parameters: Mapped[dict] = mapped_column(JSON, default=dict)

    author: Mapped[str] = mapped_column(String(255), default="")
    category: Mapped[str] = mapped_column(String(64), default="general")
    tags: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    priority: Mapped[str] = mapped_column(String(16), default=ExecutionPriority.MEDIUM.value)
