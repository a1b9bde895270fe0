"""Base model class for all SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base shared by every table."""

    pass


class TimestampMixin:
    """Adds row-level bookkeeping timestamps.

    These track when the row was written, independent of the domain
    timestamps (created_at/updated_at inside automation metadata).
    """

    row_created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now()
    )
    row_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
