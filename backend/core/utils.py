"""
Utility functions for the automation hub.

Includes:
- ID generation
- UTC datetime helpers
- Pagination helpers
"""

from datetime import datetime, timezone
from typing import Optional, TypeVar
from uuid import uuid4

T = TypeVar("T")


def generate_id(prefix: str) -> str:
    """
    Generate a unique, prefixed identifier.

    Args:
        prefix: Short label such as "exec" or "evt"

    Returns:
        Identifier like "exec_3f2a..."
    """
    return f"{prefix}_{uuid4().hex}"


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on round trips)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def paginate(items: list[T], page: int = 1, per_page: int = 20) -> dict:
    """
    Slice an in-memory list into a page.

    Args:
        items: Full list of items
        page: Current page number (1-indexed)
        per_page: Number of items per page

    Returns:
        Dictionary with pagination metadata
    """
    total = len(items)
    start = (page - 1) * per_page
    total_pages = (total + per_page - 1) // per_page
    return {
        "items": items[start:start + per_page],
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
