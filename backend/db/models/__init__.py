"""Database models.

Importing this package registers every table with the declarative base.
"""

from db.models.automation import AutomationModel
from db.models.execution import ExecutionModel

__all__ = [
    "AutomationModel",
    "ExecutionModel",
]
