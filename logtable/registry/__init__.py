"""
Registry package for logtable.

The schema manager keeps an in-memory schema cache in sync with a watched
directory and pushes every load into the active storage driver.
"""

from logtable.registry.manager import ManagerState, SchemaManager

__all__ = [
    "ManagerState",
    "SchemaManager",
]
