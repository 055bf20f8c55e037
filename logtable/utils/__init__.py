"""
Utilities package for logtable.

Exports shared helpers for logging and locking.
Keep this package lightweight and free of domain-specific logic.
"""

from logtable.utils.logging import configure_logging, get_logger
from logtable.utils.rwlock import ReadWriteLock

__all__ = [
    "configure_logging",
    "get_logger",
    "ReadWriteLock",
]
