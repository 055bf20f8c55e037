"""
Storage package for logtable.

Re-exports the driver interface and the concrete backends, and resolves a
backend name from settings to a driver instance.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

from logtable.config import Settings, get_settings
from logtable.storage import ddl
from logtable.storage.abstract import AbstractStorageDriver, Row, StorageDriver
from logtable.storage.clickhouse import ClickHouseStorage
from logtable.storage.mysql import MySQLStorage
from logtable.storage.postgres import PostgresStorage
from logtable.storage.sqlite import SQLiteStorage


def _driver_factories(settings: Settings) -> Dict[str, Callable[[], AbstractStorageDriver]]:
    """Registry of available backends."""
    return {
        "postgres": lambda: PostgresStorage(settings),
        "mysql": lambda: MySQLStorage(settings),
        "sqlite": lambda: SQLiteStorage(settings),
        "clickhouse": lambda: ClickHouseStorage(settings),
    }


def available_backends() -> List[str]:
    """List available backend names."""
    return sorted(_driver_factories(get_settings()).keys())


def create_driver(
    settings: Optional[Settings] = None, backend: Optional[str] = None
) -> AbstractStorageDriver:
    """
    Build the driver for `backend` (default: `settings.storage_backend`).

    The driver is returned unopened; call `initialize()` (or use it as a
    context manager) before the first operation.

    Raises
    ------
    ValueError
        If the backend name is unknown.
    """
    settings = settings or get_settings()
    name = (backend or settings.storage_backend).lower()
    factories = _driver_factories(settings)
    if name not in factories:
        raise ValueError(f"Unknown storage backend '{name}'. Available: {', '.join(sorted(factories))}")
    return factories[name]()


__all__ = [
    "AbstractStorageDriver",
    "ClickHouseStorage",
    "MySQLStorage",
    "PostgresStorage",
    "Row",
    "SQLiteStorage",
    "StorageDriver",
    "available_backends",
    "create_driver",
    "ddl",
]
