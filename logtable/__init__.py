"""
logtable - schema-driven log storage.

Callers describe a logical log table as a declarative schema and ingest loosely
typed records that are validated, coerced and written into one of four
backends:

- PostgreSQL
- MySQL
- SQLite
- ClickHouse

A schema registry watches a directory of YAML schema files and keeps the
active backend's tables in step with them.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from logtable.config import Settings, get_settings
from logtable.domain.models import Field, FieldType, LogRecord, Schema, validate_schema
from logtable.errors import (
    BackendError,
    FieldValidationError,
    LogTableError,
    NotFoundError,
    ParseError,
    SchemaValidationError,
    TypeMismatchError,
    UnsupportedOperationError,
    UnsupportedTypeError,
)
from logtable.registry.manager import ManagerState, SchemaManager
from logtable.storage import (
    AbstractStorageDriver,
    StorageDriver,
    available_backends,
    create_driver,
)
from logtable.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Model
    "Field",
    "FieldType",
    "LogRecord",
    "Schema",
    "validate_schema",
    # Storage
    "AbstractStorageDriver",
    "StorageDriver",
    "available_backends",
    "create_driver",
    # Registry
    "ManagerState",
    "SchemaManager",
    # Errors
    "BackendError",
    "FieldValidationError",
    "LogTableError",
    "NotFoundError",
    "ParseError",
    "SchemaValidationError",
    "TypeMismatchError",
    "UnsupportedOperationError",
    "UnsupportedTypeError",
    # Logging
    "configure_logging",
    "get_logger",
]
