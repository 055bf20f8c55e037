"""
Error taxonomy for logtable.

Validation errors (schema or record) are raised before any DDL/DML is issued
and are never retried. Backend errors wrap the underlying driver exception and
are chained with ``raise ... from exc`` so the original cause stays visible.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class LogTableError(Exception):
    """Base class for every error raised by logtable."""


class SchemaErrorCode(str, Enum):
    EMPTY_PROJECT = "empty_project"
    EMPTY_TABLE = "empty_table"
    NO_FIELDS = "no_fields"
    EMPTY_FIELD_NAME = "empty_field_name"
    DUPLICATE_FIELD_NAME = "duplicate_field_name"
    INVALID_FIELD_TYPE = "invalid_field_type"
    MULTIPLE_REST_FIELDS = "multiple_rest_fields"
    MISSING_SUB_FIELDS = "missing_sub_fields"
    MISSING_ITEM_TYPE = "missing_item_type"
    INVALID_ITEM_TYPE = "invalid_item_type"


class SchemaValidationError(LogTableError):
    """Malformed or incomplete schema, rejected before any persistence."""

    def __init__(self, message: str, code: SchemaErrorCode, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.field = field


class UnsupportedOperationError(LogTableError):
    """
    The request is well-formed but the storage layer does not support it.

    Raised when a schema update changes the type of an existing field, when an
    object/array field reaches a backend, or when a field would shadow one of
    the always-present columns.
    """


class FieldValidationError(LogTableError):
    """A record failed the required-field, type or constraint checks."""

    code: str = "invalid_field"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.index: Optional[int] = None

    def at_record(self, index: int) -> "FieldValidationError":
        """Tag the error with the zero-based position of the failing record in a batch."""
        self.index = index
        return self

    def __str__(self) -> str:
        if self.index is None:
            return self.message
        return f"record {self.index}: {self.message}"


class TypeMismatchError(FieldValidationError):
    code = "type_mismatch"


class UnsupportedTypeError(FieldValidationError):
    code = "unsupported_type"


class NotFoundError(LogTableError):
    """Schema (or record) lookup miss."""


class BackendError(LogTableError):
    """Connection, transaction or DDL/DML failure reported by the underlying store."""


class ParseError(LogTableError):
    """Malformed schema-definition document."""

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(f"{source}: {message}" if source else message)
        self.source = source


__all__ = [
    "BackendError",
    "FieldValidationError",
    "LogTableError",
    "NotFoundError",
    "ParseError",
    "SchemaErrorCode",
    "SchemaValidationError",
    "TypeMismatchError",
    "UnsupportedOperationError",
    "UnsupportedTypeError",
]
