"""
Domain models for logtable.

A Schema describes one logical log table as an ordered list of typed fields.
A LogRecord is a single ingested entry: the implicit columns every table has
(level, message, timestamp, ip) plus a loosely-typed map of schema fields.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import pydantic
from pydantic import BaseModel, ConfigDict, field_validator

from logtable.errors import SchemaErrorCode, SchemaValidationError


class FieldType(str, Enum):
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    DATETIME = "datetime"
    TIME = "time"
    DURATION = "duration"
    JSON = "json"
    REST = "rest"
    OBJECT = "object"
    ARRAY = "array"


ITEM_TYPES = frozenset(
    {
        FieldType.STRING,
        FieldType.INT,
        FieldType.FLOAT,
        FieldType.BOOL,
        FieldType.DATETIME,
        FieldType.OBJECT,
        FieldType.JSON,
        FieldType.REST,
    }
)

# Record attributes that exist independently of any schema.
IMPLICIT_FIELDS = ("level", "message", "timestamp", "ip")


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class Field(BaseModel):
    """
    One column of a log table.

    `type` keeps the raw declared string so an unknown type name survives
    parsing and is reported by `validate_schema` instead of the parser.
    """

    name: str
    type: str
    required: bool = False
    indexed: bool = False
    description: Optional[str] = None
    default: Any = None

    # Composite types
    fields: Optional[List["Field"]] = None
    item_type: Optional[str] = None

    # Value constraints
    max_length: Optional[int] = None
    min_length: Optional[int] = None
    max_value: Optional[float] = None
    min_value: Optional[float] = None
    pattern: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("type", "item_type", mode="before")
    @classmethod
    def _plain_type_name(cls, value: Any) -> Any:
        return _enum_value(value)

    @property
    def field_type(self) -> Optional[FieldType]:
        try:
            return FieldType(self.type)
        except ValueError:
            return None

    @property
    def is_rest(self) -> bool:
        return self.type == FieldType.REST.value


class Schema(BaseModel):
    """
    Declarative definition of one logical log table.

    Identified by (project, table); the physical table is `<project>_<table>`.
    """

    project: str = ""
    table: str = ""
    description: str = ""
    version: str = ""
    fields: List[Field] = pydantic.Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("description", "version", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, value: Any) -> Any:
        # YAML turns `version: 1.0` into a float
        return str(value) if isinstance(value, (int, float)) else value

    @property
    def key(self) -> str:
        return schema_key(self.project, self.table)

    @property
    def table_name(self) -> str:
        return f"{self.project}_{self.table}"

    def get_field(self, name: str) -> Optional[Field]:
        for field in self.fields:
            if field.name == name:
                return field
        return None

    def rest_field(self) -> Optional[Field]:
        for field in self.fields:
            if field.is_rest:
                return field
        return None

    def field_names(self) -> List[str]:
        return [field.name for field in self.fields]


class LogRecord(BaseModel):
    """
    A single log entry as handed over by the API layer or a logging hook.

    `id` is filled in after a successful insert by drivers that can return
    generated keys.
    """

    project: str = ""
    table: str = ""
    level: str = "info"
    message: str = ""
    timestamp: datetime = pydantic.Field(default_factory=lambda: datetime.now(timezone.utc))
    ip: str = ""
    fields: Dict[str, Any] = pydantic.Field(default_factory=dict)
    tags: Dict[str, str] = pydantic.Field(default_factory=dict)
    id: Optional[int] = None

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def schema_key(project: str, table: str) -> str:
    """Registry key for a (project, table) pair."""
    return f"{project}:{table}"


def validate_schema(schema: Schema) -> None:
    """
    Check the structural rules of a schema.

    Pure: never touches storage. Raises SchemaValidationError with the code of
    the first rule that fails.
    """
    if not schema.project or not schema.project.strip():
        raise SchemaValidationError("project name is required", SchemaErrorCode.EMPTY_PROJECT)
    if not schema.table or not schema.table.strip():
        raise SchemaValidationError("table name is required", SchemaErrorCode.EMPTY_TABLE)
    if not schema.fields:
        raise SchemaValidationError(
            "at least one field is required", SchemaErrorCode.NO_FIELDS
        )

    _validate_fields(schema.fields, parent=None)

    rest_fields = [field.name for field in schema.fields if field.is_rest]
    if len(rest_fields) > 1:
        raise SchemaValidationError(
            f"only one rest field is allowed, got: {', '.join(rest_fields)}",
            SchemaErrorCode.MULTIPLE_REST_FIELDS,
            field=rest_fields[1],
        )


def _validate_fields(fields: List[Field], parent: Optional[str]) -> None:
    seen: Set[str] = set()
    for field in fields:
        try:
            _validate_field(field, seen)
        except SchemaValidationError as exc:
            if parent is None:
                raise
            raise SchemaValidationError(
                f"in field {parent}: {exc}", exc.code, field=exc.field
            ) from exc


def _validate_field(field: Field, seen: Set[str]) -> None:
    if not field.name:
        raise SchemaValidationError("field name is required", SchemaErrorCode.EMPTY_FIELD_NAME)
    if field.name in seen:
        raise SchemaValidationError(
            f"duplicate field name: {field.name}",
            SchemaErrorCode.DUPLICATE_FIELD_NAME,
            field=field.name,
        )
    seen.add(field.name)

    field_type = field.field_type
    if field_type is None:
        raise SchemaValidationError(
            f"invalid field type for field {field.name}: {field.type}",
            SchemaErrorCode.INVALID_FIELD_TYPE,
            field=field.name,
        )

    if field_type is FieldType.OBJECT:
        if not field.fields:
            raise SchemaValidationError(
                f"object field {field.name} must have sub-fields",
                SchemaErrorCode.MISSING_SUB_FIELDS,
                field=field.name,
            )
        _validate_fields(field.fields, parent=field.name)
    elif field_type is FieldType.ARRAY:
        if not field.item_type:
            raise SchemaValidationError(
                f"array field {field.name} must specify item_type",
                SchemaErrorCode.MISSING_ITEM_TYPE,
                field=field.name,
            )
        if field.item_type not in {item.value for item in ITEM_TYPES}:
            raise SchemaValidationError(
                f"invalid array item type for field {field.name}: {field.item_type}",
                SchemaErrorCode.INVALID_ITEM_TYPE,
                field=field.name,
            )


__all__ = [
    "Field",
    "FieldType",
    "IMPLICIT_FIELDS",
    "ITEM_TYPES",
    "LogRecord",
    "Schema",
    "schema_key",
    "validate_schema",
]
