"""
Domain package for logtable.

Exports the schema model, its YAML document format and the record coercion
engine. Keep this package free of database concerns.
"""

from logtable.domain.coercion import (
    Duration,
    coerce,
    coerce_field,
    parse_duration,
    validate_record,
)
from logtable.domain.document import (
    load_schema_file,
    save_schema_file,
    schema_from_document,
    schema_to_document,
)
from logtable.domain.models import Field, FieldType, LogRecord, Schema, validate_schema

__all__ = [
    # Model
    "Field",
    "FieldType",
    "LogRecord",
    "Schema",
    "validate_schema",
    # Documents
    "load_schema_file",
    "save_schema_file",
    "schema_from_document",
    "schema_to_document",
    # Coercion
    "Duration",
    "coerce",
    "coerce_field",
    "parse_duration",
    "validate_record",
]
