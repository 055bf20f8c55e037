"""
Engine-agnostic DDL/DML composition shared by every storage driver.

Each driver describes its SQL flavour with a `Dialect` (identifier quoting,
parameter placeholder, id column, implicit column types) and looks up column
types in the single `COLUMN_TYPES` table keyed by field type. Table layout,
column order and row building live here so the four drivers only differ in
how they execute statements.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from logtable.domain.models import FieldType, LogRecord, Schema
from logtable.errors import FieldValidationError, UnsupportedOperationError

# Columns every physical table has regardless of its schema.
RESERVED_COLUMNS = ("id", "project", "table_name", "timestamp")
# Implicit columns a schema may take over by declaring a field of the same name.
SUPPRESSIBLE_COLUMNS = ("level", "message", "ip")

COLUMN_TYPES: Dict[FieldType, Dict[str, str]] = {
    FieldType.STRING: {
        "postgres": "TEXT",
        "mysql": "TEXT",
        "sqlite": "TEXT",
        "clickhouse": "String",
    },
    FieldType.INT: {
        "postgres": "BIGINT",
        "mysql": "BIGINT",
        "sqlite": "INTEGER",
        "clickhouse": "Int64",
    },
    FieldType.FLOAT: {
        "postgres": "DOUBLE PRECISION",
        "mysql": "DOUBLE",
        "sqlite": "REAL",
        "clickhouse": "Float64",
    },
    FieldType.BOOL: {
        "postgres": "BOOLEAN",
        "mysql": "BOOLEAN",
        "sqlite": "INTEGER",
        "clickhouse": "Bool",
    },
    FieldType.DATETIME: {
        "postgres": "TIMESTAMPTZ",
        "mysql": "DATETIME(6)",
        "sqlite": "TEXT",
        "clickhouse": "DateTime64(6, 'UTC')",
    },
    FieldType.TIME: {
        "postgres": "TIME",
        "mysql": "TIME",
        "sqlite": "TEXT",
        "clickhouse": "String",
    },
    FieldType.DURATION: {
        "postgres": "INTERVAL",
        "mysql": "BIGINT",
        "sqlite": "INTEGER",
        "clickhouse": "Int64",
    },
    FieldType.JSON: {
        "postgres": "JSONB",
        "mysql": "JSON",
        "sqlite": "TEXT",
        "clickhouse": "String",
    },
    FieldType.REST: {
        "postgres": "JSONB",
        "mysql": "JSON",
        "sqlite": "TEXT",
        "clickhouse": "String",
    },
}


@dataclass(frozen=True)
class Dialect:
    """
    SQL flavour of one backend.

    Attributes
    ----------
    name : str
        Key into COLUMN_TYPES.
    quote_char : str
        Identifier quote character; embedded quotes are doubled.
    placeholder : str
        Positional parameter marker.
    id_column : str
        Type and constraints of the generated identifier column.
    implicit_types : dict
        Column types of project, table_name, timestamp, level, message, ip.
    nullable_template : str | None
        Wrapper applied to schema-field column types (ClickHouse `Nullable(...)`).
    type_aliases : dict
        Catalog type names mapped to the base name used in COLUMN_TYPES, for
        engines that report a column type differently from how it was declared.
    """

    name: str
    quote_char: str
    placeholder: str
    id_column: str
    implicit_types: Dict[str, str] = field(default_factory=dict)
    nullable_template: Optional[str] = None
    type_aliases: Dict[str, str] = field(default_factory=dict)

    def quote(self, identifier: str) -> str:
        q = self.quote_char
        return f"{q}{identifier.replace(q, q * 2)}{q}"


def ensure_materializable(schema: Schema) -> None:
    """
    Reject schemas a backend cannot turn into columns.

    Object/array fields pass `validate_schema` but have no column mapping, and
    a field named like an always-present column would collide with it.
    """
    for schema_field in schema.fields:
        if schema_field.name in RESERVED_COLUMNS:
            raise UnsupportedOperationError(
                f"field {schema_field.name} collides with a built-in column of {schema.table_name}"
            )
        if schema_field.field_type not in COLUMN_TYPES:
            raise UnsupportedOperationError(
                f"field {schema_field.name} has type {schema_field.type}, "
                "which has no column mapping in any backend"
            )


def check_compatible(previous: Optional[Schema], schema: Schema) -> None:
    """
    Refuse in-place type changes of existing fields.

    Re-materialization only ever adds columns, so a field whose declared type
    differs from the persisted one cannot be honoured.
    """
    if previous is None:
        return
    for schema_field in schema.fields:
        before = previous.get_field(schema_field.name)
        if before is not None and before.type != schema_field.type:
            raise UnsupportedOperationError(
                f"changing the type of field {schema_field.name} in {schema.key} "
                f"from {before.type} to {schema_field.type} is not supported"
            )


def column_type(field_type: Any, dialect: Dialect) -> str:
    try:
        return COLUMN_TYPES[FieldType(field_type)][dialect.name]
    except (KeyError, ValueError):
        raise UnsupportedOperationError(
            f"field type {field_type} has no {dialect.name} column mapping"
        ) from None


def index_name(project: str, table: str, field_name: str) -> str:
    return f"idx_{project}_{table}_{field_name}"


def view_name(project: str, table: str, field_name: str) -> str:
    return f"mv_{project}_{table}_{field_name}"


def implicit_columns(schema: Schema) -> List[str]:
    """Implicit columns present in the table of `schema`, in column order."""
    declared = set(schema.field_names())
    return ["project", "table_name", "timestamp"] + [
        name for name in SUPPRESSIBLE_COLUMNS if name not in declared
    ]


def field_columns(schema: Schema, dialect: Dialect) -> List[Tuple[str, str]]:
    """(name, type) of every declared field, in declared order."""
    columns = []
    for schema_field in schema.fields:
        sql_type = column_type(schema_field.type, dialect)
        if dialect.nullable_template:
            sql_type = dialect.nullable_template.format(sql_type)
        columns.append((schema_field.name, sql_type))
    return columns


def table_columns(schema: Schema, dialect: Dialect) -> List[Tuple[str, str]]:
    """Full column list: id, implicit columns, then declared fields."""
    columns = [("id", dialect.id_column)]
    columns += [(name, dialect.implicit_types[name]) for name in implicit_columns(schema)]
    columns += field_columns(schema, dialect)
    return columns


def create_table_sql(
    qualified_name: str,
    columns: Sequence[Tuple[str, str]],
    dialect: Dialect,
    suffix: str = "",
) -> str:
    body = ",\n    ".join(f"{dialect.quote(name)} {sql_type}" for name, sql_type in columns)
    return f"CREATE TABLE IF NOT EXISTS {qualified_name} (\n    {body}\n){suffix}"


def add_column_sql(
    qualified_name: str,
    name: str,
    sql_type: str,
    dialect: Dialect,
    if_not_exists: bool = False,
) -> str:
    guard = "IF NOT EXISTS " if if_not_exists else ""
    return f"ALTER TABLE {qualified_name} ADD COLUMN {guard}{dialect.quote(name)} {sql_type}"


def missing_columns(
    schema: Schema, dialect: Dialect, existing: Iterable[str]
) -> List[Tuple[str, str]]:
    """Declared fields whose column is absent from an existing table."""
    present = set(existing)
    return [(name, sql_type) for name, sql_type in field_columns(schema, dialect) if name not in present]


_WRAPPER_RE = re.compile(r"^(?:NULLABLE|LOWCARDINALITY)\((.*)\)$")
_PARAMS_RE = re.compile(r"\(.*\)")


def base_type(sql_type: str, dialect: Dialect) -> str:
    """
    Reduce a column type to its base name.

    Drops ClickHouse Nullable/LowCardinality wrappers, length and precision
    parameters and NOT NULL, then applies the dialect's catalog aliases:
    `Nullable(DateTime64(6, 'UTC'))` becomes DATETIME64, `character varying`
    becomes TEXT on PostgreSQL.
    """
    text = " ".join(sql_type.upper().split())
    match = _WRAPPER_RE.match(text)
    while match:
        text = match.group(1).strip()
        match = _WRAPPER_RE.match(text)
    text = _PARAMS_RE.sub("", text).replace(" NOT NULL", "").strip()
    return dialect.type_aliases.get(text, text)


def check_existing_columns(
    schema: Schema, dialect: Dialect, existing: Mapping[str, str]
) -> None:
    """
    Refuse declared fields whose column already exists with another type.

    `existing` maps column name to the type the engine's catalog reports.
    Columns are never altered, so a field re-added with a different type, or
    a declared `level`/`message`/`ip` that does not fit the implicit column
    already in the table, cannot be stored. The same holds in reverse for an
    implicit column coming back after a field of that name was dropped.
    """
    expected = field_columns(schema, dialect) + [
        (name, dialect.implicit_types[name])
        for name in implicit_columns(schema)
        if name in SUPPRESSIBLE_COLUMNS
    ]
    for name, sql_type in expected:
        current = existing.get(name)
        if current is None:
            continue
        if base_type(current, dialect) != base_type(sql_type, dialect):
            raise UnsupportedOperationError(
                f"column {name} of {schema.table_name} already exists as {current}; "
                f"{sql_type} is needed and column types are never changed"
            )


def insert_columns(schema: Schema) -> List[str]:
    """
    The fixed column union used for inserts: implicit columns, declared non-rest
    fields, then the rest field.
    """
    columns = implicit_columns(schema)
    columns += [f.name for f in schema.fields if not f.is_rest]
    rest = schema.rest_field()
    if rest is not None:
        columns.append(rest.name)
    return columns


def build_row(
    schema: Schema, record: LogRecord, values: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Map one validated record onto insert columns.

    Implicit columns are always present; declared fields appear only when
    `values` (the output of `validate_record`) holds a value for them.
    """
    implicit = {
        "project": schema.project,
        "table_name": schema.table,
        "timestamp": record.timestamp,
        "level": record.level,
        "message": record.message,
        "ip": record.ip,
    }
    row: Dict[str, Any] = {}
    for column in insert_columns(schema):
        if column in values:
            row[column] = values[column]
        elif column in implicit and schema.get_field(column) is None:
            row[column] = implicit[column]
    return row


def insert_sql(
    qualified_name: str,
    columns: Sequence[str],
    dialect: Dialect,
    returning: Optional[str] = None,
) -> str:
    column_list = ", ".join(dialect.quote(column) for column in columns)
    placeholders = ", ".join(dialect.placeholder for _ in columns)
    sql = f"INSERT INTO {qualified_name} ({column_list}) VALUES ({placeholders})"
    if returning:
        sql += f" RETURNING {dialect.quote(returning)}"
    return sql


def known_columns(schema: Schema) -> List[str]:
    return ["id"] + implicit_columns(schema) + schema.field_names()


def where_clause(
    schema: Schema, filters: Optional[Dict[str, Any]], dialect: Dialect
) -> Tuple[str, List[Any]]:
    """
    Equality filter on known columns.

    Unknown column names are rejected rather than interpolated.
    """
    if not filters:
        return "", []
    allowed = set(known_columns(schema))
    conditions = []
    params: List[Any] = []
    for column, value in filters.items():
        if column not in allowed:
            raise FieldValidationError(
                f"unknown column {column} for {schema.table_name}", field=column
            )
        conditions.append(f"{dialect.quote(column)} = {dialect.placeholder}")
        params.append(value)
    return " WHERE " + " AND ".join(conditions), params


__all__ = [
    "COLUMN_TYPES",
    "Dialect",
    "RESERVED_COLUMNS",
    "SUPPRESSIBLE_COLUMNS",
    "add_column_sql",
    "base_type",
    "build_row",
    "check_compatible",
    "check_existing_columns",
    "column_type",
    "create_table_sql",
    "ensure_materializable",
    "field_columns",
    "implicit_columns",
    "index_name",
    "insert_columns",
    "insert_sql",
    "known_columns",
    "missing_columns",
    "table_columns",
    "view_name",
    "where_clause",
]
