"""
ClickHouse driver (columnar store).

There are no multi-statement transactions in ClickHouse. A batch is still
written all-or-nothing because every record is coerced up front and the rows
go out as a single insert block. Generated ids are UUIDs assigned by the
server and are not reported back.

Indexed fields get a materialized view ordered by that field
(`mv_<project>_<table>_<field>`) instead of a secondary index.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional

from clickhouse_connect.driver.exceptions import ClickHouseError
from pydantic import TypeAdapter

from logtable.config import Settings, get_settings
from logtable.domain.coercion import duration_to_nanoseconds
from logtable.domain.models import Field, FieldType, Schema
from logtable.errors import BackendError, NotFoundError
from logtable.infrastructure.db_factory import create_clickhouse_client
from logtable.storage import ddl
from logtable.storage.abstract import AbstractStorageDriver, Row, decode_rows
from logtable.utils.logging import get_logger

log = get_logger(__name__)

_fields_adapter = TypeAdapter(List[Field])

_METADATA_COLUMNS = [
    "project",
    "table_name",
    "description",
    "version",
    "fields",
    "created_at",
    "updated_at",
]

CLICKHOUSE_DIALECT = ddl.Dialect(
    name="clickhouse",
    quote_char="`",
    placeholder="%s",
    id_column="UUID DEFAULT generateUUIDv4()",
    implicit_types={
        "project": "LowCardinality(String)",
        "table_name": "LowCardinality(String)",
        "timestamp": "DateTime64(6, 'UTC')",
        "level": "LowCardinality(String)",
        "message": "String",
        "ip": "String",
    },
    nullable_template="Nullable({})",
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ClickHouseStorage(AbstractStorageDriver):
    """Schema-driven log storage on ClickHouse over HTTP."""

    name: str = "clickhouse"
    dialect = CLICKHOUSE_DIALECT

    def __init__(self, settings: Optional[Settings] = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = create_clickhouse_client(self.settings)
        return self._client

    @contextmanager
    def _errors(self) -> Generator[Any, None, None]:
        try:
            yield self._get_client()
        except ClickHouseError as exc:
            raise BackendError(f"clickhouse: {exc}") from exc

    def _adapt(self, schema: Schema, column: str, value: Any) -> Any:
        if value is None:
            return None
        schema_field = schema.get_field(column)
        if schema_field is not None and schema_field.field_type in (FieldType.JSON, FieldType.REST):
            return json.dumps(value)
        if isinstance(value, time):
            return value.isoformat()
        if isinstance(value, timedelta):
            return duration_to_nanoseconds(value)
        return value

    @staticmethod
    def _schema_from_row(row: Dict[str, Any]) -> Schema:
        return Schema(
            project=row["project"],
            table=row["table_name"],
            description=row["description"] or "",
            version=row["version"] or "",
            fields=_fields_adapter.validate_json(row["fields"]),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )

    # -- lifecycle -------------------------------------------------------

    def initialize(self) -> None:
        with self._errors() as client:
            client.command(
                """
                CREATE TABLE IF NOT EXISTS `schemas` (
                    project String,
                    table_name String,
                    description String,
                    version String,
                    fields String,
                    created_at DateTime64(6, 'UTC'),
                    updated_at DateTime64(6, 'UTC')
                ) ENGINE = ReplacingMergeTree(updated_at)
                ORDER BY (project, table_name)
                """
            )
        log.info("ClickHouse storage initialized", extra={"database": self.settings.clickhouse_db})

    def ping(self) -> None:
        with self._errors() as client:
            if not client.ping():
                raise BackendError("clickhouse: server did not answer ping")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # -- schema ----------------------------------------------------------

    def materialize(self, schema: Schema) -> None:
        ddl.ensure_materializable(schema)
        table = self.dialect.quote(schema.table_name)
        with self._errors() as client:
            client.command(
                ddl.create_table_sql(
                    table,
                    ddl.table_columns(schema, self.dialect),
                    self.dialect,
                    suffix="\nENGINE = MergeTree()\nPARTITION BY toYYYYMM(timestamp)\n"
                    "ORDER BY (timestamp, id)",
                )
            )
            existing = {
                row[0]: row[1]
                for row in client.query(
                    "SELECT name, type FROM system.columns "
                    "WHERE database = currentDatabase() AND table = %s",
                    parameters=[schema.table_name],
                ).result_rows
            }
            ddl.check_existing_columns(schema, self.dialect, existing)
            for name, sql_type in ddl.missing_columns(schema, self.dialect, existing):
                log.info("Adding column", extra={"table": schema.table_name, "column": name})
                client.command(
                    ddl.add_column_sql(table, name, sql_type, self.dialect, if_not_exists=True)
                )
            for schema_field in schema.fields:
                if not schema_field.indexed:
                    continue
                view = ddl.view_name(schema.project, schema.table, schema_field.name)
                column = self.dialect.quote(schema_field.name)
                client.command(
                    f"CREATE MATERIALIZED VIEW IF NOT EXISTS {self.dialect.quote(view)}\n"
                    "ENGINE = MergeTree()\n"
                    "PARTITION BY toYYYYMM(timestamp)\n"
                    f"ORDER BY ({column}, timestamp)\n"
                    "SETTINGS allow_nullable_key = 1\n"
                    f"AS SELECT * FROM {table}"
                )

    def save_schema(self, schema: Schema) -> None:
        row = [
            schema.project,
            schema.table,
            schema.description,
            schema.version,
            _fields_adapter.dump_json(schema.fields).decode("utf-8"),
            schema.created_at,
            schema.updated_at,
        ]
        with self._errors() as client:
            client.insert("schemas", [row], column_names=_METADATA_COLUMNS)

    def find_schema(self, project: str, table: str) -> Optional[Schema]:
        with self._errors() as client:
            result = client.query(
                f"SELECT {', '.join(_METADATA_COLUMNS)} FROM `schemas` "
                "WHERE project = %s AND table_name = %s "
                "ORDER BY updated_at DESC LIMIT 1",
                parameters=[project, table],
            )
            rows = list(result.named_results())
        return self._schema_from_row(rows[0]) if rows else None

    def list_schemas(self) -> List[Schema]:
        with self._errors() as client:
            result = client.query(
                f"SELECT {', '.join(_METADATA_COLUMNS)} FROM `schemas` "
                "ORDER BY project, table_name, updated_at DESC "
                "LIMIT 1 BY project, table_name"
            )
            rows = list(result.named_results())
        return [self._schema_from_row(row) for row in rows]

    def delete_schema(self, project: str, table: str) -> None:
        schema = self.find_schema(project, table)
        if schema is None:
            raise NotFoundError(f"schema not found: {project}:{table}")
        with self._errors() as client:
            client.command(
                "DELETE FROM `schemas` WHERE project = %s AND table_name = %s",
                parameters=[project, table],
            )
            for schema_field in schema.fields:
                if schema_field.indexed:
                    view = ddl.view_name(project, table, schema_field.name)
                    client.command(f"DROP VIEW IF EXISTS {self.dialect.quote(view)}")
            client.command(f"DROP TABLE IF EXISTS {self.dialect.quote(schema.table_name)}")
        log.info("Schema deleted", extra={"backend": self.name, "schema": schema.key})

    # -- logs ------------------------------------------------------------

    def _insert_rows(self, schema: Schema, rows: List[Row]) -> List[Optional[int]]:
        columns = ddl.insert_columns(schema)
        data = [
            [self._adapt(schema, column, row.get(column)) for column in columns] for row in rows
        ]
        with self._errors() as client:
            client.insert(schema.table_name, data, column_names=columns)
        return [None] * len(rows)

    def query_logs(
        self,
        project: str,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Row]:
        schema = self.get_schema(project, table)
        where, params = ddl.where_clause(schema, filters, self.dialect)
        params = [self._adapt(schema, column, value) for column, value in zip(filters or {}, params)]
        sql = (
            f"SELECT * FROM {self.dialect.quote(schema.table_name)}{where} "
            "ORDER BY timestamp LIMIT %s OFFSET %s"
        )
        with self._errors() as client:
            rows = list(client.query(sql, parameters=[*params, limit, offset]).named_results())
        return decode_rows(schema, rows)

    def count_logs(
        self, project: str, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> int:
        schema = self.get_schema(project, table)
        where, params = ddl.where_clause(schema, filters, self.dialect)
        params = [self._adapt(schema, column, value) for column, value in zip(filters or {}, params)]
        with self._errors() as client:
            result = client.query(
                f"SELECT count() FROM {self.dialect.quote(schema.table_name)}{where}",
                parameters=params or None,
            )
        return int(result.result_rows[0][0])


__all__ = ["CLICKHOUSE_DIALECT", "ClickHouseStorage"]
