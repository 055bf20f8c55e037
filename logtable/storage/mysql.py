"""
MySQL driver (relational row store) on a pooled SQLAlchemy engine.

MySQL commits DDL implicitly, so materialization is not rolled back when a
later step fails; metadata and log writes still run in explicit transactions.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional

from pydantic import TypeAdapter
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from logtable.config import Settings, get_settings
from logtable.domain.coercion import duration_to_nanoseconds
from logtable.domain.models import Field, FieldType, Schema
from logtable.errors import BackendError, NotFoundError, UnsupportedOperationError
from logtable.infrastructure.db_factory import create_mysql_engine
from logtable.storage import ddl
from logtable.storage.abstract import AbstractStorageDriver, Row, decode_rows
from logtable.utils.logging import get_logger

log = get_logger(__name__)

_fields_adapter = TypeAdapter(List[Field])

# Longest utf8mb4 prefix InnoDB accepts in an index on a TEXT column.
_TEXT_INDEX_PREFIX = 191

MYSQL_DIALECT = ddl.Dialect(
    name="mysql",
    quote_char="`",
    placeholder="%s",
    id_column="BIGINT AUTO_INCREMENT PRIMARY KEY",
    implicit_types={
        "project": "VARCHAR(255)",
        "table_name": "VARCHAR(255)",
        "timestamp": "DATETIME(6)",
        "level": "VARCHAR(50)",
        "message": "TEXT",
        "ip": "VARCHAR(45)",
    },
    # information_schema reports BOOLEAN as tinyint; MariaDB stores JSON as longtext.
    type_aliases={"VARCHAR": "TEXT", "TINYINT": "BOOLEAN", "LONGTEXT": "JSON"},
)


def _utc_naive(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class MySQLStorage(AbstractStorageDriver):
    """Schema-driven log storage on MySQL 8 / MariaDB."""

    name: str = "mysql"
    dialect = MYSQL_DIALECT

    def __init__(
        self,
        settings: Optional[Settings] = None,
        url_override: Optional[str] = None,
        engine: Optional[Engine] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._url_override = url_override
        self._engine: Optional[Engine] = engine

    def _get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_mysql_engine(self.settings, url_override=self._url_override)
        return self._engine

    @contextmanager
    def _transaction(self) -> Generator[Connection, None, None]:
        try:
            with self._get_engine().begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise BackendError(f"mysql: {exc}") from exc

    def _adapt(self, schema: Schema, column: str, value: Any) -> Any:
        schema_field = schema.get_field(column)
        if schema_field is not None and schema_field.field_type in (FieldType.JSON, FieldType.REST):
            return json.dumps(value)
        if isinstance(value, datetime):
            return _utc_naive(value)
        if isinstance(value, timedelta):
            return duration_to_nanoseconds(value)
        return value

    @staticmethod
    def _schema_from_row(row: Dict[str, Any]) -> Schema:
        fields = row["fields"]
        if isinstance(fields, (str, bytes)):
            fields = json.loads(fields)
        return Schema(
            project=row["project"],
            table=row["table_name"],
            description=row["description"] or "",
            version=row["version"] or "",
            fields=_fields_adapter.validate_python(fields),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )

    # -- lifecycle -------------------------------------------------------

    def initialize(self) -> None:
        with self._transaction() as conn:
            conn.exec_driver_sql(
                """
                CREATE TABLE IF NOT EXISTS `schemas` (
                    project VARCHAR(255) NOT NULL,
                    table_name VARCHAR(255) NOT NULL,
                    description TEXT,
                    version VARCHAR(50),
                    fields JSON NOT NULL,
                    created_at DATETIME(6) NOT NULL,
                    updated_at DATETIME(6) NOT NULL,
                    PRIMARY KEY (project, table_name)
                ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
                """
            )
        log.info("MySQL storage initialized", extra={"database": self.settings.mysql_db})

    def ping(self) -> None:
        with self._transaction() as conn:
            conn.exec_driver_sql("SELECT 1")

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    # -- schema ----------------------------------------------------------

    def _existing_columns(self, conn: Connection, table: str) -> Dict[str, str]:
        result = conn.exec_driver_sql(
            "SELECT column_name, data_type FROM information_schema.columns "
            "WHERE table_schema = DATABASE() AND table_name = %s",
            (table,),
        )
        return {row[0]: row[1] for row in result}

    def _has_index(self, conn: Connection, table: str, index: str) -> bool:
        result = conn.exec_driver_sql(
            "SELECT 1 FROM information_schema.statistics "
            "WHERE table_schema = DATABASE() AND table_name = %s AND index_name = %s LIMIT 1",
            (table, index),
        )
        return result.first() is not None

    def materialize(self, schema: Schema) -> None:
        ddl.ensure_materializable(schema)
        for schema_field in schema.fields:
            if schema_field.indexed and schema_field.field_type in (FieldType.JSON, FieldType.REST):
                raise UnsupportedOperationError(
                    f"field {schema_field.name}: MySQL cannot index JSON columns"
                )

        table = self.dialect.quote(schema.table_name)
        with self._transaction() as conn:
            conn.exec_driver_sql(
                ddl.create_table_sql(
                    table,
                    ddl.table_columns(schema, self.dialect),
                    self.dialect,
                    suffix=" ENGINE=InnoDB DEFAULT CHARSET=utf8mb4",
                )
            )
            existing = self._existing_columns(conn, schema.table_name)
            ddl.check_existing_columns(schema, self.dialect, existing)
            for name, sql_type in ddl.missing_columns(schema, self.dialect, existing):
                log.info("Adding column", extra={"table": schema.table_name, "column": name})
                conn.exec_driver_sql(ddl.add_column_sql(table, name, sql_type, self.dialect))
            for schema_field in schema.fields:
                if not schema_field.indexed:
                    continue
                index = ddl.index_name(schema.project, schema.table, schema_field.name)
                if self._has_index(conn, schema.table_name, index):
                    continue
                column = self.dialect.quote(schema_field.name)
                if schema_field.field_type == FieldType.STRING:
                    column += f"({_TEXT_INDEX_PREFIX})"
                conn.exec_driver_sql(
                    f"CREATE INDEX {self.dialect.quote(index)} ON {table} ({column})"
                )

    def save_schema(self, schema: Schema) -> None:
        with self._transaction() as conn:
            conn.exec_driver_sql(
                """
                INSERT INTO `schemas`
                    (project, table_name, description, version, fields, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON DUPLICATE KEY UPDATE
                    description = VALUES(description),
                    version = VALUES(version),
                    fields = VALUES(fields),
                    updated_at = VALUES(updated_at)
                """,
                (
                    schema.project,
                    schema.table,
                    schema.description,
                    schema.version,
                    _fields_adapter.dump_json(schema.fields).decode("utf-8"),
                    _utc_naive(schema.created_at),
                    _utc_naive(schema.updated_at),
                ),
            )

    def find_schema(self, project: str, table: str) -> Optional[Schema]:
        with self._transaction() as conn:
            row = (
                conn.exec_driver_sql(
                    "SELECT * FROM `schemas` WHERE project = %s AND table_name = %s",
                    (project, table),
                )
                .mappings()
                .first()
            )
        return self._schema_from_row(dict(row)) if row else None

    def list_schemas(self) -> List[Schema]:
        with self._transaction() as conn:
            rows = (
                conn.exec_driver_sql("SELECT * FROM `schemas` ORDER BY project, table_name")
                .mappings()
                .all()
            )
        return [self._schema_from_row(dict(row)) for row in rows]

    def delete_schema(self, project: str, table: str) -> None:
        with self._transaction() as conn:
            result = conn.exec_driver_sql(
                "DELETE FROM `schemas` WHERE project = %s AND table_name = %s",
                (project, table),
            )
            if result.rowcount == 0:
                raise NotFoundError(f"schema not found: {project}:{table}")
            # Implicitly commits the metadata delete.
            conn.exec_driver_sql(f"DROP TABLE IF EXISTS {self.dialect.quote(f'{project}_{table}')}")
        log.info("Schema deleted", extra={"backend": self.name, "schema": f"{project}:{table}"})

    # -- logs ------------------------------------------------------------

    def _insert_rows(self, schema: Schema, rows: List[Row]) -> List[Optional[int]]:
        table = self.dialect.quote(schema.table_name)
        ids: List[Optional[int]] = []
        with self._transaction() as conn:
            for row in rows:
                sql = ddl.insert_sql(table, list(row), self.dialect)
                params = tuple(self._adapt(schema, column, value) for column, value in row.items())
                result = conn.exec_driver_sql(sql, params)
                ids.append(result.lastrowid)
        return ids

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
            "ORDER BY id LIMIT %s OFFSET %s"
        )
        with self._transaction() as conn:
            rows = [dict(row) for row in conn.exec_driver_sql(sql, (*params, limit, offset)).mappings()]
        return decode_rows(schema, rows)

    def count_logs(
        self, project: str, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> int:
        schema = self.get_schema(project, table)
        where, params = ddl.where_clause(schema, filters, self.dialect)
        params = [self._adapt(schema, column, value) for column, value in zip(filters or {}, params)]
        with self._transaction() as conn:
            result = conn.exec_driver_sql(
                f"SELECT COUNT(*) FROM {self.dialect.quote(schema.table_name)}{where}", tuple(params)
            )
            return int(result.scalar_one())


__all__ = ["MYSQL_DIALECT", "MySQLStorage"]
