"""
PostgreSQL driver (relational row store).

All objects live in one PostgreSQL namespace (`POSTGRES_SCHEMA`, default
`logs`): the `schemas` metadata table and one `<project>_<table>` table per
log schema. DDL is transactional here, so materialization and the metadata
upsert commit together.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool
from pydantic import TypeAdapter

from logtable.config import Settings, get_settings
from logtable.domain.models import Field, FieldType, Schema
from logtable.errors import BackendError, NotFoundError
from logtable.infrastructure.db_factory import open_postgres_pool
from logtable.storage import ddl
from logtable.storage.abstract import AbstractStorageDriver, Row, decode_rows
from logtable.utils.logging import get_logger

log = get_logger(__name__)

_fields_adapter = TypeAdapter(List[Field])

POSTGRES_DIALECT = ddl.Dialect(
    name="postgres",
    quote_char='"',
    placeholder="%s",
    id_column="BIGSERIAL PRIMARY KEY",
    implicit_types={
        "project": "VARCHAR(255)",
        "table_name": "VARCHAR(255)",
        "timestamp": "TIMESTAMPTZ",
        "level": "VARCHAR(50)",
        "message": "TEXT",
        "ip": "VARCHAR(45)",
    },
    type_aliases={
        "CHARACTER VARYING": "TEXT",
        "VARCHAR": "TEXT",
        "TIMESTAMP WITH TIME ZONE": "TIMESTAMPTZ",
        "TIME WITHOUT TIME ZONE": "TIME",
    },
)


class PostgresStorage(AbstractStorageDriver):
    """
    Schema-driven log storage on a psycopg connection pool.
    """

    name: str = "postgres"
    dialect = POSTGRES_DIALECT

    def __init__(
        self,
        settings: Optional[Settings] = None,
        dsn_override: Optional[str] = None,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.namespace = self.settings.postgres_schema or "logs"
        self._dsn_override = dsn_override
        self._pool: Optional[ConnectionPool] = pool

    # -- helpers ---------------------------------------------------------

    def _get_pool(self) -> ConnectionPool:
        if self._pool is None:
            self._pool = open_postgres_pool(self.settings, dsn_override=self._dsn_override)
        return self._pool

    @contextmanager
    def _transaction(self) -> Generator[psycopg.Connection, None, None]:
        """Borrow a pooled connection for one transaction; commit or roll back on exit."""
        try:
            with self._get_pool().connection() as conn:
                with conn.transaction():
                    yield conn
        except psycopg.Error as exc:
            raise BackendError(f"postgres: {exc}") from exc

    def _qualified(self, table: str) -> str:
        return f"{self.dialect.quote(self.namespace)}.{self.dialect.quote(table)}"

    def _adapt(self, schema: Schema, column: str, value: Any) -> Any:
        schema_field = schema.get_field(column)
        if schema_field is None:
            return value
        if schema_field.field_type in (FieldType.JSON, FieldType.REST):
            return json.dumps(value)
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
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- lifecycle -------------------------------------------------------

    def initialize(self) -> None:
        with self._transaction() as conn:
            conn.execute(f"CREATE SCHEMA IF NOT EXISTS {self.dialect.quote(self.namespace)}")
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._qualified("schemas")} (
                    project VARCHAR(255) NOT NULL,
                    table_name VARCHAR(255) NOT NULL,
                    description TEXT,
                    version VARCHAR(50),
                    fields JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (project, table_name)
                )
                """
            )
        log.info("PostgreSQL storage initialized", extra={"namespace": self.namespace})

    def ping(self) -> None:
        with self._transaction() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    # -- schema ----------------------------------------------------------

    def _existing_columns(self, conn: psycopg.Connection, table: str) -> Dict[str, str]:
        cur = conn.execute(
            "SELECT column_name, data_type FROM information_schema.columns "
            "WHERE table_schema = %s AND table_name = %s",
            (self.namespace, table),
        )
        return {row[0]: row[1] for row in cur.fetchall()}

    def _materialize(self, conn: psycopg.Connection, schema: Schema) -> None:
        table = self._qualified(schema.table_name)
        conn.execute(
            ddl.create_table_sql(table, ddl.table_columns(schema, self.dialect), self.dialect)
        )
        existing = self._existing_columns(conn, schema.table_name)
        ddl.check_existing_columns(schema, self.dialect, existing)
        for name, sql_type in ddl.missing_columns(schema, self.dialect, existing):
            log.info("Adding column", extra={"table": schema.table_name, "column": name})
            conn.execute(ddl.add_column_sql(table, name, sql_type, self.dialect, if_not_exists=True))
        for schema_field in schema.fields:
            if schema_field.indexed:
                index = ddl.index_name(schema.project, schema.table, schema_field.name)
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {self.dialect.quote(index)} "
                    f"ON {table} ({self.dialect.quote(schema_field.name)})"
                )

    def materialize(self, schema: Schema) -> None:
        ddl.ensure_materializable(schema)
        with self._transaction() as conn:
            self._materialize(conn, schema)

    def _save(self, conn: psycopg.Connection, schema: Schema) -> None:
        conn.execute(
            f"""
            INSERT INTO {self._qualified("schemas")}
                (project, table_name, description, version, fields, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (project, table_name) DO UPDATE
            SET description = EXCLUDED.description,
                version = EXCLUDED.version,
                fields = EXCLUDED.fields,
                updated_at = EXCLUDED.updated_at
            """,
            (
                schema.project,
                schema.table,
                schema.description,
                schema.version,
                _fields_adapter.dump_json(schema.fields).decode("utf-8"),
                schema.created_at,
                schema.updated_at,
            ),
        )

    def save_schema(self, schema: Schema) -> None:
        with self._transaction() as conn:
            self._save(conn, schema)

    def _apply_schema(self, schema: Schema) -> None:
        with self._transaction() as conn:
            self._materialize(conn, schema)
            self._save(conn, schema)

    def find_schema(self, project: str, table: str) -> Optional[Schema]:
        with self._transaction() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT * FROM {self._qualified('schemas')} "
                    "WHERE project = %s AND table_name = %s",
                    (project, table),
                )
                row = cur.fetchone()
        return self._schema_from_row(row) if row else None

    def list_schemas(self) -> List[Schema]:
        with self._transaction() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT * FROM {self._qualified('schemas')} ORDER BY project, table_name"
                )
                rows = cur.fetchall()
        return [self._schema_from_row(row) for row in rows]

    def delete_schema(self, project: str, table: str) -> None:
        with self._transaction() as conn:
            cur = conn.execute(
                f"DELETE FROM {self._qualified('schemas')} WHERE project = %s AND table_name = %s",
                (project, table),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"schema not found: {project}:{table}")
            conn.execute(f"DROP TABLE IF EXISTS {self._qualified(f'{project}_{table}')}")
        log.info("Schema deleted", extra={"backend": self.name, "schema": f"{project}:{table}"})

    # -- logs ------------------------------------------------------------

    def _insert_rows(self, schema: Schema, rows: List[Row]) -> List[Optional[int]]:
        table = self._qualified(schema.table_name)
        ids: List[Optional[int]] = []
        with self._transaction() as conn:
            with conn.cursor() as cur:
                for row in rows:
                    sql = ddl.insert_sql(table, list(row), self.dialect, returning="id")
                    params = [self._adapt(schema, column, value) for column, value in row.items()]
                    log.debug("insert log", extra={"query": sql})
                    cur.execute(sql, params)
                    ids.append(cur.fetchone()[0])
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
        sql = (
            f"SELECT * FROM {self._qualified(schema.table_name)}{where} "
            "ORDER BY id LIMIT %s OFFSET %s"
        )
        with self._transaction() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, [*params, limit, offset])
                rows = list(cur.fetchall())
        return decode_rows(schema, rows, json_text=False)

    def count_logs(
        self, project: str, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> int:
        schema = self.get_schema(project, table)
        where, params = ddl.where_clause(schema, filters, self.dialect)
        with self._transaction() as conn:
            cur = conn.execute(
                f"SELECT COUNT(*) FROM {self._qualified(schema.table_name)}{where}", params
            )
            return int(cur.fetchone()[0])


__all__ = ["POSTGRES_DIALECT", "PostgresStorage"]
