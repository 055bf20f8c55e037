"""
SQLite driver (embedded row store).

One connection is shared by every caller and serialized with a lock; each
operation runs inside an explicit BEGIN/COMMIT so DDL, metadata writes and
batch inserts are all-or-nothing.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional

from pydantic import TypeAdapter

from logtable.config import Settings, get_settings
from logtable.domain.coercion import duration_to_nanoseconds
from logtable.domain.models import Field, FieldType, Schema
from logtable.errors import BackendError, NotFoundError
from logtable.infrastructure.db_factory import connect_sqlite
from logtable.storage import ddl
from logtable.storage.abstract import AbstractStorageDriver, Row, decode_rows
from logtable.utils.logging import get_logger

log = get_logger(__name__)

_fields_adapter = TypeAdapter(List[Field])

SQLITE_DIALECT = ddl.Dialect(
    name="sqlite",
    quote_char='"',
    placeholder="?",
    id_column="INTEGER PRIMARY KEY AUTOINCREMENT",
    implicit_types={
        "project": "TEXT NOT NULL",
        "table_name": "TEXT NOT NULL",
        "timestamp": "TEXT NOT NULL",
        "level": "TEXT",
        "message": "TEXT",
        "ip": "TEXT",
    },
)


def _to_sql_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, timedelta):
        return duration_to_nanoseconds(value)
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteStorage(AbstractStorageDriver):
    """
    Schema-driven log storage in a single SQLite database file.

    Parameters
    ----------
    settings : Settings | None
        Supplies `sqlite_path` when `path` is not given.
    path : str | None
        Database file, or ":memory:".
    connection : sqlite3.Connection | None
        Use an already opened connection instead of opening `path`.
    """

    name: str = "sqlite"
    dialect = SQLITE_DIALECT

    def __init__(
        self,
        settings: Optional[Settings] = None,
        path: Optional[str] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.path = path or self.settings.sqlite_path
        self._conn: Optional[sqlite3.Connection] = connection
        if connection is not None:
            connection.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = connect_sqlite(self.path)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            try:
                conn = self._connection()
                conn.execute("BEGIN")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as exc:
                raise BackendError(f"sqlite: {exc}") from exc

    def _adapt(self, schema: Schema, column: str, value: Any) -> Any:
        schema_field = schema.get_field(column)
        if schema_field is not None and schema_field.field_type in (FieldType.JSON, FieldType.REST):
            return json.dumps(value)
        return _to_sql_value(value)

    @staticmethod
    def _schema_from_row(row: sqlite3.Row) -> Schema:
        return Schema(
            project=row["project"],
            table=row["table_name"],
            description=row["description"] or "",
            version=row["version"] or "",
            fields=_fields_adapter.validate_json(row["fields"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # -- lifecycle -------------------------------------------------------

    def initialize(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS "schemas" (
                    project TEXT NOT NULL,
                    table_name TEXT NOT NULL,
                    description TEXT,
                    version TEXT,
                    fields TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (project, table_name)
                )
                """
            )
        log.info("SQLite storage initialized", extra={"path": self.path})

    def ping(self) -> None:
        with self._transaction() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -- schema ----------------------------------------------------------

    def _materialize(self, conn: sqlite3.Connection, schema: Schema) -> None:
        table = self.dialect.quote(schema.table_name)
        conn.execute(
            ddl.create_table_sql(table, ddl.table_columns(schema, self.dialect), self.dialect)
        )
        existing = {row["name"]: row["type"] for row in conn.execute(f"PRAGMA table_info({table})")}
        ddl.check_existing_columns(schema, self.dialect, existing)
        for name, sql_type in ddl.missing_columns(schema, self.dialect, existing):
            log.info("Adding column", extra={"table": schema.table_name, "column": name})
            conn.execute(ddl.add_column_sql(table, name, sql_type, self.dialect))
        for schema_field in schema.fields:
            if schema_field.indexed:
                index = ddl.index_name(schema.project, schema.table, schema_field.name)
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {self.dialect.quote(index)} "
                    f"ON {table} ({self.dialect.quote(schema_field.name)})"
                )

    def _save(self, conn: sqlite3.Connection, schema: Schema) -> None:
        conn.execute(
            """
            INSERT INTO "schemas"
                (project, table_name, description, version, fields, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (project, table_name) DO UPDATE
            SET description = excluded.description,
                version = excluded.version,
                fields = excluded.fields,
                updated_at = excluded.updated_at
            """,
            (
                schema.project,
                schema.table,
                schema.description,
                schema.version,
                _fields_adapter.dump_json(schema.fields).decode("utf-8"),
                _to_sql_value(schema.created_at),
                _to_sql_value(schema.updated_at),
            ),
        )

    def materialize(self, schema: Schema) -> None:
        ddl.ensure_materializable(schema)
        with self._transaction() as conn:
            self._materialize(conn, schema)

    def save_schema(self, schema: Schema) -> None:
        with self._transaction() as conn:
            self._save(conn, schema)

    def _apply_schema(self, schema: Schema) -> None:
        with self._transaction() as conn:
            self._materialize(conn, schema)
            self._save(conn, schema)

    def find_schema(self, project: str, table: str) -> Optional[Schema]:
        with self._transaction() as conn:
            row = conn.execute(
                'SELECT * FROM "schemas" WHERE project = ? AND table_name = ?',
                (project, table),
            ).fetchone()
        return self._schema_from_row(row) if row else None

    def list_schemas(self) -> List[Schema]:
        with self._transaction() as conn:
            rows = conn.execute(
                'SELECT * FROM "schemas" ORDER BY project, table_name'
            ).fetchall()
        return [self._schema_from_row(row) for row in rows]

    def delete_schema(self, project: str, table: str) -> None:
        with self._transaction() as conn:
            cur = conn.execute(
                'DELETE FROM "schemas" WHERE project = ? AND table_name = ?',
                (project, table),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"schema not found: {project}:{table}")
            conn.execute(f"DROP TABLE IF EXISTS {self.dialect.quote(f'{project}_{table}')}")
        log.info("Schema deleted", extra={"backend": self.name, "schema": f"{project}:{table}"})

    # -- logs ------------------------------------------------------------

    def _insert_rows(self, schema: Schema, rows: List[Row]) -> List[Optional[int]]:
        table = self.dialect.quote(schema.table_name)
        ids: List[Optional[int]] = []
        with self._transaction() as conn:
            for row in rows:
                sql = ddl.insert_sql(table, list(row), self.dialect)
                params = [self._adapt(schema, column, value) for column, value in row.items()]
                ids.append(conn.execute(sql, params).lastrowid)
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
            "ORDER BY id LIMIT ? OFFSET ?"
        )
        with self._transaction() as conn:
            rows = [dict(row) for row in conn.execute(sql, [*params, limit, offset])]
        return decode_rows(schema, rows)

    def count_logs(
        self, project: str, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> int:
        schema = self.get_schema(project, table)
        where, params = ddl.where_clause(schema, filters, self.dialect)
        params = [self._adapt(schema, column, value) for column, value in zip(filters or {}, params)]
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {self.dialect.quote(schema.table_name)}{where}", params
            ).fetchone()
        return int(row[0])


__all__ = ["SQLITE_DIALECT", "SQLiteStorage"]
