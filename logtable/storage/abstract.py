"""
Storage driver interface and the template logic shared by every backend.

Concrete drivers (postgres, mysql, sqlite, clickhouse) implement the
`StorageDriver` protocol by subclassing `AbstractStorageDriver`, which owns the
engine-independent steps (schema validation, type-change checks, timestamp
handling, record coercion, id attachment) and delegates execution to a small
set of abstract hooks.
"""

from __future__ import annotations

import abc
import json
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from logtable.domain.coercion import Duration, validate_record
from logtable.domain.models import FieldType, LogRecord, Schema, validate_schema
from logtable.errors import FieldValidationError, NotFoundError
from logtable.storage import ddl
from logtable.utils.logging import get_logger

log = get_logger(__name__)

Row = Dict[str, Any]


def _decode_value(kind: FieldType, value: Any, json_text: bool) -> Any:
    if kind in (FieldType.JSON, FieldType.REST):
        if json_text and isinstance(value, (str, bytes)):
            return json.loads(value)
        return value
    if kind == FieldType.BOOL:
        return bool(value)
    if kind == FieldType.DATETIME:
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if kind == FieldType.TIME:
        # PyMySQL hands TIME columns back as timedelta since midnight.
        if isinstance(value, timedelta):
            return (datetime.min + value).time()
        if isinstance(value, str):
            return time.fromisoformat(value)
        return value
    if kind == FieldType.DURATION:
        if isinstance(value, timedelta):
            return Duration.from_timedelta(value)
        return Duration(int(value))
    return value


def decode_rows(schema: Schema, rows: List[Row], json_text: bool = True) -> List[Row]:
    """
    Turn stored column values back into the values `coerce` produces.

    Backends without a native column for a field type return its storage
    form: 0/1 for bool, ISO text or naive UTC for datetimes, text or a
    timedelta for time, integer nanoseconds for duration, text for json. The
    implicit `timestamp` column is decoded like a datetime field.

    Parameters
    ----------
    schema : Schema
        Declared fields of the queried table.
    rows : list of dict
        Rows keyed by column name; updated in place and returned.
    json_text : bool
        Whether json/rest columns come back as JSON text. Drivers whose client
        already decodes them (JSONB on psycopg) pass False so that a stored
        JSON string is not parsed a second time.
    """
    kinds = {f.name: f.field_type for f in schema.fields}
    kinds["timestamp"] = FieldType.DATETIME
    for row in rows:
        for name, kind in kinds.items():
            value = row.get(name)
            if value is not None:
                row[name] = _decode_value(kind, value, json_text)
    return rows


@runtime_checkable
class StorageDriver(Protocol):
    """
    Persistence contract consumed by the API layer, logging hooks and the
    schema manager.

    Attributes
    ----------
    name : str
        Backend identifier (postgres, mysql, sqlite, clickhouse).
    """

    name: str

    def initialize(self) -> None: ...

    def create_schema(self, schema: Schema) -> Schema: ...

    def update_schema(self, schema: Schema) -> Schema: ...

    def delete_schema(self, project: str, table: str) -> None: ...

    def get_schema(self, project: str, table: str) -> Schema: ...

    def list_schemas(self) -> List[Schema]: ...

    def insert_log(self, project: str, table: str, record: LogRecord) -> Optional[int]: ...

    def batch_insert_logs(
        self, project: str, table: str, records: Sequence[LogRecord]
    ) -> List[Optional[int]]: ...

    def query_logs(
        self,
        project: str,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Row]: ...

    def count_logs(
        self, project: str, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> int: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class AbstractStorageDriver(abc.ABC):
    """
    Base class for class-based drivers.

    Subclasses set `name` and `dialect` and implement the abstract hooks.
    """

    name: str
    dialect: ddl.Dialect

    # -- lifecycle -------------------------------------------------------

    @abc.abstractmethod
    def initialize(self) -> None:
        """Open the connection handle and create the metadata table."""
        raise NotImplementedError

    @abc.abstractmethod
    def ping(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "AbstractStorageDriver":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- schema ----------------------------------------------------------

    @abc.abstractmethod
    def materialize(self, schema: Schema) -> None:
        """Create or additively extend the physical table and its indexes."""
        raise NotImplementedError

    @abc.abstractmethod
    def save_schema(self, schema: Schema) -> None:
        """Upsert the schema definition into the metadata table."""
        raise NotImplementedError

    @abc.abstractmethod
    def find_schema(self, project: str, table: str) -> Optional[Schema]:
        """Return the persisted schema or None."""
        raise NotImplementedError

    @abc.abstractmethod
    def list_schemas(self) -> List[Schema]:
        raise NotImplementedError

    @abc.abstractmethod
    def delete_schema(self, project: str, table: str) -> None:
        raise NotImplementedError

    def get_schema(self, project: str, table: str) -> Schema:
        schema = self.find_schema(project, table)
        if schema is None:
            raise NotFoundError(f"schema not found: {project}:{table}")
        return schema

    def create_schema(self, schema: Schema) -> Schema:
        """
        Validate, materialize and persist a schema; a full replace when it exists.

        `created_at` is kept from the persisted copy and `updated_at` refreshed.
        Returns the schema as stored.
        """
        validate_schema(schema)
        ddl.ensure_materializable(schema)
        previous = self.find_schema(schema.project, schema.table)
        ddl.check_compatible(previous, schema)

        now = datetime.now(timezone.utc)
        created_at = (previous.created_at if previous else None) or schema.created_at or now
        stored = schema.model_copy(update={"created_at": created_at, "updated_at": now})

        self._apply_schema(stored)
        log.info(
            "Schema %s",
            "updated" if previous else "created",
            extra={"backend": self.name, "schema": stored.key, "fields": len(stored.fields)},
        )
        return stored

    def update_schema(self, schema: Schema) -> Schema:
        return self.create_schema(schema)

    def _apply_schema(self, schema: Schema) -> None:
        """Materialize then persist. Drivers with transactional DDL do both at once."""
        self.materialize(schema)
        self.save_schema(schema)

    # -- logs ------------------------------------------------------------

    @abc.abstractmethod
    def _insert_rows(self, schema: Schema, rows: List[Row]) -> List[Optional[int]]:
        """Write all rows atomically and return generated ids (None if unsupported)."""
        raise NotImplementedError

    def prepare_rows(
        self, schema: Schema, records: Sequence[LogRecord]
    ) -> List[Row]:
        """
        Coerce and validate every record before any DML runs.

        The first failure is raised tagged with the record's zero-based index.
        """
        rows: List[Row] = []
        for index, record in enumerate(records):
            try:
                if record.project and record.project != schema.project:
                    raise FieldValidationError(
                        f"record project {record.project!r} does not match {schema.project!r}",
                        field="project",
                    )
                if record.table and record.table != schema.table:
                    raise FieldValidationError(
                        f"record table {record.table!r} does not match {schema.table!r}",
                        field="table",
                    )
                values = validate_record(schema, record)
            except FieldValidationError as exc:
                raise exc.at_record(index)
            rows.append(ddl.build_row(schema, record, values))
        return rows

    def insert_log(self, project: str, table: str, record: LogRecord) -> Optional[int]:
        return self.batch_insert_logs(project, table, [record])[0]

    def batch_insert_logs(
        self, project: str, table: str, records: Sequence[LogRecord]
    ) -> List[Optional[int]]:
        """
        Insert records all-or-nothing.

        The schema is read from the backend on every call; the in-memory
        registry is not consulted.
        """
        if not records:
            return []
        schema = self.get_schema(project, table)
        rows = self.prepare_rows(schema, records)
        ids = self._insert_rows(schema, rows)
        for record, row_id in zip(records, ids):
            if row_id is not None:
                record.id = row_id
        log.debug(
            "Inserted log batch",
            extra={"backend": self.name, "schema": schema.key, "rows": len(rows)},
        )
        return ids

    @abc.abstractmethod
    def query_logs(
        self,
        project: str,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Row]:
        raise NotImplementedError

    @abc.abstractmethod
    def count_logs(
        self, project: str, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> int:
        raise NotImplementedError


__all__ = ["AbstractStorageDriver", "Row", "StorageDriver", "decode_rows"]
