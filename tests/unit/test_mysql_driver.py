from __future__ import annotations

import json
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

import pytest
from sqlalchemy.exc import OperationalError

from logtable.domain.coercion import duration_to_nanoseconds
from logtable.domain.models import Field, LogRecord, Schema
from logtable.errors import BackendError, NotFoundError, UnsupportedOperationError
from logtable.storage.mysql import MySQLStorage

CREATED_NAIVE = datetime(2024, 1, 1, 12, 0)
HALF_SECOND_NANOS = 500_000_000
FIRST_ID = 41
BATCH_SIZE = 3
EXISTING_IMPLICIT = {
    "id": "bigint",
    "project": "varchar",
    "table_name": "varchar",
    "timestamp": "datetime",
    "level": "varchar",
    "message": "text",
    "ip": "varchar",
}

Responder = Callable[[str, Any], "_FakeResult"]


def _normalize(sql: str) -> str:
    return " ".join(sql.split())


class _FakeMappings:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows

    def first(self) -> Optional[dict[str, Any]]:
        return self._rows[0] if self._rows else None

    def all(self) -> list[dict[str, Any]]:
        return list(self._rows)

    def __iter__(self):
        return iter(self._rows)


class _FakeResult:
    def __init__(
        self,
        rows: Optional[list[dict[str, Any]]] = None,
        rowcount: int = 1,
        lastrowid: Optional[int] = None,
    ) -> None:
        self._rows = rows or []
        self.rowcount = rowcount
        self.lastrowid = lastrowid

    def mappings(self) -> _FakeMappings:
        return _FakeMappings(self._rows)

    def first(self) -> Optional[tuple[Any, ...]]:
        return tuple(self._rows[0].values()) if self._rows else None

    def scalar_one(self) -> Any:
        return next(iter(self._rows[0].values()))

    def __iter__(self):
        return (tuple(row.values()) for row in self._rows)


class _FakeConnection:
    def __init__(self, engine: _FakeEngine) -> None:
        self._engine = engine

    def exec_driver_sql(self, sql: str, params: Any = None) -> _FakeResult:
        statement = _normalize(sql)
        self._engine.statements.append((statement, params))
        return self._engine.responder(statement, params)


class _FakeEngine:
    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.statements: list[tuple[str, Any]] = []
        self.commits = 0
        self.rollbacks = 0
        self.disposed = False
        self.responder: Responder = responder or (lambda sql, params: _FakeResult())

    @contextmanager
    def begin(self):
        try:
            yield _FakeConnection(self)
        except BaseException:
            self.rollbacks += 1
            raise
        self.commits += 1

    def dispose(self) -> None:
        self.disposed = True

    def executed(self, prefix: str) -> list[tuple[str, Any]]:
        return [(sql, params) for sql, params in self.statements if sql.startswith(prefix)]


def _metadata_row(schema: Schema) -> dict[str, Any]:
    return {
        "project": schema.project,
        "table_name": schema.table,
        "description": None,
        "version": None,
        "fields": json.dumps([f.model_dump(exclude_none=True) for f in schema.fields]),
        "created_at": CREATED_NAIVE,
        "updated_at": CREATED_NAIVE,
    }


def _responder(
    schema: Optional[Schema] = None,
    existing_columns: Optional[dict[str, str]] = None,
    existing_indexes: tuple[str, ...] = (),
) -> Responder:
    next_id = iter(range(FIRST_ID, FIRST_ID + 1_000))

    def respond(sql: str, params: Any) -> _FakeResult:
        if sql.startswith("SELECT * FROM `schemas`"):
            return _FakeResult([_metadata_row(schema)] if schema else [])
        if "information_schema.columns" in sql:
            return _FakeResult(
                [
                    {"column_name": name, "data_type": data_type}
                    for name, data_type in (existing_columns or {}).items()
                ]
            )
        if "information_schema.statistics" in sql:
            return _FakeResult([{"1": 1}] if params[1] in existing_indexes else [])
        if sql.startswith("INSERT INTO `") and not sql.startswith("INSERT INTO `schemas`"):
            return _FakeResult(lastrowid=next(next_id))
        return _FakeResult()

    return respond


def test_initialize_creates_metadata_table(settings) -> None:
    engine = _FakeEngine()
    MySQLStorage(settings, engine=engine).initialize()

    (sql, _), = engine.executed("CREATE TABLE IF NOT EXISTS `schemas`")
    assert "PRIMARY KEY (project, table_name)" in sql
    assert sql.endswith("ENGINE=InnoDB DEFAULT CHARSET=utf8mb4")


def test_materialize_creates_table_and_prefix_indexes(settings, rich_schema: Schema) -> None:
    engine = _FakeEngine(_responder(existing_indexes=("idx_shop_requests_status",)))
    driver = MySQLStorage(settings, engine=engine)

    driver.create_schema(rich_schema)

    (create, _), = engine.executed("CREATE TABLE IF NOT EXISTS `shop_requests`")
    assert "`id` BIGINT AUTO_INCREMENT PRIMARY KEY" in create
    assert "`received_at` DATETIME(6)" in create
    assert "`latency` BIGINT" in create
    assert "`payload` JSON" in create
    assert create.endswith("ENGINE=InnoDB DEFAULT CHARSET=utf8mb4")

    indexes = [sql for sql, _ in engine.executed("CREATE INDEX")]
    assert indexes == [
        "CREATE INDEX `idx_shop_requests_user_id` ON `shop_requests` (`user_id`(191))"
    ]


def test_existing_table_only_gets_missing_columns(settings, user_schema: Schema) -> None:
    existing = {**EXISTING_IMPLICIT, "user_id": "text"}
    engine = _FakeEngine(_responder(existing_columns=existing))
    driver = MySQLStorage(settings, engine=engine)
    updated = user_schema.model_copy(
        update={"fields": [*user_schema.fields, Field(name="region", type="string")]}
    )

    driver.materialize(updated)

    assert [sql for sql, _ in engine.executed("ALTER TABLE")] == [
        "ALTER TABLE `test_logs` ADD COLUMN `region` TEXT"
    ]


def test_existing_column_of_another_type_is_rejected(settings, user_schema: Schema) -> None:
    engine = _FakeEngine(_responder(existing_columns={**EXISTING_IMPLICIT, "user_id": "bigint"}))

    with pytest.raises(UnsupportedOperationError, match="user_id"):
        MySQLStorage(settings, engine=engine).materialize(user_schema)

    assert engine.executed("ALTER TABLE") == []
    assert engine.rollbacks == 1


def test_declared_level_must_fit_existing_implicit_column(settings, user_schema: Schema) -> None:
    engine = _FakeEngine(_responder(existing_columns={**EXISTING_IMPLICIT, "user_id": "text"}))
    driver = MySQLStorage(settings, engine=engine)
    as_string = user_schema.model_copy(
        update={"fields": [*user_schema.fields, Field(name="level", type="string")]}
    )
    as_int = user_schema.model_copy(
        update={"fields": [*user_schema.fields, Field(name="level", type="int")]}
    )

    driver.materialize(as_string)
    with pytest.raises(UnsupportedOperationError, match="level"):
        driver.materialize(as_int)


def test_indexed_json_field_is_rejected_before_ddl(settings) -> None:
    engine = _FakeEngine(_responder())
    schema = Schema(
        project="p", table="t", fields=[Field(name="payload", type="json", indexed=True)]
    )

    with pytest.raises(UnsupportedOperationError):
        MySQLStorage(settings, engine=engine).create_schema(schema)

    assert engine.executed("CREATE") == []
    assert engine.executed("INSERT") == []


def test_save_schema_stores_naive_utc_and_keeps_created_at(settings, user_schema: Schema) -> None:
    engine = _FakeEngine(_responder())
    driver = MySQLStorage(settings, engine=engine)
    local = timezone(timedelta(hours=2))
    stamped = user_schema.model_copy(
        update={
            "created_at": datetime(2024, 1, 1, 14, 0, tzinfo=local),
            "updated_at": datetime(2024, 1, 2, 14, 0, tzinfo=local),
        }
    )

    driver.save_schema(stamped)

    (sql, params), = engine.executed("INSERT INTO `schemas`")
    assert "ON DUPLICATE KEY UPDATE" in sql
    assert "created_at = VALUES" not in sql
    assert params[5] == datetime(2024, 1, 1, 12, 0)
    assert params[6] == datetime(2024, 1, 2, 12, 0)
    assert [f["name"] for f in json.loads(params[4])] == ["user_id"]


def test_find_schema_reads_json_fields_and_marks_utc(settings, user_schema: Schema) -> None:
    driver = MySQLStorage(settings, engine=_FakeEngine(_responder(user_schema)))

    fetched = driver.get_schema("test", "logs")

    assert fetched.field_names() == ["user_id"]
    assert fetched.fields[0].required is True
    assert fetched.created_at == CREATED_NAIVE.replace(tzinfo=timezone.utc)
    assert fetched.description == "" and fetched.version == ""


def test_batch_insert_adapts_values_and_returns_ids(settings, rich_schema: Schema) -> None:
    engine = _FakeEngine(_responder(rich_schema))
    driver = MySQLStorage(settings, engine=engine)
    records = [
        LogRecord(
            fields={
                "user_id": f"u{i}",
                "latency": "500ms",
                "received_at": "2024-05-01T14:00:00+02:00",
                "payload": {"n": i},
            }
        )
        for i in range(BATCH_SIZE)
    ]

    ids = driver.batch_insert_logs("shop", "requests", records)

    assert ids == [FIRST_ID, FIRST_ID + 1, FIRST_ID + 2]
    assert [r.id for r in records] == ids
    inserts = engine.executed("INSERT INTO `shop_requests`")
    assert len(inserts) == BATCH_SIZE
    sql, params = inserts[0]
    row = dict(zip([c.strip("`") for c in sql.split("(")[1].split(")")[0].split(", ")], params))
    assert row["latency"] == HALF_SECOND_NANOS
    assert row["received_at"] == datetime(2024, 5, 1, 12, 0)
    assert row["payload"] == '{"n": 0}'
    assert json.loads(row["extra"]) == {}
    assert row["timestamp"].tzinfo is None


def test_delete_missing_schema_skips_drop(settings) -> None:
    engine = _FakeEngine(lambda sql, params: _FakeResult(rowcount=0))

    with pytest.raises(NotFoundError):
        MySQLStorage(settings, engine=engine).delete_schema("test", "logs")

    assert engine.executed("DROP TABLE") == []
    assert engine.rollbacks == 1


def test_delete_schema_drops_table(settings) -> None:
    engine = _FakeEngine()
    MySQLStorage(settings, engine=engine).delete_schema("test", "logs")

    assert [sql for sql, _ in engine.executed("DROP TABLE")] == ["DROP TABLE IF EXISTS `test_logs`"]


def test_count_logs_adapts_filter_values(settings, rich_schema: Schema) -> None:
    def respond(sql: str, params: Any) -> _FakeResult:
        if sql.startswith("SELECT COUNT(*)"):
            return _FakeResult([{"COUNT(*)": 2}])
        return _responder(rich_schema)(sql, params)

    engine = _FakeEngine(respond)
    driver = MySQLStorage(settings, engine=engine)
    when = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert driver.count_logs("shop", "requests", {"received_at": when}) == 2
    sql, params = engine.statements[-1]
    assert sql == "SELECT COUNT(*) FROM `shop_requests` WHERE `received_at` = %s"
    assert params == (datetime(2024, 5, 1, 12, 0),)


def test_engine_errors_are_wrapped(settings) -> None:
    def fail(sql: str, params: Any) -> _FakeResult:
        raise OperationalError(sql, params, Exception("server has gone away"))

    engine = _FakeEngine(fail)

    with pytest.raises(BackendError) as excinfo:
        MySQLStorage(settings, engine=engine).ping()

    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert engine.rollbacks == 1


def test_close_disposes_engine(settings) -> None:
    engine = _FakeEngine()
    driver = MySQLStorage(settings, engine=engine)
    driver.close()
    assert engine.disposed


def test_query_decodes_stored_values(settings, rich_schema: Schema) -> None:
    stored = {
        "id": FIRST_ID,
        "timestamp": CREATED_NAIVE,
        "user_id": "u1",
        "cached": 1,
        "received_at": datetime(2024, 5, 1, 12, 0),
        "opened": timedelta(hours=8, minutes=30),
        "latency": HALF_SECOND_NANOS,
        "payload": '{"n": 1}',
        "extra": '{"os": "linux"}',
    }

    def respond(sql: str, params: Any) -> _FakeResult:
        if sql.startswith("SELECT * FROM `shop_requests`"):
            return _FakeResult([dict(stored)])
        return _responder(rich_schema)(sql, params)

    driver = MySQLStorage(settings, engine=_FakeEngine(respond))

    (row,) = driver.query_logs("shop", "requests")

    assert row["cached"] is True
    assert row["received_at"] == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert row["timestamp"] == CREATED_NAIVE.replace(tzinfo=timezone.utc)
    assert row["opened"] == time(8, 30)
    assert duration_to_nanoseconds(row["latency"]) == HALF_SECOND_NANOS
    assert row["payload"] == {"n": 1}
    assert row["extra"] == {"os": "linux"}
