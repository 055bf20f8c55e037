"""
Integration tests for the storage drivers.

These tests run against real PostgreSQL, MySQL and ClickHouse servers and verify that:
1. A schema is materialized and persisted, and updates only add columns
2. Records round-trip through insert, query and count
3. A failing batch leaves the table untouched
4. Deleting a schema drops its metadata

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from logtable.config import Settings
from logtable.domain.models import Field, LogRecord, Schema
from logtable.errors import FieldValidationError, NotFoundError, UnsupportedOperationError
from logtable.storage import AbstractStorageDriver, create_driver

BACKENDS = ["postgres", "mysql", "clickhouse"]
BATCH_SIZE = 5
FAILING_INDEX = 2
LATENCY = timedelta(milliseconds=250)

pytestmark = pytest.mark.skipif(
    os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
    reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable database servers",
)


@pytest.fixture(params=BACKENDS)
def driver(request, integration_settings: Settings):
    with create_driver(integration_settings, backend=request.param) as drv:
        yield drv


@pytest.fixture
def schema(driver: AbstractStorageDriver):
    project = f"it{uuid.uuid4().hex[:8]}"
    schema = Schema(
        project=project,
        table="requests",
        fields=[
            Field(name="user_id", type="string", required=True, indexed=True),
            Field(name="status", type="int"),
            Field(name="latency", type="duration"),
            Field(name="received_at", type="datetime"),
            Field(name="payload", type="json"),
            Field(name="extra", type="rest"),
        ],
    )
    yield schema
    try:
        driver.delete_schema(schema.project, schema.table)
    except NotFoundError:
        pass


class TestSchemaLifecycle:
    def test_create_then_get(self, driver: AbstractStorageDriver, schema: Schema) -> None:
        stored = driver.create_schema(schema)

        fetched = driver.get_schema(schema.project, schema.table)
        assert fetched.field_names() == schema.field_names()
        assert fetched.created_at is not None
        assert stored.key in [s.key for s in driver.list_schemas()]

    def test_update_adds_column_and_keeps_created_at(
        self, driver: AbstractStorageDriver, schema: Schema
    ) -> None:
        first = driver.create_schema(schema)
        updated = schema.model_copy(
            update={"fields": [*schema.fields, Field(name="region", type="string")]}
        )
        driver.update_schema(updated)

        fetched = driver.get_schema(schema.project, schema.table)
        assert fetched.field_names()[-1] == "region"
        assert abs(fetched.created_at - first.created_at) < timedelta(seconds=1)

        driver.insert_log(
            schema.project, schema.table, LogRecord(fields={"user_id": "u1", "region": "eu"})
        )
        assert driver.count_logs(schema.project, schema.table, {"region": "eu"}) == 1

    def test_type_change_is_rejected(self, driver: AbstractStorageDriver, schema: Schema) -> None:
        driver.create_schema(schema)
        changed = schema.model_copy(
            update={"fields": [Field(name="user_id", type="int"), *schema.fields[1:]]}
        )
        with pytest.raises(UnsupportedOperationError):
            driver.create_schema(changed)

    def test_delete_removes_metadata(self, driver: AbstractStorageDriver, schema: Schema) -> None:
        driver.create_schema(schema)
        driver.delete_schema(schema.project, schema.table)

        with pytest.raises(NotFoundError):
            driver.get_schema(schema.project, schema.table)


class TestRecords:
    def test_batch_insert_and_query(self, driver: AbstractStorageDriver, schema: Schema) -> None:
        driver.create_schema(schema)
        received = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        records = [
            LogRecord(
                level="info",
                fields={
                    "user_id": f"u{i}",
                    "status": 200 + i,
                    "latency": LATENCY,
                    "received_at": received,
                    "payload": {"n": i},
                    "browser": "firefox",
                },
            )
            for i in range(BATCH_SIZE)
        ]

        ids = driver.batch_insert_logs(schema.project, schema.table, records)

        assert len(ids) == BATCH_SIZE
        assert driver.count_logs(schema.project, schema.table) == BATCH_SIZE
        rows = driver.query_logs(schema.project, schema.table, {"user_id": "u3"})
        assert len(rows) == 1
        assert rows[0]["status"] == 203
        assert rows[0]["payload"] == {"n": 3}
        assert rows[0]["extra"] == {"browser": "firefox"}
        assert rows[0]["latency"] == LATENCY
        assert rows[0]["received_at"] == received

    def test_failing_batch_inserts_nothing(
        self, driver: AbstractStorageDriver, schema: Schema
    ) -> None:
        driver.create_schema(schema)
        records = [LogRecord(fields={"user_id": f"u{i}"}) for i in range(BATCH_SIZE)]
        records[FAILING_INDEX] = LogRecord(fields={"status": 500})

        with pytest.raises(FieldValidationError) as excinfo:
            driver.batch_insert_logs(schema.project, schema.table, records)

        assert excinfo.value.index == FAILING_INDEX
        assert driver.count_logs(schema.project, schema.table) == 0
