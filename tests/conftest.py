"""
Pytest configuration for logtable.

Provides fixtures for:
- Settings built without reading the environment or a .env file
- Sample schemas and schema files
- A SQLite driver on a temporary database file
- Backend settings for integration tests
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Generator

import pytest

from logtable.config import Settings
from logtable.domain.document import schema_to_document
from logtable.domain.models import Field, Schema
from logtable.storage.sqlite import SQLiteStorage


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """
    Settings fixture isolated from the developer's environment.
    """
    return Settings(
        _env_file=None,
        storage_backend="sqlite",
        sqlite_path=str(tmp_path / "logtable.db"),
        schemas_dir=str(tmp_path / "schemas"),
        log_level="DEBUG",
    )


@pytest.fixture
def user_schema() -> Schema:
    """The single required-field schema used across driver tests."""
    return Schema(
        project="test",
        table="logs",
        fields=[Field(name="user_id", type="string", required=True)],
    )


@pytest.fixture
def rich_schema() -> Schema:
    """One field of every column-backed type plus a rest field."""
    return Schema(
        project="shop",
        table="requests",
        description="access log",
        version="1",
        fields=[
            Field(name="user_id", type="string", required=True, indexed=True),
            Field(name="status", type="int", indexed=True),
            Field(name="ratio", type="float"),
            Field(name="cached", type="bool", default=False),
            Field(name="received_at", type="datetime"),
            Field(name="opened", type="time"),
            Field(name="latency", type="duration"),
            Field(name="payload", type="json"),
            Field(name="extra", type="rest"),
        ],
    )


@pytest.fixture
def sqlite_driver(settings: Settings) -> Generator[SQLiteStorage, None, None]:
    """
    Initialized SQLite driver on a fresh database file; closed after the test.
    """
    driver = SQLiteStorage(settings)
    driver.initialize()
    try:
        yield driver
    finally:
        driver.close()


@pytest.fixture
def write_schema_file():
    """Write a schema as a YAML document and return the path."""

    def _write(path: Path, schema: Schema) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(schema_to_document(schema))
        return path

    return _write


@pytest.fixture(scope="session")
def integration_settings() -> Settings:
    """
    Settings for integration tests, overridable via environment variables in CI.
    """
    return Settings(
        postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
        postgres_port=int(os.getenv("POSTGRES_PORT", "5432")),
        postgres_user=os.getenv("POSTGRES_USER", "postgres"),
        postgres_password=os.getenv("POSTGRES_PASSWORD", "postgres"),
        postgres_db=os.getenv("POSTGRES_DB", "logtable"),
        postgres_schema=os.getenv("POSTGRES_SCHEMA", "logtable_test"),
        mysql_host=os.getenv("MYSQL_HOST", "localhost"),
        mysql_port=int(os.getenv("MYSQL_PORT", "3306")),
        mysql_user=os.getenv("MYSQL_USER", "root"),
        mysql_password=os.getenv("MYSQL_PASSWORD", "root"),
        mysql_db=os.getenv("MYSQL_DB", "logtable"),
        clickhouse_host=os.getenv("CLICKHOUSE_HOST", "localhost"),
        clickhouse_port=int(os.getenv("CLICKHOUSE_PORT", "8123")),
        clickhouse_user=os.getenv("CLICKHOUSE_USER", "default"),
        clickhouse_password=os.getenv("CLICKHOUSE_PASSWORD", ""),
        clickhouse_db=os.getenv("CLICKHOUSE_DB", "default"),
        log_level="DEBUG",
    )
