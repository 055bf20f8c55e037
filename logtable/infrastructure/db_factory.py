"""
Database connection factory utilities for logtable.

Builds the connection handle each storage driver owns:

- PostgreSQL: psycopg_pool.ConnectionPool
- MySQL: SQLAlchemy engine (QueuePool) over PyMySQL
- SQLite: a single sqlite3 connection shared behind the driver's lock
- ClickHouse: a clickhouse_connect HTTP client

Opening is retried with tenacity for transient start-up failures (the server
container is still booting, DNS not ready yet). Once a handle is open nothing
retries: operation errors surface immediately to the caller.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Optional

import clickhouse_connect
import psycopg
from clickhouse_connect.driver.exceptions import OperationalError as ClickHouseOperationalError
from psycopg_pool import ConnectionPool, PoolTimeout
from sqlalchemy import URL, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from logtable.config import Settings, get_settings
from logtable.utils.logging import get_logger

log = get_logger(__name__)

_startup_retry = dict(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)


def build_postgres_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.postgres_user}:{settings.postgres_password}"
        f"@{settings.postgres_host}:{settings.postgres_port}/{settings.postgres_db}"
    )


@retry(retry=retry_if_exception_type((PoolTimeout, psycopg.OperationalError)), **_startup_retry)
def _wait_for_pool(pool: ConnectionPool, timeout: float) -> None:
    pool.wait(timeout=timeout)


def open_postgres_pool(
    settings: Optional[Settings] = None, dsn_override: Optional[str] = None
) -> ConnectionPool:
    """
    Open a synchronous connection pool and wait until `min_size` connections are up.

    Parameters
    ----------
    settings : Settings | None
        Connection and pool sizing settings. Defaults to `get_settings()`.
    dsn_override : str | None
        Connect to this DSN instead of the one composed from settings.

    Returns
    -------
    ConnectionPool
        An open pool; connections are handed out with `pool.connection()`.

    Raises
    ------
    psycopg_pool.PoolTimeout
        If the pool cannot fill after all retry attempts.
    """
    settings = settings or get_settings()
    pool = ConnectionPool(
        conninfo=dsn_override or build_postgres_dsn(settings),
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
        kwargs={"connect_timeout": int(settings.connect_timeout_seconds)},
        open=False,
    )
    pool.open()
    try:
        _wait_for_pool(pool, settings.connect_timeout_seconds)
    except Exception:
        pool.close()
        raise
    return pool


def build_mysql_url(settings: Optional[Settings] = None) -> URL:
    settings = settings or get_settings()
    return URL.create(
        "mysql+pymysql",
        username=settings.mysql_user,
        password=settings.mysql_password,
        host=settings.mysql_host,
        port=settings.mysql_port,
        database=settings.mysql_db,
        query={"charset": "utf8mb4"},
    )


@retry(retry=retry_if_exception_type(SQLAlchemyOperationalError), **_startup_retry)
def _check_engine(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def create_mysql_engine(
    settings: Optional[Settings] = None, url_override: Optional[str] = None
) -> Engine:
    """
    Create a pooled SQLAlchemy engine for the MySQL driver and verify it connects.

    Statements are executed through `exec_driver_sql`, so the engine is used
    for pooling and transaction scoping only.
    """
    settings = settings or get_settings()
    engine = create_engine(
        url_override or build_mysql_url(settings),
        pool_size=settings.pool_max_size,
        pool_pre_ping=True,
        connect_args={"connect_timeout": int(settings.connect_timeout_seconds)},
    )
    try:
        _check_engine(engine)
    except Exception:
        engine.dispose()
        raise
    return engine


def connect_sqlite(path: str) -> sqlite3.Connection:
    """
    Open the SQLite database file in autocommit mode.

    Transactions are opened explicitly by the driver with BEGIN/COMMIT so DDL
    and DML share the same all-or-nothing scope.
    """
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@retry(retry=retry_if_exception_type(ClickHouseOperationalError), **_startup_retry)
def create_clickhouse_client(settings: Optional[Settings] = None, **overrides: Any):
    """
    Create a ClickHouse HTTP client.

    Sessions are disabled so the client can be shared between threads.
    """
    settings = settings or get_settings()
    params = dict(
        host=settings.clickhouse_host,
        port=settings.clickhouse_port,
        username=settings.clickhouse_user,
        password=settings.clickhouse_password,
        database=settings.clickhouse_db,
        connect_timeout=settings.connect_timeout_seconds,
        autogenerate_session_id=False,
    )
    params.update(overrides)
    return clickhouse_connect.get_client(**params)


__all__ = [
    "build_mysql_url",
    "build_postgres_dsn",
    "connect_sqlite",
    "create_clickhouse_client",
    "create_mysql_engine",
    "open_postgres_pool",
]
