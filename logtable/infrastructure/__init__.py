"""
Infrastructure package for logtable.

Centralizes database connectivity concerns (pools, engines, clients).
Keep this layer focused on I/O and resource management, decoupled from
schema and coercion logic.
"""

from logtable.infrastructure.db_factory import (
    build_mysql_url,
    build_postgres_dsn,
    connect_sqlite,
    create_clickhouse_client,
    create_mysql_engine,
    open_postgres_pool,
)

__all__ = [
    "build_mysql_url",
    "build_postgres_dsn",
    "connect_sqlite",
    "create_clickhouse_client",
    "create_mysql_engine",
    "open_postgres_pool",
]
