"""
Configuration settings for logtable.

Uses Pydantic Settings to load environment variables for the active storage
backend, the per-backend connection parameters, the watched schema directory
and logging.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BackendName = Literal["postgres", "mysql", "sqlite", "clickhouse"]


class Settings(BaseSettings):
    # Storage selection
    storage_backend: BackendName = Field("postgres", alias="STORAGE_BACKEND")
    schemas_dir: str = Field("configs/schemas", alias="SCHEMAS_DIR")

    # PostgreSQL
    postgres_host: str = Field("localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(5432, alias="POSTGRES_PORT")
    postgres_user: str = Field("postgres", alias="POSTGRES_USER")
    postgres_password: str = Field("postgres", alias="POSTGRES_PASSWORD")
    postgres_db: str = Field("logtable", alias="POSTGRES_DB")
    postgres_schema: str = Field("logs", alias="POSTGRES_SCHEMA")

    # MySQL
    mysql_host: str = Field("localhost", alias="MYSQL_HOST")
    mysql_port: int = Field(3306, alias="MYSQL_PORT")
    mysql_user: str = Field("root", alias="MYSQL_USER")
    mysql_password: str = Field("root", alias="MYSQL_PASSWORD")
    mysql_db: str = Field("logtable", alias="MYSQL_DB")

    # SQLite
    sqlite_path: str = Field("logtable.db", alias="SQLITE_PATH")

    # ClickHouse
    clickhouse_host: str = Field("localhost", alias="CLICKHOUSE_HOST")
    clickhouse_port: int = Field(8123, alias="CLICKHOUSE_PORT")
    clickhouse_user: str = Field("default", alias="CLICKHOUSE_USER")
    clickhouse_password: str = Field("", alias="CLICKHOUSE_PASSWORD")
    clickhouse_db: str = Field("default", alias="CLICKHOUSE_DB")

    # Connection pooling
    pool_min_size: int = Field(1, alias="POOL_MIN_SIZE")
    pool_max_size: int = Field(10, alias="POOL_MAX_SIZE")
    connect_timeout_seconds: float = Field(10.0, alias="CONNECT_TIMEOUT_SECONDS")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["BackendName", "Settings", "get_settings"]
