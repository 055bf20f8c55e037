from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Optional

import typer

from logtable.config import get_settings
from logtable.domain.document import load_schema_file
from logtable.domain.models import validate_schema
from logtable.errors import LogTableError
from logtable.registry.manager import SchemaManager
from logtable.reporter import print_fields, print_schemas
from logtable.storage import available_backends, create_driver, ddl
from logtable.utils.logging import configure_logging

app = typer.Typer(help="Schema-driven log storage CLI.")

BackendOption = typer.Option(
    None,
    "--backend",
    "-b",
    help="Storage backend (postgres, mysql, sqlite, clickhouse). Defaults to STORAGE_BACKEND.",
)


@app.callback()
def _setup() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)


def _fail(exc: Exception) -> None:
    typer.echo(f"error: {exc}", err=True)
    raise typer.Exit(code=1)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"backend={settings.storage_backend} schemas_dir={settings.schemas_dir} | "
        f"postgres={settings.postgres_user}@{settings.postgres_host}:{settings.postgres_port}/"
        f"{settings.postgres_db} ({settings.postgres_schema}) | "
        f"mysql={settings.mysql_user}@{settings.mysql_host}:{settings.mysql_port}/{settings.mysql_db} | "
        f"sqlite={settings.sqlite_path} | "
        f"clickhouse={settings.clickhouse_host}:{settings.clickhouse_port}/{settings.clickhouse_db}"
    )


@app.command()
def backends() -> None:
    """
    List available storage backends.
    """
    typer.echo("Available backends: " + ", ".join(available_backends()))


@app.command()
def validate(path: Path = typer.Argument(..., help="Schema YAML file.")) -> None:
    """
    Parse and validate a schema file without touching any backend.
    """
    try:
        schema = load_schema_file(path)
        validate_schema(schema)
        ddl.ensure_materializable(schema)
    except LogTableError as exc:
        _fail(exc)
    typer.echo(f"{schema.key}: ok ({len(schema.fields)} fields, table {schema.table_name})")


@app.command()
def apply(
    path: Path = typer.Argument(..., help="Schema YAML file."),
    backend: Optional[str] = BackendOption,
) -> None:
    """
    Create or replace a schema in the backend and materialize its table.
    """
    try:
        with create_driver(backend=backend) as driver:
            stored = driver.create_schema(load_schema_file(path))
    except (LogTableError, ValueError) as exc:
        _fail(exc)
    typer.echo(f"{stored.key}: applied to {driver.name} (table {stored.table_name})")


@app.command("list")
def list_schemas(
    backend: Optional[str] = BackendOption,
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table."),
) -> None:
    """
    List schemas persisted in the backend.
    """
    try:
        with create_driver(backend=backend) as driver:
            schemas = driver.list_schemas()
    except (LogTableError, ValueError) as exc:
        _fail(exc)
    if not as_json:
        print_schemas(schemas, backend=driver.name)
        return
    payload = [
        {
            "schema": schema.key,
            "version": schema.version,
            "fields": [f.name for f in schema.fields],
            "updated_at": schema.updated_at.isoformat() if schema.updated_at else None,
        }
        for schema in schemas
    ]
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def describe(
    project: str = typer.Argument(...),
    table: str = typer.Argument(...),
    backend: Optional[str] = BackendOption,
) -> None:
    """
    Show the stored fields of one schema and its record count.
    """
    try:
        with create_driver(backend=backend) as driver:
            schema = driver.get_schema(project, table)
            count = driver.count_logs(project, table)
    except (LogTableError, ValueError) as exc:
        _fail(exc)
    print_fields(schema)
    typer.echo(f"{count} record(s) in {schema.table_name}")


@app.command()
def drop(
    project: str = typer.Argument(...),
    table: str = typer.Argument(...),
    backend: Optional[str] = BackendOption,
) -> None:
    """
    Delete a schema and drop its physical table.
    """
    try:
        with create_driver(backend=backend) as driver:
            driver.delete_schema(project, table)
    except (LogTableError, ValueError) as exc:
        _fail(exc)
    typer.echo(f"{project}:{table}: dropped")


@app.command()
def watch(
    directory: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="Schema directory to watch (default from SCHEMAS_DIR).",
    ),
    backend: Optional[str] = BackendOption,
) -> None:
    """
    Load every schema in a directory and keep the backend in sync until interrupted.
    """
    settings = get_settings()
    schemas_dir = directory or Path(settings.schemas_dir)
    try:
        with create_driver(settings, backend=backend) as driver:
            with SchemaManager(driver, schemas_dir) as manager:
                loaded = ", ".join(schema.key for schema in manager.list_schemas()) or "none"
                typer.echo(f"Watching {schemas_dir} on {driver.name}; loaded: {loaded}")
                try:
                    while True:
                        time.sleep(1)
                except KeyboardInterrupt:
                    typer.echo("Stopping watcher.")
    except (LogTableError, ValueError) as exc:
        _fail(exc)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
