"""
Synthetic log generation for logtable.

Builds pseudo-random records that match a schema file (deterministic for a
given seed) and writes them through a storage driver in batches.
"""

from __future__ import annotations

import random
import sys
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import typer

from logtable.config import get_settings
from logtable.domain.document import load_schema_file
from logtable.domain.models import Field, FieldType, LogRecord, Schema
from logtable.errors import LogTableError
from logtable.storage import create_driver
from logtable.utils.logging import configure_logging

app = typer.Typer(help="Generate synthetic log records for a schema and insert them.")

LEVELS = ["debug", "info", "info", "info", "warning", "error"]
WORDS = ["alpha", "beta", "gamma", "delta", "login", "checkout", "timeout", "retry"]


def _sample_value(field: Field, rng: random.Random, now: datetime) -> Any:
    kind = field.field_type
    if kind == FieldType.STRING:
        return "-".join(rng.choice(WORDS) for _ in range(2))
    if kind == FieldType.INT:
        low = int(field.min_value) if field.min_value is not None else 0
        high = int(field.max_value) if field.max_value is not None else 1_000_000
        return rng.randint(low, high)
    if kind == FieldType.FLOAT:
        low = field.min_value if field.min_value is not None else 0.0
        high = field.max_value if field.max_value is not None else 10_000.0
        return round(rng.uniform(low, high), 3)
    if kind == FieldType.BOOL:
        return rng.choice([True, False, "true", "0"])
    if kind == FieldType.DATETIME:
        return (now - timedelta(seconds=rng.randint(0, 86_400))).isoformat()
    if kind == FieldType.TIME:
        return f"{rng.randint(0, 23):02d}:{rng.randint(0, 59):02d}:{rng.randint(0, 59):02d}"
    if kind == FieldType.DURATION:
        return rng.choice([f"{rng.randint(1, 999)}ms", f"{rng.randint(1, 59)}s", "1h30m"])
    if kind in (FieldType.JSON, FieldType.REST):
        return {"session": rng.randint(1, 1_000_000), "tag": rng.choice(WORDS)}
    return None


def generate_records(schema: Schema, rows: int, seed: int) -> list[LogRecord]:
    """Records that satisfy every field of `schema`; undeclared extras feed the rest field."""
    rng = random.Random(seed)
    now = datetime.now(UTC)
    records = []
    for i in range(rows):
        fields = {
            f.name: _sample_value(f, rng, now)
            for f in schema.fields
            if not f.is_rest and (f.required or rng.random() < 0.8)
        }
        if schema.rest_field() is not None:
            fields["extra_seq"] = i
        records.append(
            LogRecord(
                project=schema.project,
                table=schema.table,
                level=rng.choice(LEVELS),
                message=f"synthetic event {i}",
                timestamp=now - timedelta(milliseconds=rng.randint(0, 3_600_000)),
                ip=f"10.0.{rng.randint(0, 255)}.{rng.randint(1, 254)}",
                fields=fields,
            )
        )
    return records


@app.command()
def main(
    schema_file: Path = typer.Argument(..., help="Schema YAML file to generate records for."),
    rows: int = typer.Option(
        1_000,
        "--rows",
        "-r",
        help="Number of records to generate.",
    ),
    batch_size: int = typer.Option(
        500,
        "--batch-size",
        "-b",
        help="Records per batch insert.",
    ),
    seed: int = typer.Option(
        42,
        "--seed",
        help="Deterministic RNG seed.",
    ),
    backend: str | None = typer.Option(
        None,
        "--backend",
        help="Storage backend override (default from STORAGE_BACKEND).",
    ),
    apply_schema: bool = typer.Option(
        True,
        "--apply/--no-apply",
        help="Create or replace the schema before inserting.",
    ),
) -> None:
    """
    Generate synthetic records and batch-insert them through a storage driver.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    start = time.perf_counter()
    try:
        schema = load_schema_file(schema_file)
        records = generate_records(schema, rows=rows, seed=seed)
        typer.echo(f"Generated {rows:,} records for {schema.key} (seed={seed})")

        with create_driver(settings, backend=backend) as driver:
            if apply_schema:
                driver.create_schema(schema)
            for offset in range(0, len(records), batch_size):
                driver.batch_insert_logs(
                    schema.project, schema.table, records[offset : offset + batch_size]
                )
    except LogTableError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)

    duration = time.perf_counter() - start
    typer.echo(
        f"Inserted {rows:,} records in {duration:.2f}s "
        f"({rows / duration if duration else rows:,.0f} records/s)"
    )


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
