from __future__ import annotations

from typing import List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from logtable.domain.models import Field, Schema


def _format_timestamp(schema: Schema) -> str:
    if schema.updated_at is None:
        return "-"
    return schema.updated_at.strftime("%Y-%m-%d %H:%M:%S")


def _constraints(field: Field) -> str:
    parts = []
    if field.min_length is not None:
        parts.append(f"len>={field.min_length}")
    if field.max_length is not None:
        parts.append(f"len<={field.max_length}")
    if field.min_value is not None:
        parts.append(f">={field.min_value}")
    if field.max_value is not None:
        parts.append(f"<={field.max_value}")
    if field.pattern is not None:
        parts.append(f"~{field.pattern}")
    return " ".join(parts)


def print_schemas(schemas: List[Schema], backend: str, console: Optional[Console] = None) -> None:
    """
    Render persisted schemas as a rich table, sorted by key.
    """
    console = console or Console()

    if not schemas:
        console.print(f"[yellow]No schemas stored in {backend}.[/yellow]")
        return

    table = Table(
        title=f"Schemas on {backend}",
        box=box.ROUNDED,
        caption=f"{len(schemas)} schema(s)",
    )
    table.add_column("Schema", style="cyan", no_wrap=True)
    table.add_column("Table", style="magenta", no_wrap=True)
    table.add_column("Version", justify="right", style="blue")
    table.add_column("Fields", justify="right", style="green")
    table.add_column("Indexed", style="bold green")
    table.add_column("Updated (UTC)", style="yellow")

    for schema in sorted(schemas, key=lambda s: s.key):
        indexed = ", ".join(f.name for f in schema.fields if f.indexed) or "-"
        table.add_row(
            schema.key,
            schema.table_name,
            schema.version or "-",
            str(len(schema.fields)),
            indexed,
            _format_timestamp(schema),
        )

    console.print(table)


def print_fields(schema: Schema, console: Optional[Console] = None) -> None:
    """
    Render the declared fields of one schema in declaration order.
    """
    console = console or Console()

    title = schema.key
    if schema.description:
        title = f"{title}\n[dim]{schema.description}[/dim]"

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Type", style="magenta")
    table.add_column("Required", justify="center", style="red")
    table.add_column("Indexed", justify="center", style="green")
    table.add_column("Default", style="blue")
    table.add_column("Constraints", style="yellow")

    for field in schema.fields:
        table.add_row(
            field.name,
            field.type,
            "yes" if field.required else "",
            "yes" if field.indexed else "",
            "" if field.default is None else repr(field.default),
            _constraints(field),
        )

    console.print(table)


__all__ = ["print_fields", "print_schemas"]
