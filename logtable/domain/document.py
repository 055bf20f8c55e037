"""
YAML document format for schema definitions.

A schema file holds exactly one document:

    project: shop
    table: orders
    description: Checkout events
    fields:
      - name: user_id
        type: string
        required: true
        indexed: true
      - name: extra
        type: rest

Parsing does not run `validate_schema`; callers decide when to validate.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from logtable.domain.models import Field, Schema
from logtable.errors import ParseError

# Field keys in the order they are written out.
_FIELD_KEYS = (
    "name",
    "type",
    "required",
    "indexed",
    "description",
    "default",
    "item_type",
    "max_length",
    "min_length",
    "max_value",
    "min_value",
    "pattern",
)


def schema_from_document(data: Union[bytes, str], source: Optional[str] = None) -> Schema:
    """
    Parse a YAML schema document.

    Raises
    ------
    ParseError
        The bytes are not valid YAML, the document is not a mapping, or a value
        has the wrong shape (e.g. `fields` is not a list).
    """
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ParseError(f"invalid YAML: {exc}", source=source) from exc

    if not isinstance(raw, dict):
        raise ParseError("schema document must be a mapping", source=source)

    try:
        return Schema.model_validate(raw)
    except ValidationError as exc:
        raise ParseError(f"invalid schema document: {exc}", source=source) from exc


def _field_to_dict(field: Field) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in _FIELD_KEYS:
        value = getattr(field, key)
        if key in ("name", "type", "required", "indexed") or value is not None:
            out[key] = value
    if field.fields:
        out["fields"] = [_field_to_dict(sub) for sub in field.fields]
    return out


def schema_to_document(schema: Schema) -> bytes:
    """
    Render a schema as YAML, fields in declared order.

    Timestamps are populated only on the first save: when `created_at` is unset
    both timestamps are written as "now", otherwise they are written unchanged.
    """
    created_at = schema.created_at
    updated_at = schema.updated_at
    if created_at is None:
        created_at = datetime.now(timezone.utc)
        updated_at = created_at

    doc: Dict[str, Any] = {
        "project": schema.project,
        "table": schema.table,
        "description": schema.description,
        "version": schema.version,
        "fields": [_field_to_dict(field) for field in schema.fields],
        "created_at": created_at.isoformat(),
        "updated_at": updated_at.isoformat() if updated_at else created_at.isoformat(),
    }
    return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True).encode("utf-8")


def load_schema_file(path: Union[str, Path]) -> Schema:
    """Read and parse one schema file."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ParseError(f"cannot read schema file: {exc}", source=str(path)) from exc
    return schema_from_document(data, source=str(path))


def save_schema_file(schema: Schema, path: Union[str, Path]) -> Schema:
    """
    Write a schema file, refreshing `updated_at` (and `created_at` on first save).

    Returns the stamped copy that was written.
    """
    now = datetime.now(timezone.utc)
    stamped = schema.model_copy(
        update={"updated_at": now, "created_at": schema.created_at or now}
    )
    Path(path).write_bytes(schema_to_document(stamped))
    return stamped


__all__ = [
    "load_schema_file",
    "save_schema_file",
    "schema_from_document",
    "schema_to_document",
]
