"""
Type coercion and record validation.

`coerce` turns one untyped input value (decoded JSON, a structured log entry,
a form value) into the canonical in-memory value for a declared field type:

    string    -> str
    int       -> int (signed 64-bit)
    float     -> float
    bool      -> bool
    datetime  -> timezone-aware datetime
    time      -> datetime.time
    duration  -> Duration, a timedelta exact to the nanosecond (signed 64-bit)
    json/rest -> the value itself, once proven JSON-serializable

Coercion is idempotent: feeding a canonical value back in returns it unchanged.

`validate_record` applies `coerce` to a whole LogRecord against a Schema,
enforcing required fields and routing undeclared fields into the rest field.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from logtable.domain.models import IMPLICIT_FIELDS, Field, FieldType, LogRecord, Schema
from logtable.errors import FieldValidationError, TypeMismatchError, UnsupportedTypeError
from logtable.utils.logging import get_logger

log = get_logger(__name__)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

# strconv.ParseBool spellings
_TRUE_STRINGS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_STRINGS = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d):([0-5]\d)$")

_NUMBER = r"[+-]?(?:\d+\.?\d*|\.\d+)"
# Checked in order: "ms" must win over "m" and "s".
_SUFFIX_RULES = ("ms", "s", "m", "h")
_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART_RE = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _mismatch(expected: str, value: Any) -> TypeMismatchError:
    return TypeMismatchError(f"expected {expected}, got {type(value).__name__}")


def _coerce_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    raise _mismatch("string", value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise _mismatch("int", value)
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise TypeMismatchError(f"expected int, got non-integral number {value!r}")
        result = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            result = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                raise TypeMismatchError(f"expected int, got non-numeric string {value!r}") from None
            if not math.isfinite(number) or not number.is_integer():
                raise TypeMismatchError(f"expected int, got non-integral number {value!r}")
            result = int(number)
    else:
        raise _mismatch("int", value)

    if not INT64_MIN <= result <= INT64_MAX:
        raise TypeMismatchError(f"int value {result} out of 64-bit range")
    return result


def _coerce_float(value: Any) -> float:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise TypeMismatchError(f"expected float, got non-numeric string {value!r}") from None
    raise _mismatch("float", value)


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value in _TRUE_STRINGS:
            return True
        if value in _FALSE_STRINGS:
            return False
        raise TypeMismatchError(f"expected bool, got unparseable string {value!r}")
    raise _mismatch("bool", value)


def _coerce_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        # RFC3339 requires a date, a "T" (or space) and an offset.
        if len(text) < 20 or text[10] not in "Tt ":
            raise TypeMismatchError(f"invalid datetime {value!r}, expected RFC3339")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise TypeMismatchError(f"invalid datetime {value!r}, expected RFC3339") from None
        if parsed.tzinfo is None:
            raise TypeMismatchError(f"invalid datetime {value!r}, RFC3339 requires an offset")
        return parsed
    raise _mismatch("datetime", value)


def _coerce_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        match = _TIME_RE.match(value)
        if match is None:
            raise TypeMismatchError(f"invalid time {value!r}, expected HH:MM:SS")
        hour, minute, second = (int(part) for part in match.groups())
        return time(hour, minute, second)
    raise _mismatch("time", value)


class Duration(timedelta):
    """
    A timedelta that keeps nanosecond precision.

    `timedelta` resolves to microseconds. The exact nanosecond count is kept
    next to it so integer columns store what was parsed, while drivers that
    bind native intervals keep seeing a plain timedelta.
    """

    def __new__(cls, nanoseconds: int = 0) -> "Duration":
        self = super().__new__(cls, microseconds=nanoseconds // 1_000)
        self._nanos = nanoseconds
        return self

    @classmethod
    def from_timedelta(cls, value: timedelta) -> "Duration":
        return cls(duration_to_nanoseconds(value))

    @property
    def nanoseconds(self) -> int:
        return self._nanos

    def __eq__(self, other: object) -> bool:
        if isinstance(other, timedelta):
            return self._nanos == duration_to_nanoseconds(other)
        return NotImplemented

    def __ne__(self, other: object) -> bool:
        if isinstance(other, timedelta):
            return self._nanos != duration_to_nanoseconds(other)
        return NotImplemented

    def __hash__(self) -> int:
        # Whole microseconds hash like the equal plain timedelta.
        if self._nanos % 1_000:
            return hash(self._nanos)
        return super().__hash__()

    def __repr__(self) -> str:
        return f"Duration(nanoseconds={self._nanos})"

    def __reduce__(self):
        return (type(self), (self._nanos,))


def _checked_nanos(nanos: int, source: Any) -> int:
    if not INT64_MIN <= nanos <= INT64_MAX:
        raise TypeMismatchError(f"duration {source!r} out of 64-bit nanosecond range")
    return nanos


def parse_duration(text: str) -> Duration:
    """
    Parse a duration string to an exact nanosecond `Duration`.

    Explicit suffix rules come first: a plain number followed by `ms`, `s`,
    `m` or `h`. Anything else goes through the general parser, which accepts a
    signed sequence of number+unit pairs (`1h30m`, `-1.5h`, `300us`, `10ns`) or
    a bare `0`. Fractions finer than a nanosecond are truncated.

    Raises
    ------
    TypeMismatchError
        The text is not a duration, or exceeds the signed 64-bit nanosecond range.
    """
    source = text
    text = text.strip()
    for suffix in _SUFFIX_RULES:
        if text.endswith(suffix):
            number = text[: -len(suffix)]
            if re.fullmatch(_NUMBER, number):
                nanos = int(Decimal(number) * _UNIT_NANOS[suffix])
                return Duration(_checked_nanos(nanos, source))
    return Duration(_checked_nanos(_parse_duration_nanos(text), source))


def _parse_duration_nanos(text: str) -> int:
    if not text:
        raise TypeMismatchError("invalid duration ''")
    sign = 1
    body = text
    if body[0] in "+-":
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return 0

    total = Decimal(0)
    pos = 0
    while pos < len(body):
        match = _DURATION_PART_RE.match(body, pos)
        if match is None:
            raise TypeMismatchError(f"invalid duration {text!r}")
        total += Decimal(match.group(1)) * _UNIT_NANOS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise TypeMismatchError(f"invalid duration {text!r}")
    return sign * int(total)


def _coerce_duration(value: Any) -> Duration:
    if isinstance(value, Duration):
        return value
    if isinstance(value, timedelta):
        return Duration(_checked_nanos(duration_to_nanoseconds(value), value))
    if _is_number(value):
        if isinstance(value, float):
            if not math.isfinite(value):
                raise TypeMismatchError(f"invalid duration {value!r}")
            # repr keeps the shortest decimal form, so 0.1 reads as 100ms.
            nanos = int(Decimal(repr(value)) * _UNIT_NANOS["s"])
        else:
            nanos = value * _UNIT_NANOS["s"]
        return Duration(_checked_nanos(nanos, value))
    if isinstance(value, str):
        return parse_duration(value)
    raise _mismatch("duration", value)


def duration_to_nanoseconds(value: timedelta) -> int:
    """Integer nanoseconds, the storage form of durations in integer columns."""
    if isinstance(value, Duration):
        return value.nanoseconds
    return (value.days * 86_400 + value.seconds) * 1_000_000_000 + value.microseconds * 1_000


def _coerce_json(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise TypeMismatchError(f"value is not JSON-serializable: {exc}") from exc
    return value


_COERCERS = {
    FieldType.STRING: _coerce_string,
    FieldType.INT: _coerce_int,
    FieldType.FLOAT: _coerce_float,
    FieldType.BOOL: _coerce_bool,
    FieldType.DATETIME: _coerce_datetime,
    FieldType.TIME: _coerce_time,
    FieldType.DURATION: _coerce_duration,
    FieldType.JSON: _coerce_json,
    FieldType.REST: _coerce_json,
}


def coerce(value: Any, field_type: Any) -> Any:
    """
    Convert `value` to the canonical representation of `field_type`.

    Raises
    ------
    UnsupportedTypeError
        The type is unknown, or is `object`/`array` (representable in a schema
        but without a defined coercion).
    TypeMismatchError
        The value cannot be read as the requested type.
    """
    try:
        kind = FieldType(field_type)
    except ValueError:
        raise UnsupportedTypeError(f"unsupported field type: {field_type}") from None
    coercer = _COERCERS.get(kind)
    if coercer is None:
        raise UnsupportedTypeError(f"field type {kind.value} has no coercion rule")
    return coercer(value)


def _check_constraints(field: Field, value: Any) -> None:
    if isinstance(value, str):
        if field.min_length is not None and len(value) < field.min_length:
            raise FieldValidationError(
                f"field {field.name} shorter than {field.min_length}", field=field.name
            )
        if field.max_length is not None and len(value) > field.max_length:
            raise FieldValidationError(
                f"field {field.name} longer than {field.max_length}", field=field.name
            )
        if field.pattern is not None and re.fullmatch(field.pattern, value) is None:
            raise FieldValidationError(
                f"field {field.name} does not match pattern {field.pattern!r}", field=field.name
            )
    elif _is_number(value):
        if field.min_value is not None and value < field.min_value:
            raise FieldValidationError(
                f"field {field.name} below minimum {field.min_value}", field=field.name
            )
        if field.max_value is not None and value > field.max_value:
            raise FieldValidationError(
                f"field {field.name} above maximum {field.max_value}", field=field.name
            )


def coerce_field(field: Field, value: Any) -> Any:
    """Coerce one value for a declared field, naming the field in any error."""
    try:
        result = coerce(value, field.type)
    except FieldValidationError as exc:
        exc.field = field.name
        exc.message = f"field {field.name}: {exc.message}"
        raise
    _check_constraints(field, result)
    return result


def _raw_value(record: LogRecord, name: str) -> Optional[Any]:
    if name in record.fields:
        return record.fields[name]
    if name in IMPLICIT_FIELDS:
        return getattr(record, name)
    return None


def validate_record(schema: Schema, record: LogRecord) -> Dict[str, Any]:
    """
    Coerce and validate one record against a schema.

    Returns a map of declared field name to canonical value, containing only
    fields that have a value. The rest field, when declared, is always present
    and collects every input field the schema does not declare.
    """
    values: Dict[str, Any] = {}
    rest = schema.rest_field()

    for field in schema.fields:
        if field.is_rest:
            continue
        raw = _raw_value(record, field.name)
        if raw is None:
            raw = field.default
        if raw is None:
            if field.required and field.name not in IMPLICIT_FIELDS:
                raise FieldValidationError(
                    f"missing required field: {field.name}", field=field.name
                )
            continue
        values[field.name] = coerce_field(field, raw)

    declared = set(schema.field_names())
    extras = {name: value for name, value in record.fields.items() if name not in declared}

    if rest is not None:
        explicit = record.fields.get(rest.name)
        if isinstance(explicit, Mapping):
            collected: Any = {**explicit, **extras}
        elif explicit is None:
            collected = extras
        elif extras:
            raise TypeMismatchError(
                f"field {rest.name}: rest field must be a mapping to absorb undeclared fields",
                field=rest.name,
            )
        else:
            collected = explicit
        values[rest.name] = coerce_field(rest, collected)
    elif extras:
        log.debug(
            "Dropping undeclared fields",
            extra={"schema": schema.key, "dropped": sorted(extras)},
        )

    return values


__all__ = [
    "Duration",
    "INT64_MAX",
    "INT64_MIN",
    "coerce",
    "coerce_field",
    "duration_to_nanoseconds",
    "parse_duration",
    "validate_record",
]
