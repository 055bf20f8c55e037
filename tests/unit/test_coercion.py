from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

import pytest

from logtable.domain.coercion import (
    INT64_MAX,
    Duration,
    coerce,
    coerce_field,
    duration_to_nanoseconds,
    parse_duration,
    validate_record,
)
from logtable.domain.models import Field, LogRecord, Schema
from logtable.errors import FieldValidationError, TypeMismatchError, UnsupportedTypeError

HALF_SECOND_NANOS = 500_000_000


@pytest.mark.parametrize(
    ("value", "field_type", "expected"),
    [
        ("hello", "string", "hello"),
        (42, "int", 42),
        (42.0, "int", 42),
        (" 17 ", "int", 17),
        ("1e3", "int", 1000),
        (3, "float", 3.0),
        ("2.5", "float", 2.5),
        (True, "bool", True),
        ("t", "bool", True),
        ("FALSE", "bool", False),
        ("0", "bool", False),
        ("12:30:05", "time", time(12, 30, 5)),
        ("500ms", "duration", timedelta(milliseconds=500)),
        ("2s", "duration", timedelta(seconds=2)),
        ("1h30m", "duration", timedelta(hours=1, minutes=30)),
        ("1.5h", "duration", timedelta(minutes=90)),
        (1.5, "duration", timedelta(seconds=1.5)),
        ({"a": [1, 2]}, "json", {"a": [1, 2]}),
        ("plain", "json", "plain"),
    ],
)
def test_coerce_accepts(value, field_type: str, expected) -> None:
    assert coerce(value, field_type) == expected


def test_coerce_datetime_requires_offset() -> None:
    parsed = coerce("2024-05-01T12:00:00Z", "datetime")
    assert parsed == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    shifted = coerce("2024-05-01T14:00:00+02:00", "datetime")
    assert shifted == parsed

    with pytest.raises(TypeMismatchError):
        coerce("2024-05-01T12:00:00", "datetime")
    with pytest.raises(TypeMismatchError):
        coerce("2024-05-01", "datetime")


@pytest.mark.parametrize(
    ("value", "field_type"),
    [
        (1, "string"),
        (True, "int"),
        (1.5, "int"),
        ("abc", "int"),
        (INT64_MAX + 1, "int"),
        ("x", "float"),
        (1, "bool"),
        ("yes", "bool"),
        ("25:00:00", "time"),
        ("12:00", "time"),
        ("soon", "duration"),
        ({1, 2}, "json"),
        ([], "datetime"),
    ],
)
def test_coerce_rejects(value, field_type: str) -> None:
    with pytest.raises(TypeMismatchError):
        coerce(value, field_type)


@pytest.mark.parametrize("field_type", ["object", "array", "decimal"])
def test_coerce_unsupported_types(field_type: str) -> None:
    with pytest.raises(UnsupportedTypeError):
        coerce({}, field_type)


@pytest.mark.parametrize(
    ("value", "field_type"),
    [
        ("42", "int"),
        ("2.5", "float"),
        ("true", "bool"),
        ("2024-05-01T12:00:00+00:00", "datetime"),
        ("08:15:00", "time"),
        ("500ms", "duration"),
        ({"k": "v"}, "rest"),
    ],
)
def test_coercion_is_idempotent(value, field_type: str) -> None:
    once = coerce(value, field_type)
    assert coerce(once, field_type) == once


def test_duration_500ms_is_500_million_nanoseconds() -> None:
    assert duration_to_nanoseconds(coerce("500ms", "duration")) == HALF_SECOND_NANOS


def test_parse_duration_general_forms() -> None:
    assert parse_duration("0") == timedelta(0)
    assert parse_duration("-2m") == timedelta(minutes=-2)
    assert parse_duration("300us") == timedelta(microseconds=300)
    assert duration_to_nanoseconds(parse_duration("1m30s")) == 90 * 1_000_000_000


@pytest.mark.parametrize(
    ("text", "nanos"),
    [
        ("10ns", 10),
        ("1500ns", 1500),
        ("1.5us", 1500),
        ("-1500ns", -1500),
        ("1h0.5ns", 3_600_000_000_000),
        ("0.1s", 100_000_000),
    ],
)
def test_duration_keeps_nanosecond_precision(text: str, nanos: int) -> None:
    value = coerce(text, "duration")
    assert duration_to_nanoseconds(value) == nanos
    assert coerce(value, "duration") is value


def test_sub_microsecond_durations_are_distinct() -> None:
    assert coerce("10ns", "duration") != coerce("20ns", "duration")
    assert coerce("10ns", "duration") != timedelta(0)
    assert coerce("1000ns", "duration") == timedelta(microseconds=1)
    assert Duration(1500) == Duration.from_timedelta(Duration(1500))


@pytest.mark.parametrize(
    "value",
    [1e20, 10**11, -(10**11), "3000000h", "-3000000h", "2562048h", timedelta(days=200_000)],
)
def test_duration_outside_int64_nanoseconds_is_rejected(value) -> None:
    with pytest.raises(TypeMismatchError, match="out of 64-bit"):
        coerce(value, "duration")


def test_duration_at_int64_edge_is_accepted() -> None:
    assert duration_to_nanoseconds(coerce(f"{INT64_MAX}ns", "duration")) == INT64_MAX


def test_coerce_field_names_field_and_checks_constraints() -> None:
    field = Field(name="code", type="string", min_length=2, max_length=4, pattern=r"[A-Z]+")
    assert coerce_field(field, "AB") == "AB"

    with pytest.raises(FieldValidationError, match="code"):
        coerce_field(field, "A")
    with pytest.raises(FieldValidationError, match="pattern"):
        coerce_field(field, "ab")

    with pytest.raises(TypeMismatchError) as excinfo:
        coerce_field(field, 5)
    assert excinfo.value.field == "code"
    assert str(excinfo.value).startswith("field code:")

    bounded = Field(name="status", type="int", min_value=100, max_value=599)
    assert coerce_field(bounded, "200") == 200
    with pytest.raises(FieldValidationError):
        coerce_field(bounded, 600)


def _schema(*fields: Field) -> Schema:
    return Schema(project="test", table="logs", fields=list(fields))


def test_validate_record_reports_missing_required_field() -> None:
    schema = _schema(Field(name="user_id", type="string", required=True))

    with pytest.raises(FieldValidationError) as excinfo:
        validate_record(schema, LogRecord(fields={}))

    assert excinfo.value.field == "user_id"
    assert "user_id" in str(excinfo.value)
    assert validate_record(schema, LogRecord(fields={"user_id": "u1"})) == {"user_id": "u1"}


def test_validate_record_applies_defaults_and_skips_absent_optionals() -> None:
    schema = _schema(
        Field(name="cached", type="bool", default="false"),
        Field(name="status", type="int"),
    )
    assert validate_record(schema, LogRecord()) == {"cached": False}


def test_validate_record_reads_declared_implicit_fields_from_record() -> None:
    schema = _schema(Field(name="level", type="string", required=True))
    assert validate_record(schema, LogRecord(level="warn")) == {"level": "warn"}


def test_rest_field_absorbs_undeclared_fields() -> None:
    schema = _schema(Field(name="user_id", type="string"), Field(name="extra", type="rest"))

    values = validate_record(
        schema,
        LogRecord(fields={"user_id": "u1", "browser": "firefox", "extra": {"ab": 1}}),
    )

    assert values["user_id"] == "u1"
    assert values["extra"] == {"ab": 1, "browser": "firefox"}
    assert validate_record(schema, LogRecord(fields={"user_id": "u2"}))["extra"] == {}


def test_rest_field_must_be_mapping_when_extras_exist() -> None:
    schema = _schema(Field(name="extra", type="rest"))
    with pytest.raises(TypeMismatchError):
        validate_record(schema, LogRecord(fields={"extra": "text", "other": 1}))


def test_undeclared_fields_are_dropped_without_rest_field() -> None:
    schema = _schema(Field(name="user_id", type="string"))
    assert validate_record(schema, LogRecord(fields={"user_id": "u1", "noise": 1})) == {
        "user_id": "u1"
    }
