from __future__ import annotations

import json
import logging
import sys

from logtable.utils.logging import JsonFormatter, _json_formatter, configure_logging

EXPECTED_FIELDS = 3
EXPECTED_INDEX = 2


def _record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_json_formatter_promotes_standard_extra_fields() -> None:
    record = _record()
    record.fields = EXPECTED_FIELDS
    record.schema = "shop:orders"

    payload = json.loads(_json_formatter(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "test.logger"
    assert payload["message"] == "hello"
    assert payload["fields"] == EXPECTED_FIELDS
    assert payload["schema"] == "shop:orders"
    assert "pathname" not in payload


def test_json_formatter_supports_nested_extra_field() -> None:
    record = _record()
    record.extra = {"index": EXPECTED_INDEX}

    payload = json.loads(_json_formatter(record))

    assert payload["index"] == EXPECTED_INDEX


def test_json_formatter_includes_exception_text() -> None:
    try:
        raise ValueError("bad schema")
    except ValueError:
        record = logging.LogRecord(
            name="test.logger",
            level=logging.ERROR,
            pathname=__file__,
            lineno=1,
            msg="failed",
            args=(),
            exc_info=sys.exc_info(),
        )

    payload = json.loads(JsonFormatter().format(record))

    assert "ValueError: bad schema" in payload["exc_info"]


def test_configure_logging_installs_selected_formatter() -> None:
    root = logging.getLogger()
    previous_handlers = list(root.handlers)
    previous_level = root.level
    try:
        configure_logging(level="WARNING", json_logs=True)
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)
