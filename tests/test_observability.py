from __future__ import annotations

import json
import logging
import sys

from telemetry_dashboard.observability import JsonLogFormatter, ServiceContextFilter, configure_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "telemetry_dashboard.services.scheduler", logging.WARNING, __file__, 10, "Tick failed during %s", ("fetch",), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    ServiceContextFilter("dashboard-test").filter(record)
    return record


def test_point_and_stage_are_top_level_only() -> None:
    payload = json.loads(JsonLogFormatter().format(_record(point="rig", stage="fetch", attempt=3)))

    assert payload["message"] == "Tick failed during fetch"
    assert payload["level"] == "WARNING"
    assert payload["service"] == "dashboard-test"
    assert payload["point"] == "rig"
    assert payload["stage"] == "fetch"
    assert payload["extra"] == {"attempt": 3}
    assert "request_id" not in payload


def test_record_without_context_has_no_extra() -> None:
    payload = json.loads(JsonLogFormatter().format(_record()))

    assert "extra" not in payload
    assert "point" not in payload


def test_exception_text_is_included() -> None:
    try:
        raise RuntimeError("socket reset")
    except RuntimeError:
        record = _record(point="rig")
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonLogFormatter().format(record))
    assert "RuntimeError: socket reset" in payload["exception"]


def test_configure_logging_quiets_httpx_polling() -> None:
    configure_logging("dashboard-test", "DEBUG")

    assert isinstance(logging.getLogger().handlers[0].formatter, JsonLogFormatter)
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("uvicorn.access").propagate is False
