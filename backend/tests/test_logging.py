from __future__ import annotations

import io
import json
import logging
from pathlib import Path
from typing import Any, Iterator

import pytest
from pythonjsonlogger import jsonlogger

from routegraph import logging_utils
from routegraph.errors import ErrorSeverity
from routegraph.logging_utils import _parse_level, _resolve_log_dir, get_logger, level_for_severity, log_event


@pytest.fixture
def captured() -> Iterator[io.StringIO]:
    logger = get_logger()
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(jsonlogger.JsonFormatter("%(levelname)s %(message)s"))
    logger.addHandler(handler)
    try:
        yield stream
    finally:
        logger.removeHandler(handler)


def _last_record(stream: io.StringIO) -> dict[str, Any]:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_log_event_emits_structured_json(captured: io.StringIO) -> None:
    log_event("graph_published", version=7, data_mode="REAL")

    record = _last_record(captured)
    assert record["message"] == "graph_published"
    assert record["event"] == "graph_published"
    assert record["levelname"] == "INFO"
    assert record["version"] == 7
    assert record["data_mode"] == "REAL"


@pytest.mark.parametrize(
    ("severity", "levelname"),
    [
        (ErrorSeverity.WARNING, "WARNING"),
        (ErrorSeverity.RECOVERABLE, "WARNING"),
        (ErrorSeverity.CRITICAL, "ERROR"),
    ],
)
def test_severity_selects_log_level(captured: io.StringIO, severity: ErrorSeverity, levelname: str) -> None:
    log_event("dataset_load_error", severity=severity, source="cache")

    record = _last_record(captured)
    assert record["levelname"] == levelname
    assert record["severity"] == severity.value
    assert record["source"] == "cache"


def test_fields_named_like_record_attributes_are_renamed(captured: io.StringIO) -> None:
    log_event("stage_note", name="fetch_stops", message="hello", module="pipeline")

    record = _last_record(captured)
    assert record["message"] == "stage_note"
    assert record["field_name"] == "fetch_stops"
    assert record["field_message"] == "hello"
    assert record["field_module"] == "pipeline"


def test_level_for_severity() -> None:
    assert level_for_severity("critical") == logging.ERROR
    assert level_for_severity(ErrorSeverity.WARNING) == logging.WARNING
    assert level_for_severity(None) == logging.INFO
    assert level_for_severity("unknown") == logging.INFO


def test_get_logger_configures_handlers_once() -> None:
    first = get_logger()
    count = len(first.handlers)

    assert get_logger() is first
    assert len(first.handlers) == count
    assert first.propagate is False
    assert logging_utils.LOGGER in (None, first)


def test_parse_level_falls_back_to_info() -> None:
    assert _parse_level("debug") == logging.DEBUG
    assert _parse_level("not-a-level") == logging.INFO


def test_resolve_log_dir_prefers_configured_out_dir(tmp_path: Path) -> None:
    log_dir = _resolve_log_dir(str(tmp_path / "out"))

    assert log_dir == tmp_path / "out" / "logs"
    assert log_dir.is_dir()
    assert not (log_dir / ".writetest").exists()
