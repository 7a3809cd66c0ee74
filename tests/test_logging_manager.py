from __future__ import annotations

import json
import logging

from book_aggregator import logging_manager as log_mgr


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("book_aggregator.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_log_context_nests_and_restores():
    with log_mgr.log_context(run_id="run-1"):
        with log_mgr.log_context(batch=2, object_key=None):
            assert log_mgr.get_log_context() == {"run_id": "run-1", "batch": 2}
        assert log_mgr.get_log_context() == {"run_id": "run-1"}
    assert log_mgr.get_log_context() == {}


def test_context_values_reach_the_json_payload():
    record = _record(event="migration.file.failed", error_type="FormatError")
    with log_mgr.log_context(run_id="run-1", object_key="books/v1/a.json"):
        assert log_mgr.LogContextFilter().filter(record)

    payload = json.loads(log_mgr.JSONLogFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["run_id"] == "run-1"
    assert payload["object_key"] == "books/v1/a.json"
    assert payload["event"] == "migration.file.failed"
    assert payload["extra"] == {"error_type": "FormatError"}


def test_explicit_extra_wins_over_context():
    record = _record(object_key="explicit")
    with log_mgr.log_context(object_key="from-context"):
        log_mgr.LogContextFilter().filter(record)
    assert record.object_key == "explicit"


def test_console_suppress_filter():
    console = log_mgr.ConsoleSuppressFilter()
    assert console.filter(_record())
    assert not console.filter(_record(console_suppress=True))


def test_debug_flag_lowers_the_level():
    try:
        assert log_mgr.configure_logging_level(debug_enabled=True) == logging.DEBUG
        assert log_mgr.get_logger().level == logging.DEBUG
    finally:
        log_mgr.configure_logging_level()
