from __future__ import annotations

import json
import logging
import sys

from deadswitch.logging_context import with_logging_context, with_request_context
from deadswitch.logging_utils import JsonFormatter, setup_logging


def _record(msg: str = "hello", exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="deadswitch.test",
        level=logging.ERROR if exc_info else logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        rendered = formatter.format(_record("Tick failed", exc_info=sys.exc_info()))

    payload = json.loads(rendered)
    assert payload["message"] == "Tick failed"
    assert payload["level"] == "ERROR"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_json_formatter_merges_extra_fields_and_context() -> None:
    formatter = JsonFormatter()
    record = _record("confirm_ok")
    record.extra = {"next_check_at": 1_700_000_610}

    with with_logging_context(run_id="run-1", command="serve"):
        with with_request_context("req-1", "confirm", "203.0.113.9"):
            payload = json.loads(formatter.format(record))

    assert payload["next_check_at"] == 1_700_000_610
    assert payload["run_id"] == "run-1"
    assert payload["command"] == "serve"
    assert payload["request_id"] == "req-1"
    assert payload["action"] == "confirm"
    assert payload["client_id"] == "203.0.113.9"


def test_context_is_reset_after_block() -> None:
    formatter = JsonFormatter()
    with with_logging_context(command="tick", action=None):
        inside = json.loads(formatter.format(_record()))
    outside = json.loads(formatter.format(_record()))

    assert inside["command"] == "tick"
    assert "action" not in inside
    assert "command" not in outside


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_invalid_level_falls_back_to_info() -> None:
    setup_logging("CHATTY")

    assert logging.getLogger().level == logging.INFO


def test_setup_logging_quiets_http_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("uvicorn.access").level == logging.WARNING


def test_setup_logging_debug_enables_http_debug() -> None:
    setup_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.DEBUG


def test_setup_logging_respects_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("UVICORN_ACCESS_LOG_LEVEL", "INFO")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("uvicorn.access").level == logging.INFO


def test_setup_logging_installs_single_json_handler() -> None:
    setup_logging("INFO")
    setup_logging("INFO")

    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, JsonFormatter)
