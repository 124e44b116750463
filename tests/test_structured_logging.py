from __future__ import annotations

import logging

from deadswitch.obs.logging import get_logger, run_id, safe_log


class _ExplodingHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        raise RuntimeError("disk full")


def test_component_logger_attaches_fields(caplog) -> None:
    logger = get_logger("deadswitch.tests.obs")
    with caplog.at_level(logging.INFO):
        logger.info("tick_completed", messages_sent=2)

    record = caplog.records[-1]
    assert record.getMessage() == "tick_completed"
    payload = getattr(record, "extra")
    assert payload["messages_sent"] == 2
    assert payload["run_id"] == run_id()


def test_error_with_exc_info_keeps_traceback(caplog) -> None:
    logger = get_logger("deadswitch.tests.obs")
    with caplog.at_level(logging.ERROR):
        try:
            raise OSError("no space left")
        except OSError:
            logger.error("web_transition_failed", exc_info=True, code="E_CONFIRM_FAIL_00000000")

    record = caplog.records[-1]
    assert record.exc_info is not None
    assert getattr(record, "extra")["code"] == "E_CONFIRM_FAIL_00000000"


def test_failing_handler_never_reaches_caller() -> None:
    raw = logging.getLogger("deadswitch.tests.exploding")
    handler = _ExplodingHandler()
    raw.addHandler(handler)
    try:
        safe_log(raw, logging.ERROR, "state_write_failed", {"path": "/x"})
        get_logger("deadswitch.tests.exploding").warning("still_fine")
    finally:
        raw.removeHandler(handler)


def test_debug_is_filtered_by_level(caplog) -> None:
    logger = get_logger("deadswitch.tests.obs.level")
    with caplog.at_level(logging.INFO):
        logger.debug("rate_limit_unavailable")
    assert not [r for r in caplog.records if r.getMessage() == "rate_limit_unavailable"]
