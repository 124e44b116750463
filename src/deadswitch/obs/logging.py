from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

_RUN_ID = str(uuid.uuid4())


def run_id() -> str:
    return _RUN_ID


def safe_log(
    logger: logging.Logger | logging.LoggerAdapter,
    level: int,
    event: str,
    fields: Mapping[str, Any] | None = None,
    *,
    exc_info: bool = False,
) -> None:
    """Emit one structured log line; a failing handler never reaches the caller.

    Tick and gateway transactions log through this function so that a full
    disk or a broken syslog socket cannot abort a state transition.
    """
    try:
        payload = {"run_id": _RUN_ID}
        if fields:
            payload.update(fields)
        logger.log(level, event, extra={"extra": payload}, exc_info=exc_info)
    except Exception:  # noqa: BLE001
        return


class SafeLogger:
    """Component logger bound to :func:`safe_log`."""

    def __init__(self, component: str) -> None:
        self._logger = logging.getLogger(component)

    def debug(self, event: str, **fields: Any) -> None:
        safe_log(self._logger, logging.DEBUG, event, fields)

    def info(self, event: str, **fields: Any) -> None:
        safe_log(self._logger, logging.INFO, event, fields)

    def warning(self, event: str, **fields: Any) -> None:
        safe_log(self._logger, logging.WARNING, event, fields)

    def error(self, event: str, *, exc_info: bool = False, **fields: Any) -> None:
        safe_log(self._logger, logging.ERROR, event, fields, exc_info=exc_info)


def get_logger(component: str) -> SafeLogger:
    return SafeLogger(component)
