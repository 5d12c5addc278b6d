"""Default logging collaborator for handled exceptions."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from core.logging import get_logger

logger = get_logger("exceptions")


def _level_for(status_code: str) -> int:
    try:
        return logging.ERROR if int(status_code) >= 500 else logging.WARNING
    except ValueError:
        return logging.ERROR


def log_exception(exception: BaseException, request_data: Mapping[str, Any], status_code: str) -> None:
    logger.log(
        _level_for(status_code),
        "exception.handled %s (status=%s): %s",
        type(exception).__name__,
        status_code,
        exception,
        exc_info=(type(exception), exception, exception.__traceback__),
        extra={"status_code": status_code, "request_data": dict(request_data or {})},
    )


__all__ = ["log_exception"]
