"""Map raised exceptions to outward-facing HTTP status codes."""

from __future__ import annotations

from typing import Protocol, Union, runtime_checkable

from starlette.exceptions import HTTPException as StarletteHTTPException

from core.handler_config import DEFAULT_KEY, HandlerConfig
from core.logging import get_logger
from services.exception_occurrence import exception_type_name

logger = get_logger(__name__)


@runtime_checkable
class ReportsStatusCode(Protocol):
    """Exceptions that know their own status code."""

    def reported_status_code(self) -> Union[str, int]:
        """Return the status code this exception should surface as."""


class StatusCodeError(Exception):
    """Convenience base for application errors carrying a status code."""

    status_code: Union[str, int] = "500"

    def __init__(self, message: str = "", *, status_code: Union[str, int, None] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code

    def reported_status_code(self) -> str:
        return str(self.status_code)


def _self_reported(exception: BaseException) -> str | None:
    if isinstance(exception, ReportsStatusCode):
        try:
            code = exception.reported_status_code()
        except Exception as exc:
            logger.warning(
                "Ignoring failing reported_status_code() on %s: %s",
                exception_type_name(type(exception)),
                exc,
            )
            return None
        return str(code) if code is not None else None
    if isinstance(exception, StarletteHTTPException):
        return str(exception.status_code)
    return None


def classify_exception(exception: BaseException, config: HandlerConfig) -> str:
    """Return the status code for ``exception``.

    Self-reported codes win over the table; table lookups match the concrete
    type only (subclasses are not considered) and fall back to ``default``.
    """

    reported = _self_reported(exception)
    if reported is not None:
        return reported

    codes = config.error_class_status_codes
    exc_type = type(exception)
    if exc_type in codes:
        return codes[exc_type]
    name = exception_type_name(exc_type)
    if name in codes:
        return codes[name]
    return codes[DEFAULT_KEY]


__all__ = ["ReportsStatusCode", "StatusCodeError", "classify_exception"]
