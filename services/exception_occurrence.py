"""Value types shared by the exception handling pipeline."""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional


class InvocationContext(str, Enum):
    """Where an exception surfaced."""

    LOCAL = "local"
    PUBLIC = "public"
    BACKGROUND = "background"

    @property
    def is_request(self) -> bool:
        return self is not InvocationContext.BACKGROUND


def exception_type_name(exc_type: type) -> str:
    """Return ``RuntimeError`` for builtins and ``module.QualName`` otherwise."""
    module = getattr(exc_type, "__module__", None)
    qualname = getattr(exc_type, "__qualname__", exc_type.__name__)
    if not module or module == "builtins":
        return qualname
    return f"{module}.{qualname}"


@dataclass(frozen=True)
class ExceptionOccurrence:
    """One raised exception plus the context it was raised in."""

    exception: BaseException
    context: InvocationContext = InvocationContext.BACKGROUND
    request_fields: Optional[Mapping[str, Any]] = None
    request: Any = None

    @property
    def exception_type(self) -> type:
        return type(self.exception)

    @property
    def exception_type_name(self) -> str:
        return exception_type_name(type(self.exception))

    @property
    def message(self) -> str:
        return str(self.exception)

    @property
    def stack_frames(self) -> List[str]:
        tb = self.exception.__traceback__
        if tb is None:
            return []
        return [frame.rstrip("\n") for frame in traceback.format_tb(tb)]


@dataclass(frozen=True, slots=True)
class SideChannelOutcome:
    """Result of a logging/notification/rendering step. Never raised."""

    step: str
    ok: bool
    detail: Optional[str] = None
    error: Optional[BaseException] = None
    value: Any = None

    @classmethod
    def success(cls, step: str, *, detail: Optional[str] = None, value: Any = None) -> "SideChannelOutcome":
        return cls(step=step, ok=True, detail=detail, value=value)

    @classmethod
    def failure(cls, step: str, error: BaseException, *, detail: Optional[str] = None) -> "SideChannelOutcome":
        return cls(step=step, ok=False, detail=detail or str(error), error=error)

    @classmethod
    def skipped(cls, step: str, reason: str) -> "SideChannelOutcome":
        return cls(step=step, ok=True, detail=reason)


__all__ = [
    "ExceptionOccurrence",
    "InvocationContext",
    "SideChannelOutcome",
    "exception_type_name",
]
