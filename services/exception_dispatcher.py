"""Choose sync vs deferred delivery and hand the notification to the notifier."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from core.handler_config import HandlerConfig
from core.logging import get_logger
from services.exception_metrics import record_notification
from services.exception_occurrence import ExceptionOccurrence, InvocationContext, SideChannelOutcome

logger = get_logger(__name__)


class DispatchMode(str, Enum):
    SYNC = "sync"
    DEFERRED = "deferred"


class ExceptionNotificationPayload(BaseModel):
    """Self-contained notification payload; safe to serialize for a worker."""

    exception_type: str
    message: str
    stack_frames: List[str] = Field(default_factory=list)
    proc_name: str = ""
    status_code: str
    request_data: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_occurrence(
        cls,
        occurrence: ExceptionOccurrence,
        *,
        status_code: str,
        proc_name: str,
        request_data: Mapping[str, Any],
    ) -> "ExceptionNotificationPayload":
        return cls(
            exception_type=occurrence.exception_type_name,
            message=occurrence.message,
            stack_frames=occurrence.stack_frames,
            proc_name=proc_name,
            status_code=str(status_code),
            request_data={str(key): _jsonable(value) for key, value in request_data.items()},
        )

    def to_message(self) -> Dict[str, Any]:
        """Plain JSON-compatible dict used as the deferred task argument."""
        return self.model_dump(mode="json")


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return repr(value)


@runtime_checkable
class ExceptionNotifier(Protocol):
    """Collaborator that actually delivers (or enqueues) notifications."""

    def deliver(self, payload: ExceptionNotificationPayload, *, request: Any = None) -> Any:
        """Deliver synchronously. ``request`` may be the live request object."""

    def enqueue(self, message: Dict[str, Any]) -> Any:
        """Hand a serialized payload to the deferred worker."""

    def can_defer(self) -> bool:
        """Return True when a deferred worker is reachable."""


def select_dispatch_mode(
    context: InvocationContext,
    config: HandlerConfig,
    *,
    deferred_available: bool,
) -> DispatchMode:
    if not deferred_available:
        return DispatchMode.SYNC
    if context.is_request:
        wants_deferred = config.deferred_dispatch_for_request_context
    else:
        wants_deferred = config.deferred_dispatch_for_non_request_context
    return DispatchMode.DEFERRED if wants_deferred else DispatchMode.SYNC


def resolve_dispatch_mode(
    context: InvocationContext,
    config: HandlerConfig,
    notifier: ExceptionNotifier,
) -> DispatchMode:
    try:
        deferred_available = bool(notifier.can_defer())
    except Exception as exc:
        logger.warning("Notifier availability check failed, delivering inline: %s", exc)
        deferred_available = False
    return select_dispatch_mode(context, config, deferred_available=deferred_available)


def dispatch_notification(
    occurrence: ExceptionOccurrence,
    status_code: str,
    proc_name: str,
    filtered_data: Mapping[str, Any],
    mode: DispatchMode,
    notifier: ExceptionNotifier,
) -> SideChannelOutcome:
    """Send exactly one notification. Failures are returned, never raised."""
    step = f"notify.{mode.value}"
    try:
        payload = ExceptionNotificationPayload.from_occurrence(
            occurrence,
            status_code=status_code,
            proc_name=proc_name,
            request_data=filtered_data,
        )
        if mode is DispatchMode.DEFERRED:
            result = notifier.enqueue(payload.to_message())
        else:
            result = notifier.deliver(payload, request=occurrence.request)
    except Exception as exc:
        record_notification(mode.value, "failed")
        logger.warning(
            "Exception notification failed (mode=%s, type=%s): %s",
            mode.value,
            occurrence.exception_type_name,
            exc,
            exc_info=True,
        )
        return SideChannelOutcome.failure(step, exc)
    record_notification(mode.value, "requested")
    return SideChannelOutcome.success(step, value=result)


__all__ = [
    "DispatchMode",
    "ExceptionNotificationPayload",
    "ExceptionNotifier",
    "dispatch_notification",
    "resolve_dispatch_mode",
    "select_dispatch_mode",
]
