"""Default notifier: formats exception payloads and delivers them via a channel or Celery."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from core.env_utils import load_dotenv_if_available, missing_env_vars
from core.handler_config import HandlerConfig, get_handler_config
from core.logging import get_logger
from services import notification_channels
from services.exception_dispatcher import ExceptionNotificationPayload

load_dotenv_if_available()

logger = get_logger(__name__)

_MAX_SUBJECT_MESSAGE = 120


class NotificationDeliveryError(RuntimeError):
    """Raised when a notification channel rejects or fails a delivery."""


def format_subject(payload: ExceptionNotificationPayload) -> str:
    message = payload.message.splitlines()[0] if payload.message else ""
    if len(message) > _MAX_SUBJECT_MESSAGE:
        message = message[: _MAX_SUBJECT_MESSAGE - 3] + "..."
    prefix = f"[{payload.proc_name}] " if payload.proc_name else ""
    return f"{prefix}{payload.status_code} {payload.exception_type}: {message}".rstrip(": ")


def format_body(payload: ExceptionNotificationPayload, *, request: Any = None) -> str:
    lines = [
        f"Exception: {payload.exception_type}",
        f"Message: {payload.message}",
        f"Status code: {payload.status_code}",
        f"Process: {payload.proc_name or '-'}",
        f"Occurred at: {payload.occurred_at.isoformat()}",
    ]
    url = getattr(request, "url", None)
    if url is not None:
        lines.append(f"URL: {url}")
    if payload.request_data:
        lines.append("")
        lines.append("Request data:")
        lines.extend(f"  {key}: {value}" for key, value in sorted(payload.request_data.items()))
    if payload.stack_frames:
        lines.append("")
        lines.append("Backtrace:")
        lines.extend(payload.stack_frames)
    return "\n".join(lines)


def _deliver_task():
    try:  # pragma: no cover - celery unavailable in some environments
        from worker.tasks import deliver_exception_notification
    except Exception as exc:  # pragma: no cover
        logger.debug("deliver_exception_notification task unavailable: %s", exc)
        return None
    return deliver_exception_notification


class CeleryExceptionNotifier:
    """Delivers inline through a notification channel or defers to a Celery worker."""

    def __init__(
        self,
        *,
        channel: Optional[str] = None,
        targets: Optional[Sequence[str]] = None,
        config: Optional[HandlerConfig] = None,
    ) -> None:
        self._channel = channel
        self._targets = list(targets) if targets is not None else None
        self._config = config

    @property
    def config(self) -> HandlerConfig:
        return self._config or get_handler_config()

    @property
    def channel(self) -> str:
        return self._channel or self.config.notification_channel

    @property
    def targets(self) -> Sequence[str]:
        if self._targets is not None:
            return self._targets
        return self.config.notification_targets

    def deliver(self, payload: ExceptionNotificationPayload, *, request: Any = None) -> notification_channels.NotificationResult:
        result = notification_channels.dispatch_notification(
            self.channel,
            format_subject(payload),
            format_body(payload, request=request),
            targets=self.targets,
            metadata={"payload": payload.to_message()},
        )
        if result.status == "failed":
            raise NotificationDeliveryError(result.error or "notification delivery failed")
        if result.status == "partial":
            logger.warning("Exception notification partially delivered: %s", result.error)
        return result

    def enqueue(self, message: Dict[str, Any]) -> Any:
        task = _deliver_task()
        if task is None:
            raise NotificationDeliveryError("deliver_exception_notification task is unavailable.")
        return task.delay(message)

    def can_defer(self) -> bool:
        if missing_env_vars(["CELERY_BROKER_URL"]):
            return False
        return _deliver_task() is not None


_DEFAULT_NOTIFIER: Optional[CeleryExceptionNotifier] = None


def get_default_notifier() -> CeleryExceptionNotifier:
    global _DEFAULT_NOTIFIER  # pylint: disable=global-statement
    if _DEFAULT_NOTIFIER is None:
        _DEFAULT_NOTIFIER = CeleryExceptionNotifier()
    return _DEFAULT_NOTIFIER


__all__ = [
    "CeleryExceptionNotifier",
    "NotificationDeliveryError",
    "format_body",
    "format_subject",
    "get_default_notifier",
]
