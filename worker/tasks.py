"""Celery tasks for deferred exception notifications."""

from __future__ import annotations

from typing import Any, Dict

from celery import shared_task

from core.logging import get_logger
from services.exception_dispatcher import ExceptionNotificationPayload
from services.exception_notifier import NotificationDeliveryError, get_default_notifier

logger = get_logger(__name__)


@shared_task(
    name="exceptions.deliver_notification",
    autoretry_for=(NotificationDeliveryError,),
    retry_backoff=True,
    max_retries=3,
)
def deliver_exception_notification(message: Dict[str, Any]) -> Dict[str, Any]:
    """Rebuild a serialized payload and deliver it inline on the worker."""

    payload = ExceptionNotificationPayload.model_validate(message)
    result = get_default_notifier().deliver(payload)
    logger.info(
        "exceptions.notification.delivered",
        extra={
            "exception_type": payload.exception_type,
            "status_code": payload.status_code,
            "proc_name": payload.proc_name,
            "delivered": result.delivered,
        },
    )
    return {"status": result.status, "delivered": result.delivered, "failed": result.failed}


__all__ = ["deliver_exception_notification"]
