"""Prometheus counters for exception handling."""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter

from core.logging import get_logger

logger = get_logger(__name__)

_HANDLED_COUNTER: Optional[Counter] = None
_NOTIFICATION_COUNTER: Optional[Counter] = None

try:
    _HANDLED_COUNTER = Counter(
        "exception_handled_total",
        "Exceptions that went through the exception handler.",
        ("status_code", "context"),
    )
    _NOTIFICATION_COUNTER = Counter(
        "exception_notification_total",
        "Operator notifications requested by the exception handler.",
        ("mode", "result"),
    )
except ValueError:  # pragma: no cover - duplicate registration during reloads
    logger.debug("Exception handler counters already registered.")


def record_handled(status_code: str, context: str) -> None:
    if _HANDLED_COUNTER is None:
        return
    try:
        _HANDLED_COUNTER.labels(status_code=status_code, context=context).inc()
    except Exception as exc:  # pragma: no cover - metrics must not break handling
        logger.debug("Failed to record exception_handled_total: %s", exc)


def record_notification(mode: str, result: str) -> None:
    if _NOTIFICATION_COUNTER is None:
        return
    try:
        _NOTIFICATION_COUNTER.labels(mode=mode, result=result).inc()
    except Exception as exc:  # pragma: no cover - metrics must not break handling
        logger.debug("Failed to record exception_notification_total: %s", exc)


__all__ = ["record_handled", "record_notification"]
