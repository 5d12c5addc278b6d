"""Decide whether an exception occurrence warrants an operator notification."""

from __future__ import annotations

from core.handler_config import HandlerConfig
from services.exception_occurrence import ExceptionOccurrence, InvocationContext


def context_allows_notification(context: InvocationContext, config: HandlerConfig) -> bool:
    if context is InvocationContext.LOCAL:
        return config.notify_on_local_error
    if context is InvocationContext.PUBLIC:
        return config.notify_on_public_error
    return config.notify_on_background_error


def is_notifiable(occurrence: ExceptionOccurrence, status_code: str, config: HandlerConfig) -> bool:
    """Allow-list check: exception type (class or dotted name) OR status code."""
    classes = config.notify_exception_classes
    if occurrence.exception_type in classes or occurrence.exception_type_name in classes:
        return True
    return str(status_code) in config.notify_status_codes


def should_notify(occurrence: ExceptionOccurrence, status_code: str, config: HandlerConfig) -> bool:
    if not context_allows_notification(occurrence.context, config):
        return False
    return is_notifiable(occurrence, status_code, config)


__all__ = ["context_allows_notification", "is_notifiable", "should_notify"]
