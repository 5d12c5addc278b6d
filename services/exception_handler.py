"""Exception handling entry points.

``handle_exception`` classifies an exception, decides whether operators are
notified (inline or through the Celery worker), logs it, optionally renders
an error page and then re-raises the original exception. Logging,
notification and rendering are side channels: their failures are reported
through this module's logger and never replace the original exception.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, NoReturn, Optional, TypeVar

from core.handler_config import HandlerConfig, get_handler_config, mark_handling_started
from core.logging import get_logger
from services.error_pages import (
    ErrorPageRenderer,
    ErrorTemplateConfigError,
    JinjaErrorPageRenderer,
    RenderedErrorPage,
    render_error_page,
)
from services.exception_classifier import classify_exception
from services.exception_dispatcher import (
    DispatchMode,
    ExceptionNotifier,
    dispatch_notification,
    resolve_dispatch_mode,
)
from services.exception_logging import log_exception
from services.exception_metrics import record_handled
from services.exception_notifier import get_default_notifier
from services.exception_occurrence import ExceptionOccurrence, InvocationContext, SideChannelOutcome
from services.notification_policy import should_notify
from services.request_filter import filter_request_data

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])
LogCollaborator = Callable[[BaseException, Mapping[str, Any], str], Any]


@dataclass
class HandlingReport:
    """What the handler decided for one exception."""

    occurrence: ExceptionOccurrence
    status_code: str
    proc_name: str
    filtered_data: Dict[str, Any]
    notify: bool
    dispatch_mode: Optional[DispatchMode] = None
    outcomes: List[SideChannelOutcome] = field(default_factory=list)
    rendered: Optional[RenderedErrorPage] = None

    @property
    def failures(self) -> List[SideChannelOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]


def _log_step(log: LogCollaborator, exception: BaseException, filtered: Mapping[str, Any], status_code: str) -> SideChannelOutcome:
    try:
        log(exception, filtered, status_code)
    except Exception as exc:
        return SideChannelOutcome.failure("log", exc)
    return SideChannelOutcome.success("log")


def _render_step(
    exception: BaseException,
    status_code: str,
    config: HandlerConfig,
    renderer: ErrorPageRenderer,
) -> SideChannelOutcome:
    try:
        page = render_error_page(exception, status_code, config, renderer)
    except ErrorTemplateConfigError as exc:
        logger.error("Error page rendering is misconfigured: %s", exc, exc_info=True)
        return SideChannelOutcome.failure("render", exc)
    except Exception as exc:
        return SideChannelOutcome.failure("render", exc)
    return SideChannelOutcome.success("render", detail=page.template, value=page)


def _process(
    exception: BaseException,
    *,
    config: HandlerConfig,
    request: Any,
    request_fields: Optional[Mapping[str, Any]],
    context: InvocationContext,
    render_errors: bool,
    proc_name: Optional[str],
    notifier: Optional[ExceptionNotifier],
    log: LogCollaborator,
    renderer: Optional[ErrorPageRenderer],
) -> HandlingReport:
    resolved_proc_name = proc_name or config.app_name
    status_code = classify_exception(exception, config)
    filtered = filter_request_data(request_fields, config.request_field_skip_patterns)
    occurrence = ExceptionOccurrence(
        exception=exception,
        context=context,
        request_fields=filtered,
        request=request,
    )
    notify = should_notify(occurrence, status_code, config)
    report = HandlingReport(
        occurrence=occurrence,
        status_code=status_code,
        proc_name=resolved_proc_name,
        filtered_data=filtered,
        notify=notify,
    )

    if notify:
        active_notifier = notifier or get_default_notifier()
        report.dispatch_mode = resolve_dispatch_mode(context, config, active_notifier)
        report.outcomes.append(
            dispatch_notification(
                occurrence,
                status_code,
                resolved_proc_name,
                filtered,
                report.dispatch_mode,
                active_notifier,
            )
        )

    report.outcomes.append(_log_step(log, exception, filtered, status_code))

    if render_errors:
        outcome = _render_step(
            exception,
            status_code,
            config,
            renderer or JinjaErrorPageRenderer(config.error_template_dir),
        )
        report.outcomes.append(outcome)
        if outcome.ok:
            report.rendered = outcome.value

    record_handled(status_code, context.value)
    return report


def handle_exception(
    exception: BaseException,
    *,
    request: Any = None,
    request_fields: Optional[Mapping[str, Any]] = None,
    context: InvocationContext = InvocationContext.BACKGROUND,
    render_errors: bool = False,
    proc_name: Optional[str] = None,
    config: Optional[HandlerConfig] = None,
    notifier: Optional[ExceptionNotifier] = None,
    log: Optional[LogCollaborator] = None,
    renderer: Optional[ErrorPageRenderer] = None,
    on_report: Optional[Callable[[HandlingReport], Any]] = None,
) -> NoReturn:
    """Run the handling pipeline for ``exception`` and re-raise it.

    Args:
        exception: The exception that was caught.
        request: Live request object, only forwarded to inline notifications.
        request_fields: Raw request field mapping; filtered before any use.
        context: Whether the exception came from a local/public request or background work.
        render_errors: Render an error page through the template fallback chain.
        proc_name: Process label for notifications, defaults to ``config.app_name``.
        on_report: Receives the :class:`HandlingReport` before the re-raise.
    """

    active_config = config or get_handler_config()
    mark_handling_started()
    try:
        report = _process(
            exception,
            config=active_config,
            request=request,
            request_fields=request_fields,
            context=context,
            render_errors=render_errors,
            proc_name=proc_name,
            notifier=notifier,
            log=log or log_exception,
            renderer=renderer,
        )
    except Exception as exc:  # pragma: no cover
        logger.error("Exception handler failed while processing %r: %s", exception, exc, exc_info=True)
    else:
        for failure in report.failures:
            logger.warning(
                "exception_handler.side_channel_failed",
                extra={
                    "step": failure.step,
                    "detail": failure.detail,
                    "exception_type": report.occurrence.exception_type_name,
                },
            )
        if on_report is not None:
            try:
                on_report(report)
            except Exception as exc:
                logger.warning("Exception handling report callback failed: %s", exc, exc_info=True)
    raise exception


def notify_on_error(work: Callable[[], Any], proc_name: Optional[str] = None, **options: Any) -> None:
    """Run ``work``; if it raises, handle the exception (no rendering) and re-raise it.

    Returns None when ``work`` completes.
    """

    options.setdefault("context", InvocationContext.BACKGROUND)
    options["render_errors"] = False
    try:
        work()
    except Exception as exception:
        handle_exception(exception, proc_name=proc_name, **options)
    return None


def notify_errors(proc_name: Optional[str] = None, **options: Any) -> Callable[[F], F]:
    """Decorator form of :func:`notify_on_error` for tasks and scripts."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            handler_options = dict(options)
            handler_options.setdefault("context", InvocationContext.BACKGROUND)
            handler_options["render_errors"] = False
            try:
                return func(*args, **kwargs)
            except Exception as exception:
                handle_exception(exception, proc_name=proc_name, **handler_options)

        return wrapper  # type: ignore[return-value]

    return decorator


__all__ = ["HandlingReport", "handle_exception", "notify_errors", "notify_on_error"]
