from __future__ import annotations

from typing import Any, List, Mapping

import pytest

from core import handler_config
from services import exception_handler
from services.error_pages import ErrorTemplateConfigError
from services.exception_dispatcher import DispatchMode
from services.exception_handler import HandlingReport, handle_exception, notify_errors, notify_on_error
from services.exception_occurrence import InvocationContext


class ExplodingRenderer:
    def __init__(self) -> None:
        self.templates: List[str] = []

    def render(self, template: str, status_code: str, context: Mapping[str, Any]) -> str:
        self.templates.append(template)
        raise OSError(f"cannot read {template}")


class EchoRenderer:
    def render(self, template: str, status_code: str, context: Mapping[str, Any]) -> str:
        return f"{template}:{status_code}"


def _public_500_config() -> handler_config.HandlerConfig:
    return handler_config.update_handler_config(
        notify_on_public_error=True,
        notify_on_local_error=False,
        notify_status_codes={"500"},
        error_class_status_codes={"default": "500"},
    )


def test_public_runtime_error_notifies_logs_and_reraises(notifier, recording_log) -> None:
    config = _public_500_config()
    error = RuntimeError("disk full")
    reports: List[HandlingReport] = []

    with pytest.raises(RuntimeError) as caught:
        handle_exception(
            error,
            context=InvocationContext.PUBLIC,
            config=config,
            notifier=notifier,
            log=recording_log,
            on_report=reports.append,
        )

    assert caught.value is error
    report = reports[0]
    assert report.status_code == "500"
    assert report.notify is True
    assert report.dispatch_mode is DispatchMode.SYNC
    assert notifier.calls == 1
    assert len(recording_log.calls) == 1
    assert recording_log.calls[0][0] is error
    assert recording_log.calls[0][2] == "500"


def test_local_error_skips_notification_but_still_logs(notifier, recording_log) -> None:
    config = _public_500_config()
    error = RuntimeError("disk full")
    reports: List[HandlingReport] = []

    with pytest.raises(RuntimeError) as caught:
        handle_exception(
            error,
            context=InvocationContext.LOCAL,
            config=config,
            notifier=notifier,
            log=recording_log,
            on_report=reports.append,
        )

    assert caught.value is error
    assert reports[0].notify is False
    assert reports[0].dispatch_mode is None
    assert notifier.calls == 0
    assert len(recording_log.calls) == 1


def test_request_fields_are_filtered_before_logging_and_notifying(notifier, recording_log) -> None:
    config = _public_500_config()

    with pytest.raises(RuntimeError):
        handle_exception(
            RuntimeError("boom"),
            request_fields={"path": "/pay", "header.cookie": "sid=1", "asgi.version": "3.0"},
            context=InvocationContext.PUBLIC,
            config=config,
            notifier=notifier,
            log=recording_log,
        )

    assert recording_log.calls[0][1] == {"path": "/pay"}
    payload, _ = notifier.delivered[0]
    assert payload.request_data == {"path": "/pay"}


def test_proc_name_defaults_to_app_name(notifier, recording_log) -> None:
    handler_config.update_handler_config(app_name="ledger")

    with pytest.raises(RuntimeError):
        handle_exception(RuntimeError("x"), notifier=notifier, log=recording_log)
    with pytest.raises(RuntimeError):
        handle_exception(RuntimeError("y"), proc_name="nightly-close", notifier=notifier, log=recording_log)

    assert [payload.proc_name for payload, _ in notifier.delivered] == ["ledger", "nightly-close"]


def test_deferred_dispatch_in_background(make_notifier, recording_log) -> None:
    config = handler_config.update_handler_config(deferred_dispatch_for_non_request_context=True)
    deferrable = make_notifier(deferrable=True)

    with pytest.raises(RuntimeError):
        handle_exception(RuntimeError("x"), config=config, notifier=deferrable, log=recording_log)

    assert deferrable.delivered == []
    assert len(deferrable.enqueued) == 1


def test_side_channel_failures_never_replace_the_original(make_notifier) -> None:
    error = KeyError("order-42")
    reports: List[HandlingReport] = []
    config = handler_config.update_handler_config(notify_exception_classes={KeyError})

    def broken_log(*_: Any) -> None:
        raise IOError("log volume read-only")

    with pytest.raises(KeyError) as caught:
        handle_exception(
            error,
            render_errors=True,
            config=config,
            notifier=make_notifier(fail_with=ConnectionError("smtp down")),
            log=broken_log,
            renderer=ExplodingRenderer(),
            on_report=reports.append,
        )

    assert caught.value is error
    failed_steps = [outcome.step for outcome in reports[0].failures]
    assert failed_steps == ["notify.sync", "log", "render"]
    render_failure = reports[0].failures[-1]
    assert isinstance(render_failure.error, ErrorTemplateConfigError)


def test_render_uses_fallback_chain(notifier, recording_log) -> None:
    config = handler_config.update_handler_config(
        error_class_templates={ValueError: "/srv/errors/value.html"},
        default_error_template="/srv/errors/default.html",
    )
    reports: List[HandlingReport] = []

    with pytest.raises(ValueError):
        handle_exception(
            ValueError("bad amount"),
            render_errors=True,
            config=config,
            notifier=notifier,
            log=recording_log,
            renderer=EchoRenderer(),
            on_report=reports.append,
        )

    assert reports[0].rendered is not None
    assert reports[0].rendered.body == "/srv/errors/value.html:500"


def test_no_render_unless_requested(notifier, recording_log) -> None:
    renderer = ExplodingRenderer()
    reports: List[HandlingReport] = []

    with pytest.raises(RuntimeError):
        handle_exception(RuntimeError("x"), notifier=notifier, log=recording_log, renderer=renderer, on_report=reports.append)

    assert renderer.templates == []
    assert reports[0].rendered is None


def test_notify_on_error_returns_none_without_exception(notifier, recording_log) -> None:
    calls: List[str] = []

    assert notify_on_error(lambda: calls.append("ran"), notifier=notifier, log=recording_log) is None
    assert calls == ["ran"]
    assert recording_log.calls == []


def test_notify_on_error_reraises_same_exception(monkeypatch: pytest.MonkeyPatch, notifier, recording_log) -> None:
    error = RuntimeError("cron failed")
    captured: List[dict] = []
    original = exception_handler.handle_exception

    def spy(exception: BaseException, **kwargs: Any):
        captured.append(kwargs)
        return original(exception, **kwargs)

    monkeypatch.setattr(exception_handler, "handle_exception", spy)

    def work() -> None:
        raise error

    notifier.fail_with = TimeoutError("webhook timeout")
    with pytest.raises(RuntimeError) as caught:
        notify_on_error(work, "nightly-close", notifier=notifier, log=recording_log)

    assert caught.value is error
    assert captured[0]["render_errors"] is False
    assert captured[0]["proc_name"] == "nightly-close"
    assert captured[0]["context"] is InvocationContext.BACKGROUND


def test_notify_errors_decorator(notifier, recording_log) -> None:
    @notify_errors("reconcile", notifier=notifier, log=recording_log)
    def reconcile(amount: int) -> int:
        if amount < 0:
            raise ValueError("negative amount")
        return amount * 2

    assert reconcile(2) == 4
    with pytest.raises(ValueError):
        reconcile(-1)

    assert notifier.delivered[0][0].proc_name == "reconcile"
    assert recording_log.calls[0][2] == "500"


def test_notify_errors_defaults_to_configured_app_name(notifier, recording_log) -> None:
    handler_config.update_handler_config(app_name="ledger-worker")

    @notify_errors(notifier=notifier, log=recording_log)
    def close_books() -> None:
        raise RuntimeError("books already closed")

    with pytest.raises(RuntimeError):
        close_books()

    assert notifier.delivered[0][0].proc_name == "ledger-worker"
