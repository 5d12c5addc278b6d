from __future__ import annotations

import json

import pytest

from core import handler_config
from services.exception_dispatcher import (
    DispatchMode,
    ExceptionNotificationPayload,
    dispatch_notification,
    resolve_dispatch_mode,
    select_dispatch_mode,
)
from services.exception_occurrence import ExceptionOccurrence, InvocationContext


def _occurrence(context: InvocationContext = InvocationContext.PUBLIC, request: object = None) -> ExceptionOccurrence:
    try:
        raise RuntimeError("ledger out of balance")
    except RuntimeError as exc:
        return ExceptionOccurrence(exc, context=context, request=request)


@pytest.mark.parametrize(
    ("context", "request_flag", "background_flag", "expected"),
    [
        (InvocationContext.PUBLIC, True, False, DispatchMode.DEFERRED),
        (InvocationContext.PUBLIC, False, True, DispatchMode.SYNC),
        (InvocationContext.LOCAL, True, False, DispatchMode.DEFERRED),
        (InvocationContext.BACKGROUND, False, True, DispatchMode.DEFERRED),
        (InvocationContext.BACKGROUND, True, False, DispatchMode.SYNC),
    ],
)
def test_select_dispatch_mode(
    context: InvocationContext,
    request_flag: bool,
    background_flag: bool,
    expected: DispatchMode,
) -> None:
    config = handler_config.update_handler_config(
        deferred_dispatch_for_request_context=request_flag,
        deferred_dispatch_for_non_request_context=background_flag,
    )
    assert select_dispatch_mode(context, config, deferred_available=True) is expected


def test_deferred_requires_available_worker(make_notifier) -> None:
    config = handler_config.update_handler_config(deferred_dispatch_for_request_context=True)

    assert select_dispatch_mode(InvocationContext.PUBLIC, config, deferred_available=False) is DispatchMode.SYNC
    assert resolve_dispatch_mode(InvocationContext.PUBLIC, config, make_notifier(deferrable=False)) is DispatchMode.SYNC
    assert resolve_dispatch_mode(InvocationContext.PUBLIC, config, make_notifier(deferrable=True)) is DispatchMode.DEFERRED


def test_deferred_payload_is_serializable_and_excludes_request(notifier) -> None:
    live_request = object()
    occurrence = _occurrence(request=live_request)

    outcome = dispatch_notification(
        occurrence,
        "500",
        "billing-worker",
        {"path": "/invoices", "header.accept": ["text/html"], "client": object()},
        DispatchMode.DEFERRED,
        notifier,
    )

    assert outcome.ok
    assert notifier.delivered == []
    assert len(notifier.enqueued) == 1
    message = notifier.enqueued[0]
    json.dumps(message)
    assert message["exception_type"] == "RuntimeError"
    assert message["message"] == "ledger out of balance"
    assert message["proc_name"] == "billing-worker"
    assert message["status_code"] == "500"
    assert message["stack_frames"]
    assert message["request_data"]["path"] == "/invoices"
    assert "request" not in message

    rebuilt = ExceptionNotificationPayload.model_validate(message)
    assert rebuilt.request_data["header.accept"] == ["text/html"]


def test_sync_dispatch_passes_live_request(notifier) -> None:
    live_request = object()
    outcome = dispatch_notification(
        _occurrence(request=live_request),
        "503",
        "api",
        {},
        DispatchMode.SYNC,
        notifier,
    )

    assert outcome.ok
    assert notifier.enqueued == []
    payload, request = notifier.delivered[0]
    assert request is live_request
    assert payload.status_code == "503"


def test_dispatch_failure_is_returned_not_raised(make_notifier) -> None:
    failing = make_notifier(fail_with=ConnectionError("smtp unreachable"))

    outcome = dispatch_notification(_occurrence(), "500", "api", {}, DispatchMode.SYNC, failing)

    assert outcome.ok is False
    assert outcome.step == "notify.sync"
    assert isinstance(outcome.error, ConnectionError)
