from __future__ import annotations

from typing import Any, Dict, Generator, List, Mapping, Optional, Tuple

import pytest

from core import handler_config
from services.exception_dispatcher import ExceptionNotificationPayload


class RecordingNotifier:
    """In-memory notifier capturing inline deliveries and deferred messages."""

    def __init__(self, *, deferrable: bool = False, fail_with: Optional[BaseException] = None) -> None:
        self.deferrable = deferrable
        self.fail_with = fail_with
        self.delivered: List[Tuple[ExceptionNotificationPayload, Any]] = []
        self.enqueued: List[Dict[str, Any]] = []

    def deliver(self, payload: ExceptionNotificationPayload, *, request: Any = None) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.delivered.append((payload, request))
        return "delivered"

    def enqueue(self, message: Dict[str, Any]) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.enqueued.append(message)
        return "queued"

    def can_defer(self) -> bool:
        return self.deferrable

    @property
    def calls(self) -> int:
        return len(self.delivered) + len(self.enqueued)


class RecordingLog:
    def __init__(self) -> None:
        self.calls: List[Tuple[BaseException, Dict[str, Any], str]] = []

    def __call__(self, exception: BaseException, request_data: Mapping[str, Any], status_code: str) -> None:
        self.calls.append((exception, dict(request_data), status_code))


@pytest.fixture(autouse=True)
def _reset_handler_config() -> Generator[None, None, None]:
    handler_config.reset_handler_config()
    try:
        yield
    finally:
        handler_config.reset_handler_config()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def recording_log() -> RecordingLog:
    return RecordingLog()


@pytest.fixture()
def make_notifier():
    return RecordingNotifier
