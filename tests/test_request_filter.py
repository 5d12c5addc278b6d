from __future__ import annotations

import re

from core import handler_config
from services.request_filter import filter_request_data, should_skip_field

PATTERNS = (re.compile(r"^asgi\."), "header.cookie", re.compile(r"password"))


def test_filter_drops_matching_fields_and_keeps_the_rest() -> None:
    raw = {
        "asgi.version": "3.0",
        "header.cookie": "session=abc",
        "query.password": "hunter2",
        "header.cookie-policy": "strict",
        "path": "/orders",
    }

    filtered = filter_request_data(raw, PATTERNS)

    assert filtered == {"header.cookie-policy": "strict", "path": "/orders"}
    assert not any(should_skip_field(name, PATTERNS) for name in filtered)


def test_filter_is_idempotent() -> None:
    raw = {"asgi.spec_version": "2.3", "method": "GET", "header.cookie": "x"}
    once = filter_request_data(raw, PATTERNS)
    assert filter_request_data(once, PATTERNS) == once


def test_filter_handles_missing_input() -> None:
    assert filter_request_data(None, PATTERNS) == {}
    assert filter_request_data({}, PATTERNS) == {}


def test_default_patterns_strip_credentials() -> None:
    config = handler_config.get_handler_config()
    raw = {
        "header.authorization": "Bearer token",
        "header.x-api-key": "key",
        "state.user": object(),
        "header.accept": "text/html",
    }
    assert filter_request_data(raw, config.request_field_skip_patterns) == {"header.accept": "text/html"}
