"""FastAPI/Starlette integration for the exception handler."""

from __future__ import annotations

import functools
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from starlette.concurrency import run_in_threadpool

from core.handler_config import HandlerConfig, get_handler_config
from core.logging import get_logger
from services.exception_handler import HandlingReport, handle_exception
from services.exception_occurrence import InvocationContext

logger = get_logger(__name__)


def resolve_invocation_context(request: Request, config: HandlerConfig) -> InvocationContext:
    host = request.client.host if request.client else None
    if host and host in config.local_client_hosts:
        return InvocationContext.LOCAL
    return InvocationContext.PUBLIC


def request_fields_from_request(request: Request) -> Dict[str, Any]:
    """Flatten a request into named fields; filtering happens in the handler."""
    fields: Dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "url": str(request.url),
    }
    if request.client:
        fields["client"] = request.client.host
    for key, value in request.query_params.multi_items():
        fields[f"query.{key}"] = value
    for key, value in request.headers.items():
        fields[f"header.{key}"] = value
    for key, value in (request.scope.get("asgi") or {}).items():
        fields[f"asgi.{key}"] = value
    for key, value in getattr(request.state, "_state", {}).items():
        fields[f"state.{key}"] = value
    return fields


def _response_status(status_code: str) -> int:
    try:
        code = int(status_code)
    except ValueError:
        return 500
    return code if 400 <= code < 600 else 500


async def exception_handling_middleware(request: Request, call_next):
    """Handle unhandled endpoint errors; answer with a rendered page when one was produced."""
    try:
        return await call_next(request)
    except Exception as exc:
        config = get_handler_config()
        context = resolve_invocation_context(request, config)
        handle_errors = config.handle_local_errors if context is InvocationContext.LOCAL else config.handle_public_errors
        if not handle_errors:
            raise
        reports: List[HandlingReport] = []
        try:
            # Inline notification may block on the delivery channel.
            await run_in_threadpool(
                functools.partial(
                    handle_exception,
                    exc,
                    request=request,
                    request_fields=request_fields_from_request(request),
                    context=context,
                    render_errors=True,
                    config=config,
                    on_report=reports.append,
                )
            )
        except Exception:
            page = reports[0].rendered if reports else None
            if page is None:
                raise
            logger.debug("Serving error page %s for %s", page.template, request.url.path)
            return HTMLResponse(page.body, status_code=_response_status(page.status_code))


def register_exception_handling(app: FastAPI) -> None:
    """Install the exception handling middleware on ``app``."""
    app.middleware("http")(exception_handling_middleware)


__all__ = [
    "exception_handling_middleware",
    "register_exception_handling",
    "request_fields_from_request",
    "resolve_invocation_context",
]
