"""Resolve and render user-facing error pages through a template fallback chain.

Resolution order, first usable template wins:

1. a template registered for the exception's concrete type,
2. the configured default error template,
3. the packaged last-resort template (never configurable).

Selection is pure; whether a template actually exists is only discovered by
the renderer. A renderer failure moves on to the next candidate, and a
failure of the last-resort template raises :class:`ErrorTemplateConfigError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.handler_config import LAST_RESORT_ERROR_TEMPLATE, HandlerConfig
from core.logging import get_logger
from services.exception_occurrence import exception_type_name

logger = get_logger(__name__)


class ErrorTemplateConfigError(RuntimeError):
    """Raised when even the last-resort error template cannot be rendered."""


@runtime_checkable
class ErrorPageRenderer(Protocol):
    def render(self, template: str, status_code: str, context: Mapping[str, Any]) -> str:
        """Render ``template`` and return the response body."""


@dataclass(frozen=True)
class RenderedErrorPage:
    template: str
    status_code: str
    body: str


def _override_for(exception: BaseException, overrides: Mapping[Any, str]) -> Optional[str]:
    exc_type = type(exception)
    template = overrides.get(exc_type) or overrides.get(exception_type_name(exc_type))
    return template or None


def error_template_chain(exception: BaseException, config: HandlerConfig) -> List[str]:
    """Return the ordered, de-duplicated template candidates for ``exception``."""
    candidates = [
        _override_for(exception, config.error_class_templates),
        config.default_error_template or None,
        config.last_resort_error_template,
    ]
    chain: List[str] = []
    for candidate in candidates:
        if candidate and candidate not in chain:
            chain.append(candidate)
    return chain


def resolve_error_template(exception: BaseException, config: HandlerConfig) -> str:
    return error_template_chain(exception, config)[0]


def _status_title(status_code: str) -> str:
    try:
        return HTTPStatus(int(status_code)).phrase
    except ValueError:
        return "Error"


def error_page_context(exception: BaseException, status_code: str, config: HandlerConfig) -> Dict[str, Any]:
    return {
        "status_code": status_code,
        "title": _status_title(status_code),
        "app_name": config.app_name,
        "exception_type": exception_type_name(type(exception)),
    }


def render_error_page(
    exception: BaseException,
    status_code: str,
    config: HandlerConfig,
    renderer: ErrorPageRenderer,
) -> RenderedErrorPage:
    context = error_page_context(exception, status_code, config)
    chain = error_template_chain(exception, config)
    last_error: Optional[BaseException] = None
    for template in chain:
        try:
            body = renderer.render(template, status_code, context)
        except Exception as exc:
            last_error = exc
            logger.warning("Error template %s could not be rendered: %s", template, exc)
            continue
        return RenderedErrorPage(template=template, status_code=status_code, body=body)
    raise ErrorTemplateConfigError(
        f"Last-resort error template {config.last_resort_error_template} could not be rendered."
    ) from last_error


@lru_cache(maxsize=32)
def _environment(search_path: str) -> Environment:
    return Environment(
        loader=FileSystemLoader(search_path),
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


class JinjaErrorPageRenderer:
    """Renders absolute template paths, or names relative to the template directory."""

    def __init__(self, template_dir: Optional[Path | str] = None) -> None:
        self.template_dir = Path(template_dir) if template_dir else LAST_RESORT_ERROR_TEMPLATE.parent

    def _locate(self, template: str) -> tuple[str, str]:
        path = Path(template)
        if path.is_absolute():
            return str(path.parent), path.name
        return str(self.template_dir), template

    def render(self, template: str, status_code: str, context: Mapping[str, Any]) -> str:
        search_path, name = self._locate(template)
        payload = dict(context)
        payload.setdefault("status_code", status_code)
        return _environment(search_path).get_template(name).render(**payload)


__all__ = [
    "ErrorPageRenderer",
    "ErrorTemplateConfigError",
    "JinjaErrorPageRenderer",
    "RenderedErrorPage",
    "error_page_context",
    "error_template_chain",
    "render_error_page",
    "resolve_error_template",
]
