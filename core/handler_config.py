"""Process-wide configuration for the exception handler.

The configuration is created once at import time with sensible defaults and
may be adjusted by startup code through :func:`configure` or
:func:`update_handler_config`, e.g.::

    from core import handler_config

    def _tune(draft):
        draft["app_name"] = "billing-api"
        draft["error_class_status_codes"][KeyError] = "404"
        draft["notify_status_codes"].add("502")

    handler_config.configure(_tune)

Mapping and set options are merged by default; pass ``replace=True`` to
:func:`update_handler_config` to overwrite them instead.

Hazard: the installed :class:`HandlerConfig` is frozen, but swapping it while
requests or workers are already handling exceptions is unsupported and the
outcome is undefined (web processes and Celery workers may end up running
with different settings). Configure once during startup. A warning is logged
when a mutation happens after the first exception was handled.
"""

from __future__ import annotations

import importlib
import re
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Pattern, Tuple, Union

from core.env import env_bool, env_list, env_str
from core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_KEY = "default"

PACKAGE_ROOT = Path(__file__).resolve().parent.parent
LAST_RESORT_ERROR_TEMPLATE = PACKAGE_ROOT / "web" / "templates" / "error" / "500.html"

SkipPattern = Union[str, Pattern[str]]
ExceptionKey = Union[type, str]

# Framework exceptions are only mapped when the library is importable.
_OPTIONAL_STATUS_CODES: Tuple[Tuple[str, str, str], ...] = (
    ("jinja2.exceptions", "TemplateError", "500"),
    ("jinja2.exceptions", "TemplateNotFound", "500"),
    ("pydantic", "ValidationError", "400"),
    ("fastapi.exceptions", "RequestValidationError", "422"),
    ("sqlalchemy.exc", "NoResultFound", "404"),
    ("httpx", "TimeoutException", "504"),
)

_DEFAULT_SKIP_PATTERNS: Tuple[SkipPattern, ...] = (
    re.compile(r"^asgi\."),
    re.compile(r"^state\."),
    "header.authorization",
    "header.cookie",
    "header.x-api-key",
)


class HandlerConfigError(ValueError):
    """Raised when startup code supplies an invalid handler configuration."""


def _import_optional(module_name: str, attribute: str) -> Optional[type]:
    try:
        module = importlib.import_module(module_name)
    except ImportError:
        return None
    candidate = getattr(module, attribute, None)
    return candidate if isinstance(candidate, type) else None


def default_status_codes() -> Dict[ExceptionKey, str]:
    """Return the default exception type -> status code mapping."""
    codes: Dict[ExceptionKey, str] = {
        NameError: "503",
        TypeError: "503",
        RuntimeError: "500",
        ValueError: "500",
        NotImplementedError: "501",
        PermissionError: "403",
        DEFAULT_KEY: "500",
    }
    for module_name, attribute, code in _OPTIONAL_STATUS_CODES:
        exc_type = _import_optional(module_name, attribute)
        if exc_type is not None:
            codes[exc_type] = code
    return codes


@dataclass(frozen=True)
class HandlerConfig:
    app_name: str = ""
    error_class_status_codes: Mapping[ExceptionKey, str] = field(default_factory=default_status_codes)
    notify_exception_classes: FrozenSet[ExceptionKey] = frozenset()
    notify_status_codes: FrozenSet[str] = frozenset({"405", "500", "503"})
    notify_on_local_error: bool = False
    notify_on_public_error: bool = True
    notify_on_background_error: bool = True
    handle_local_errors: bool = False
    handle_public_errors: bool = True
    local_client_hosts: FrozenSet[str] = frozenset({"127.0.0.1", "::1", "localhost", "testclient"})
    deferred_dispatch_for_request_context: bool = False
    deferred_dispatch_for_non_request_context: bool = False
    request_field_skip_patterns: Tuple[SkipPattern, ...] = _DEFAULT_SKIP_PATTERNS
    error_template_dir: Optional[Path] = None
    error_class_templates: Mapping[ExceptionKey, str] = field(default_factory=dict)
    default_error_template: str = ""
    notification_channel: str = "email"
    notification_targets: Tuple[str, ...] = ()

    @property
    def last_resort_error_template(self) -> str:
        """Terminal fallback page. Not configurable."""
        return str(LAST_RESORT_ERROR_TEMPLATE)

    @property
    def default_status_code(self) -> str:
        return self.error_class_status_codes[DEFAULT_KEY]

    def to_draft(self) -> Dict[str, Any]:
        """Return a mutable copy of every option, keyed by option name."""
        draft: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, Mapping):
                value = dict(value)
            elif isinstance(value, frozenset):
                value = set(value)
            elif isinstance(value, tuple):
                value = list(value)
            draft[item.name] = value
        return draft


OPTION_NAMES: FrozenSet[str] = frozenset(item.name for item in fields(HandlerConfig))
_MAPPING_OPTIONS = {"error_class_status_codes", "error_class_templates"}
_SET_OPTIONS = {"notify_exception_classes", "notify_status_codes", "local_client_hosts"}
_SEQUENCE_OPTIONS = {"request_field_skip_patterns", "notification_targets"}


def _build_config(draft: Mapping[str, Any]) -> HandlerConfig:
    if "last_resort_error_template" in draft:
        raise HandlerConfigError("last_resort_error_template is fixed and cannot be overridden.")
    unknown = sorted(set(draft) - OPTION_NAMES)
    if unknown:
        raise HandlerConfigError(f"Unknown exception handler option(s): {', '.join(unknown)}")

    values: Dict[str, Any] = {}
    for name, value in draft.items():
        if name in _MAPPING_OPTIONS:
            value = MappingProxyType(dict(value or {}))
        elif name in _SET_OPTIONS:
            value = frozenset(str(item) if name == "notify_status_codes" else item for item in (value or ()))
        elif name in _SEQUENCE_OPTIONS:
            value = tuple(value or ())
        elif name == "error_template_dir" and value:
            value = Path(value)
        values[name] = value

    codes = values.get("error_class_status_codes")
    if codes is not None and DEFAULT_KEY not in codes:
        raise HandlerConfigError("error_class_status_codes must keep a 'default' entry.")
    if codes is not None:
        values["error_class_status_codes"] = MappingProxyType({key: str(code) for key, code in codes.items()})
    return HandlerConfig(**values)


_LOCK = threading.Lock()
_CONFIG = _build_config(HandlerConfig().to_draft())
_HANDLING_STARTED = False


def get_handler_config() -> HandlerConfig:
    return _CONFIG


def mark_handling_started() -> None:
    """Record that exception handling is live; later mutations are a hazard."""
    global _HANDLING_STARTED
    _HANDLING_STARTED = True


def _install(config: HandlerConfig) -> HandlerConfig:
    global _CONFIG
    if _HANDLING_STARTED:
        logger.warning(
            "exception_handler.config.mutated_after_start",
            extra={"app_name": config.app_name},
        )
    _CONFIG = config
    return config


def configure(mutator: Callable[[Dict[str, Any]], None]) -> HandlerConfig:
    """Apply ``mutator`` to a mutable draft of the current config and install the result."""
    with _LOCK:
        draft = _CONFIG.to_draft()
        mutator(draft)
        return _install(_build_config(draft))


def update_handler_config(*, replace: bool = False, **options: Any) -> HandlerConfig:
    """Merge ``options`` into the current configuration.

    Mapping options are merged key by key and set options unioned unless
    ``replace`` is true; every other option is simply assigned. ``None`` for a
    mapping or set option merges nothing, and with ``replace`` empties it.
    """

    def _merge(draft: Dict[str, Any]) -> None:
        for name, value in options.items():
            if name not in draft:
                # Let _build_config produce the error message.
                draft[name] = value
                continue
            if not replace and name in _MAPPING_OPTIONS:
                draft[name].update(value or {})
            elif not replace and name in _SET_OPTIONS:
                draft[name].update(value or ())
            else:
                draft[name] = value

    return configure(_merge)


def reset_handler_config() -> HandlerConfig:
    """Restore the defaults. Meant for startup code and tests."""
    global _CONFIG, _HANDLING_STARTED
    with _LOCK:
        _CONFIG = _build_config(HandlerConfig().to_draft())
        _HANDLING_STARTED = False
        return _CONFIG


def _parse_skip_pattern(raw: str) -> SkipPattern:
    if raw.startswith("re:"):
        return re.compile(raw[3:])
    return raw


_ENV_BOOL_OPTIONS = {
    "EXCEPTION_NOTIFY_ON_LOCAL_ERROR": "notify_on_local_error",
    "EXCEPTION_NOTIFY_ON_PUBLIC_ERROR": "notify_on_public_error",
    "EXCEPTION_NOTIFY_ON_BACKGROUND_ERROR": "notify_on_background_error",
    "EXCEPTION_HANDLE_LOCAL_ERRORS": "handle_local_errors",
    "EXCEPTION_HANDLE_PUBLIC_ERRORS": "handle_public_errors",
    "EXCEPTION_DEFERRED_FOR_REQUESTS": "deferred_dispatch_for_request_context",
    "EXCEPTION_DEFERRED_FOR_BACKGROUND": "deferred_dispatch_for_non_request_context",
}


def load_handler_config_from_env() -> HandlerConfig:
    """Apply ``EXCEPTION_*`` environment overrides on top of the current config."""

    def _apply(draft: Dict[str, Any]) -> None:
        for env_key, option in _ENV_BOOL_OPTIONS.items():
            value = env_bool(env_key, None)
            if value is not None:
                draft[option] = value

        app_name = env_str("EXCEPTION_APP_NAME")
        if app_name is not None:
            draft["app_name"] = app_name
        template_dir = env_str("EXCEPTION_ERROR_TEMPLATE_DIR")
        if template_dir:
            draft["error_template_dir"] = template_dir
        default_template = env_str("EXCEPTION_DEFAULT_ERROR_TEMPLATE")
        if default_template is not None:
            draft["default_error_template"] = default_template
        channel = env_str("EXCEPTION_NOTIFICATION_CHANNEL")
        if channel:
            draft["notification_channel"] = channel.strip().lower()

        status_codes = env_list("EXCEPTION_NOTIFY_STATUS_CODES")
        if status_codes is not None:
            draft["notify_status_codes"] = set(status_codes)
        notify_classes = env_list("EXCEPTION_NOTIFY_EXCEPTION_CLASSES")
        if notify_classes is not None:
            draft["notify_exception_classes"] = set(notify_classes)
        targets = env_list("EXCEPTION_NOTIFICATION_TARGETS")
        if targets is not None:
            draft["notification_targets"] = targets
        local_hosts = env_list("EXCEPTION_LOCAL_CLIENT_HOSTS")
        if local_hosts is not None:
            draft["local_client_hosts"] = set(local_hosts)
        extra_patterns = env_list("EXCEPTION_REQUEST_FIELD_SKIP_PATTERNS")
        if extra_patterns:
            draft["request_field_skip_patterns"].extend(_parse_skip_pattern(item) for item in extra_patterns)

    return configure(_apply)


__all__ = [
    "DEFAULT_KEY",
    "HandlerConfig",
    "HandlerConfigError",
    "LAST_RESORT_ERROR_TEMPLATE",
    "OPTION_NAMES",
    "configure",
    "default_status_codes",
    "get_handler_config",
    "load_handler_config_from_env",
    "mark_handling_started",
    "reset_handler_config",
    "update_handler_config",
]
