"""Strip sensitive or framework-internal fields from captured request data."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Pattern, Union

SkipPattern = Union[str, Pattern[str]]


def _matches(name: str, pattern: SkipPattern) -> bool:
    if isinstance(pattern, str):
        return name == pattern
    return pattern.search(name) is not None


def should_skip_field(name: str, skip_patterns: Iterable[SkipPattern]) -> bool:
    return any(_matches(name, pattern) for pattern in skip_patterns)


def filter_request_data(
    raw_fields: Optional[Mapping[str, Any]],
    skip_patterns: Iterable[SkipPattern],
) -> Dict[str, Any]:
    """Return a copy of ``raw_fields`` without any field matching a skip pattern."""
    if not raw_fields:
        return {}
    patterns = tuple(skip_patterns)
    return {
        name: value
        for name, value in raw_fields.items()
        if not should_skip_field(str(name), patterns)
    }


__all__ = ["filter_request_data", "should_skip_field"]
