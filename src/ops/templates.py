"""Structural placeholder rendering for mission and step templates."""

from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_\-\.]+)\s*\}\}")
_MISSING = object()


def resolve_path(context: Any, path: str) -> Any:
    """Resolve a dotted path against nested mappings and lists.

    Returns the module-private missing sentinel when any segment is absent, so
    callers can distinguish an unresolved path from a resolved ``None``.
    """
    cursor = context
    for segment in path.split("."):
        if isinstance(cursor, dict):
            if segment not in cursor:
                return _MISSING
            cursor = cursor[segment]
        elif isinstance(cursor, (list, tuple)):
            try:
                index = int(segment)
            except ValueError:
                return _MISSING
            if index < 0 or index >= len(cursor):
                return _MISSING
            cursor = cursor[index]
        else:
            return _MISSING
    return cursor


def is_resolved(value: Any) -> bool:
    """Return True when ``value`` is not the missing sentinel."""
    return value is not _MISSING


def render_template(template: Any, context: dict[str, Any]) -> Any:
    """Render ``{{path}}`` placeholders in a parsed template tree.

    A string consisting of a single placeholder is replaced by the raw
    resolved value; placeholders embedded in longer strings are replaced by
    their string form. Unresolved placeholders are left verbatim. The input
    tree is never mutated.
    """
    if isinstance(template, str):
        return _render_string(template, context)
    if isinstance(template, dict):
        return {key: render_template(value, context) for key, value in template.items()}
    if isinstance(template, list):
        return [render_template(item, context) for item in template]
    return template


def _render_string(value: str, context: dict[str, Any]) -> Any:
    whole = _PLACEHOLDER.fullmatch(value.strip())
    if whole is not None and value.strip() == value:
        resolved = resolve_path(context, whole.group(1))
        return value if resolved is _MISSING else resolved

    def replace(match: re.Match[str]) -> str:
        resolved = resolve_path(context, match.group(1))
        if resolved is _MISSING:
            return match.group(0)
        return _stringify(resolved)

    return _PLACEHOLDER.sub(replace, value)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
