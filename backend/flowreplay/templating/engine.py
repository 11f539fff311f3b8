"""Placeholder rendering for node configs: ``{var}``, ``{{ var }}`` and dotted paths."""

from __future__ import annotations

import re
from typing import Any

# {{ a.b }} is accepted alongside the recorder's {a.b}; JSON-ish text like {"a": 1} never matches.
_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}|\{([\w.]+)\}")

_LENGTH_ALIASES = frozenset({"length", "len", "count"})
_MISSING = object()


def _descend(current: Any, part: str) -> Any:
    if isinstance(current, dict):
        return current.get(part, _MISSING)
    if isinstance(current, list):
        if part in _LENGTH_ALIASES:
            return len(current)
        if part.isdigit() and int(part) < len(current):
            return current[int(part)]
    return _MISSING


def resolve_path(path: str, ctx: dict[str, Any]) -> Any:
    """Look up ``a.b.0.c`` in ``ctx``; None when any segment is missing."""
    current: Any = ctx
    for part in path.split("."):
        current = _descend(current, part)
        if current is _MISSING or current is None:
            return None
    return current


def render_template_str(template: str, ctx: dict[str, Any]) -> str:
    """Substitute every placeholder in ``template``; unknown paths render empty."""
    if not isinstance(template, str):
        return template

    def _sub(match: re.Match) -> str:
        value = resolve_path(match.group(1) or match.group(2), ctx)
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)
