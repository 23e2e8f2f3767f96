"""Template helpers: ``{{path}}`` expansion against an execution context."""

from __future__ import annotations

import re
from typing import Any

# Matches {{path.to.value}} or {{path.to.value | default}}
_TEMPLATE_RE = re.compile(r"\{\{\s*([\w.-]+)\s*(?:\|\s*(.+?))?\s*\}\}")

_MISSING = object()


def resolve_path(path: str, ctx: dict[str, Any], default: Any = None) -> Any:
    """Resolve a dotted path like ``outputs.verify.verified`` against *ctx*.

    Lists accept numeric segments and ``length``; anything unresolvable
    yields *default*.
    """
    current: Any = ctx
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part in ("length", "len", "count"):
            current = len(current)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            current = current[idx] if idx < len(current) else _MISSING
        else:
            return default
        if current is _MISSING or current is None:
            return default
    return current


def single_placeholder(text: str) -> re.Match | None:
    """Return the match when *text* is exactly one ``{{...}}`` placeholder."""
    match = _TEMPLATE_RE.fullmatch(text.strip())
    return match


def render_template_str(template: str, ctx: dict[str, Any]) -> str:
    """Replace every ``{{path}}`` placeholder in *template* with its string value."""
    if not isinstance(template, str):
        return template

    def replacer(match: re.Match) -> str:
        value = resolve_path(match.group(1), ctx)
        if value is None:
            default = match.group(2)
            return default.strip().strip("'\"") if default else ""
        return str(value)

    return _TEMPLATE_RE.sub(replacer, template)


def render_value(value: Any, ctx: dict[str, Any]) -> Any:
    """Recursively render templates in strings nested inside dicts and lists."""
    if isinstance(value, str):
        match = single_placeholder(value)
        if match:
            # Keep the native type for whole-value placeholders.
            resolved = resolve_path(match.group(1), ctx)
            return resolved if resolved is not None else render_template_str(value, ctx)
        return render_template_str(value, ctx)
    if isinstance(value, dict):
        return {k: render_value(v, ctx) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(item, ctx) for item in value]
    return value
