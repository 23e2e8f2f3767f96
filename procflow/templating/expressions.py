"""Edge condition evaluator: no eval(), operator dispatch only."""

from __future__ import annotations

import logging
import operator
import re
from typing import Any

from procflow.templating.engine import render_template_str, resolve_path, single_placeholder

logger = logging.getLogger("procflow.templating.expressions")


def _contains(a: Any, b: Any) -> bool:
    return hasattr(a, "__contains__") and b in a


def _is_empty(a: Any, _: Any = None) -> bool:
    return a is None or a == "" or a == [] or a == {}


_OPS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "starts_with": lambda a, b: str(a).startswith(str(b)),
    "ends_with": lambda a, b: str(a).endswith(str(b)),
    "in": lambda a, b: _contains(b, a),
    "is_empty": _is_empty,
    "is_not_empty": lambda a, _: not _is_empty(a),
}

# left_operand operator right_operand, e.g. "{{context.age}} >= 18"
_BINARY_RE = re.compile(
    r"^(.+?)\s+(==|!=|>=|<=|>|<|not_contains|contains|starts_with|ends_with|in)\s+(.+)$"
)
# unary form, e.g. "is_empty {{outputs.collect.missing}}"
_UNARY_RE = re.compile(r"^(is_empty|is_not_empty)\s+(.+)$")


def evaluate_condition(expr: str | None, ctx: dict[str, Any]) -> bool:
    """Evaluate an edge condition against *ctx*.

    Supported forms::

        {{outputs.verify.verified}} == true
        {{context.age}} >= 18
        {{outputs.review.decision}} in ['approve', 'request_more_info']
        is_empty {{context.missing_documents}}
        {{context.flag}}            # truthiness
        true / false

    ``None`` or an empty expression is always satisfied.  Operands that fail
    to compare (e.g. ``None > 3``) make the condition false.
    """
    if expr is None or not expr.strip():
        return True
    text = expr.strip()

    if text.lower() in ("true", "yes"):
        return True
    if text.lower() in ("false", "no"):
        return False

    unary = _UNARY_RE.match(text)
    if unary:
        return bool(_OPS[unary.group(1)](_operand(unary.group(2), ctx), None))

    binary = _BINARY_RE.match(text)
    if binary:
        left = _operand(binary.group(1), ctx)
        right = _operand(binary.group(3), ctx)
        try:
            return bool(_OPS[binary.group(2)](left, right))
        except TypeError:
            logger.debug("Condition %r not comparable (%r, %r)", expr, left, right)
            return False

    return bool(_operand(text, ctx))


def _operand(token: str, ctx: dict[str, Any]) -> Any:
    token = token.strip()
    match = single_placeholder(token)
    if match:
        return resolve_path(match.group(1), ctx)
    if token.startswith("[") and token.endswith("]"):
        inner = token[1:-1].strip()
        return [_operand(part, ctx) for part in inner.split(",")] if inner else []
    if "{{" in token:
        return _coerce(render_template_str(token, ctx))
    return _coerce(token)


def _coerce(value: str) -> Any:
    """Coerce a literal token to a Python value."""
    stripped = value.strip()
    if len(stripped) >= 2 and stripped[0] == stripped[-1] and stripped[0] in ("'", '"'):
        return stripped[1:-1]
    lowered = stripped.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("none", "null"):
        return None
    try:
        return float(stripped) if "." in stripped else int(stripped)
    except ValueError:
        return stripped
