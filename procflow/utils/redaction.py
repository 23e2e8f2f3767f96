"""
Redaction of sensitive values in persisted execution events.

Execution contexts carry applicant data and collaborator results; anything
whose key looks like a credential is replaced before it reaches the timeline
or an escalation payload.  Extra key patterns come from
``settings.REDACTED_FIELDS``.
"""
import re
from typing import Any

# Key fragments matched anywhere in a key, case-insensitively.
_SENSITIVE_FRAGMENTS = (
    r"password",
    r"token",
    r"api[_-]?key",
    r"secret",
    r"credential",
    r"private[_-]?key",
    r"access[_-]?key",
    r"authorization",
    r"ssn|social[_-]?security",
)

DEFAULT_SENSITIVE_PATTERNS = [
    re.compile(rf"^.*({fragment}).*$", re.IGNORECASE) for fragment in _SENSITIVE_FRAGMENTS
] + [re.compile(r"^.*pin(_?code)?$", re.IGNORECASE)]

REDACTION_PLACEHOLDER = "***REDACTED***"

_REGEX_CHARS = frozenset(r".*+?[](){}^$|\\")


def build_patterns(extra_fields: list[str] | None = None) -> list[re.Pattern]:
    """Combine the default patterns with extra field names.

    Entries containing regex metacharacters are compiled as-is; plain names
    match as case-insensitive substrings.  Invalid regexes are skipped.
    """
    patterns = list(DEFAULT_SENSITIVE_PATTERNS)
    for field in extra_fields or []:
        source = field if _REGEX_CHARS.intersection(field) else rf"^.*{re.escape(field)}.*$"
        try:
            patterns.append(re.compile(source, re.IGNORECASE))
        except re.error:
            continue
    return patterns


def _is_sensitive_key(key: str, patterns: list[re.Pattern]) -> bool:
    return any(pattern.match(key) for pattern in patterns)


def redact_sensitive_data(
    data: Any,
    max_depth: int = 10,
    patterns: list[re.Pattern] | None = None,
) -> Any:
    """Return a copy of *data* with sensitive dict values replaced.

    Lists and tuples are walked (tuples come back as lists, ready for JSON).
    Nesting deeper than *max_depth* is returned untouched.
    """
    if max_depth <= 0:
        return data
    check = DEFAULT_SENSITIVE_PATTERNS if patterns is None else patterns

    if isinstance(data, dict):
        return {
            key: REDACTION_PLACEHOLDER
            if _is_sensitive_key(str(key), check)
            else redact_sensitive_data(value, max_depth - 1, check)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, max_depth - 1, check) for item in data]
    return data
