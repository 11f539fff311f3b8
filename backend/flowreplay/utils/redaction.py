"""
Scrubbing of sensitive data before it reaches logs, results or the database.

- ``redact_sensitive_data`` replaces values stored under sensitive-looking keys
  (headers, captured payloads).
- ``mask_values`` hides the literal values of variables flagged ``sensitive``
  wherever they show up inside a free-text log message.
- ``strip_sensitive`` drops flagged variables from the outputs of a run.
"""
from __future__ import annotations

import re
from typing import Any, Iterable

REDACTION_PLACEHOLDER = "***REDACTED***"

SENSITIVE_KEY_RE = re.compile(
    r"passw(or)?d|token|api[_-]?key|secret|credential|authorization|private[_-]?key|cookie",
    re.IGNORECASE,
)

# Masking one- or two-character values would shred unrelated text.
_MIN_MASKABLE_LEN = 3


def is_sensitive_key(key: str, extra_keys: Iterable[str] = ()) -> bool:
    """True when ``key`` looks secret, or contains one of ``extra_keys`` (case-insensitive)."""
    if SENSITIVE_KEY_RE.search(key):
        return True
    lowered = key.lower()
    return any(extra.lower() in lowered for extra in extra_keys if extra)


def redact_sensitive_data(data: Any, extra_keys: Iterable[str] = (), max_depth: int = 10) -> Any:
    """Return a copy of ``data`` with every sensitive key's value replaced.

    Containers nested deeper than ``max_depth`` are returned as-is.
    """
    extra = tuple(extra_keys)

    def _walk(value: Any, depth: int) -> Any:
        if depth <= 0:
            return value
        if isinstance(value, dict):
            return {
                k: REDACTION_PLACEHOLDER if is_sensitive_key(str(k), extra) else _walk(v, depth - 1)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return type(value)(_walk(item, depth - 1) for item in value)
        return value

    return _walk(data, max_depth)


def mask_values(text: str | None, secrets: Iterable[Any]) -> str | None:
    """Replace every literal occurrence of a secret value inside ``text``."""
    if not text:
        return text
    masked = text
    # Longest first so a secret that contains another is masked whole.
    for value in sorted({str(s) for s in secrets if s is not None}, key=len, reverse=True):
        if len(value) < _MIN_MASKABLE_LEN:
            continue
        masked = masked.replace(value, REDACTION_PLACEHOLDER)
    return masked


def strip_sensitive(variables: dict[str, Any], sensitive_keys: Iterable[str]) -> dict[str, Any]:
    """Return a copy of ``variables`` without the keys flagged sensitive."""
    hidden = set(sensitive_keys)
    return {k: v for k, v in variables.items() if k not in hidden}
