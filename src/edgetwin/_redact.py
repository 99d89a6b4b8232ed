"""Redaction of secrets in DEBUG log output.

Twin documents, method payloads and event payloads are logged at DEBUG;
keys that can carry credentials are masked and long strings truncated.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

_REDACTED = "<redacted>"
_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "secret",
        "sharedaccesskey",
        "signature",
        "token",
        "accesstoken",
        "authorization",
        "connectionstring",
    }
)


def _is_sensitive(key: Any) -> bool:
    return str(key).lower().replace("_", "") in _SENSITIVE_KEYS


def redact_for_log(value: Any, *, max_string: int = 256) -> Any:
    """Return a copy of a JSON-like *value* that is safe to log."""
    if isinstance(value, Mapping):
        return {
            str(key): _REDACTED if _is_sensitive(key) else redact_for_log(item, max_string=max_string)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_for_log(item, max_string=max_string) for item in value]
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if isinstance(value, str) and len(value) > max_string:
        return f"{value[:max_string]}…<truncated>"
    return value
