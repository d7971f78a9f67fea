"""Redaction for DEBUG logging of deployment traffic.

Component ``configuration`` blocks routinely carry credentials
(``dbPassword``, ``apiKey``, ...) and job notifications carry presigned
document URLs whose query string is itself a credential.  Anything
logged from those payloads goes through :func:`redact_for_log`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel

_REDACTED = "<redacted>"
_MAX_DEPTH = 16

# Matched against the end of the normalized key, so ``db_password`` and
# ``mqttClientSecret`` are caught as well.
_SENSITIVE_KEY_SUFFIXES: tuple[str, ...] = (
    "password",
    "passwd",
    "secret",
    "token",
    "apikey",
    "privatekey",
    "credentials",
    "authorization",
    "cookie",
)


def _is_sensitive(key: object) -> bool:
    normalized = str(key).replace("_", "").replace("-", "").lower()
    return normalized.endswith(_SENSITIVE_KEY_SUFFIXES)


def redact_url(url: str) -> str:
    """Drop the query string and userinfo of *url*; other strings pass through."""
    if "://" not in url:
        return url
    parts = urlsplit(url)
    if not parts.query and "@" not in parts.netloc:
        return url
    host = parts.netloc.rpartition("@")[2]
    query = _REDACTED if parts.query else ""
    return urlunsplit((parts.scheme, host, parts.path, query, ""))


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a copy of *value* that is safe to put in a DEBUG log line.

    Values under secret-looking keys are replaced, URLs lose their
    query string, long strings are cut at *max_string* characters and
    pydantic models are dumped with their wire aliases first.
    """
    if _depth >= _MAX_DEPTH:
        return "<nested>"
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, str):
        value = redact_url(value)
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {
            str(key): _REDACTED
            if _is_sensitive(key)
            else redact_for_log(item, max_string=max_string, _depth=_depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, Sequence):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]
    return f"<{type(value).__name__}>"
