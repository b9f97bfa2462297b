"""Redaction helpers for log lines.

Resolved content addresses and configuration payloads routinely carry session
tokens and push tokens; everything that is logged goes through here first.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
)

_SENSITIVE_EXACT = {
    # Avoid false-positives like "author" while still protecting obvious keys.
    "auth",
    "af_id",
}


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def _redact_pairs(raw: str) -> tuple[str, bool]:
    pairs = parse_qsl(raw, keep_blank_values=True)
    out_pairs: list[tuple[str, str]] = []
    redacted_any = False
    for k, v in pairs:
        if is_sensitive_key(k) and v:
            out_pairs.append((k, "<redacted>"))
            redacted_any = True
        else:
            out_pairs.append((k, v))
    if not redacted_any:
        return raw, False
    return urlencode(out_pairs, doseq=True), True


def redact_url(url: str | None) -> str | None:
    """Mask token-like query/fragment values and drop userinfo.

    Returns the original URL unchanged when no redaction is needed.
    """
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    changed = False
    netloc = parts.netloc
    query = parts.query
    fragment = parts.fragment

    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True
    if query:
        query, did = _redact_pairs(query)
        changed = changed or did
    if fragment and "=" in fragment:
        fragment, did = _redact_pairs(fragment)
        changed = changed or did

    if not changed:
        return url
    return urlunsplit((parts.scheme, netloc, parts.path, query, fragment))


def redact_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Shallow copy of a request payload with sensitive values masked."""
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if is_sensitive_key(str(key)) and value not in (None, ""):
            out[key] = "<redacted>"
        elif isinstance(value, str) and value.startswith(("http://", "https://")):
            out[key] = redact_url(value)
        else:
            out[key] = value
    return out


__all__ = ["is_sensitive_key", "redact_payload", "redact_url"]
