"""
Input sanitization for query and body string fields.

Defense in depth only: a denylist strips characters and keywords associated
with SQL injection, then HTML-significant characters in body values are
escaped. Query values are only stripped, so paths and URLs pass intact. None
of this replaces parameterized queries downstream.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import parse_qsl, urlencode

from starlette.datastructures import ImmutableMultiDict, MultiDict

_SQL_CHARS = re.compile(r"[';\\]")
_SQL_KEYWORDS = re.compile(r"\b(union|select|insert|update|delete|drop)\b", re.IGNORECASE)

_HTML_ESCAPES = {
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_HTML_CHARS = re.compile("[" + re.escape("".join(_HTML_ESCAPES)) + "]")


def sanitize_string(value: str, *, escape_html: bool = True) -> str:
    # Escape after stripping: the entities themselves contain ';'
    value = _SQL_CHARS.sub("", value)
    value = _SQL_KEYWORDS.sub("", value)
    if not escape_html:
        return value
    return _HTML_CHARS.sub(lambda m: _HTML_ESCAPES[m.group(0)], value)


def sanitize_value(value: Any) -> Any:
    """Recursively sanitize string leaves of dicts, lists and form data. Keys are kept."""
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, ImmutableMultiDict):
        return MultiDict([(k, sanitize_string(v)) for k, v in value.multi_items()])
    if isinstance(value, dict):
        return {k: sanitize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_value(v) for v in value]
    return value


def sanitize_query_string(query_string: str) -> str:
    """SQL stripping only; query values are not HTML-escaped."""
    pairs = parse_qsl(query_string, keep_blank_values=True)
    return urlencode([(k, sanitize_string(v, escape_html=False)) for k, v in pairs])


def parse_body(raw: bytes, media_type: str | None) -> Any:
    """
    Decode a JSON or form body.

    Returns:
        Parsed JSON value, a MultiDict for form bodies (repeated keys kept),
        or None when the body is empty, not decodable, or of another media type
    """
    if not raw:
        return None
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if media_type == "application/json":
        try:
            return json.loads(text)
        except ValueError:
            return None
    if media_type == "application/x-www-form-urlencoded":
        return MultiDict(parse_qsl(text, keep_blank_values=True))
    return None


def encode_body(value: Any, media_type: str | None) -> bytes:
    if media_type == "application/x-www-form-urlencoded":
        pairs = value.multi_items() if isinstance(value, ImmutableMultiDict) else value
        return urlencode(pairs).encode("utf-8")
    return json.dumps(value, ensure_ascii=False).encode("utf-8")
