"""
Transport hardening: baseline response headers, payload ceiling, and the
content-type whitelist for mutating requests.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from starlette.requests import ClientDisconnect

from flowgate.errors import PayloadTooLargeError, RejectionReason

Message = dict[str, Any]
Receive = Callable[[], Awaitable[Message]]

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def security_headers(hsts_max_age: int = 31_536_000) -> dict[str, str]:
    """Headers added to every response, rejections included."""
    return {
        "X-Content-Type-Options": "nosniff",
        "X-XSS-Protection": "1; mode=block",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": f"max-age={hsts_max_age}; includeSubDomains; preload",
        "Content-Security-Policy": (
            "default-src 'self'; style-src 'self' 'unsafe-inline'; "
            "script-src 'self'; img-src 'self' data: https:"
        ),
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }


def media_type(content_type: str | None) -> str | None:
    """'application/json; charset=utf-8' -> 'application/json'."""
    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip().lower() or None


def declared_length(headers: Mapping[str, str]) -> int | None:
    """Content-Length as int; -1 when present but malformed."""
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return -1
    return value if value >= 0 else -1


def has_body(headers: Mapping[str, str]) -> bool:
    if "transfer-encoding" in headers:
        return True
    length = declared_length(headers)
    return length is not None and length != 0


def check_content_length(headers: Mapping[str, str], max_bytes: int) -> RejectionReason | None:
    """Reject a declared (or malformed) Content-Length over the ceiling."""
    length = declared_length(headers)
    if length is None:
        return None
    if length < 0 or length > max_bytes:
        return RejectionReason.PAYLOAD_TOO_LARGE
    return None


def check_content_type(
    method: str,
    headers: Mapping[str, str],
    allowed: Iterable[str],
) -> RejectionReason | None:
    """
    Mutating requests carrying a body must use a whitelisted media type.

    A POST/PUT/PATCH with no body and no Content-Type passes. A DELETE is
    only checked when it carries a body.
    """
    method = method.upper()
    if method not in STATE_CHANGING_METHODS:
        return None
    body = has_body(headers)
    if method == "DELETE" and not body:
        return None
    mtype = media_type(headers.get("content-type"))
    if mtype is None and not body:
        return None
    if mtype not in {a.lower() for a in allowed}:
        return RejectionReason.UNSUPPORTED_CONTENT_TYPE
    return None


async def read_body_limited(receive: Receive, max_bytes: int) -> bytes:
    """
    Read an ASGI request body, aborting as soon as max_bytes is crossed.

    Raises:
        PayloadTooLargeError: body exceeded max_bytes (remaining chunks unread)
        ClientDisconnect: client went away mid-body
    """
    chunks: list[bytes] = []
    total = 0
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            raise ClientDisconnect()
        chunk = message.get("body", b"")
        if chunk:
            total += len(chunk)
            if total > max_bytes:
                raise PayloadTooLargeError(max_bytes)
            chunks.append(chunk)
        if not message.get("more_body", False):
            return b"".join(chunks)


def replay_receive(body: bytes, receive: Receive) -> Receive:
    """
    A receive callable that yields body once, then defers to the real receive
    (so downstream still sees http.disconnect).
    """
    sent = False

    async def _receive() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return _receive
