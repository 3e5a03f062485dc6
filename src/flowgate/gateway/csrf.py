"""
Per-session CSRF tokens.

A token is issued on a safe (read) request and must be echoed on the next
unsafe (write) request of the same session, via the X-CSRF-Token header or
the _csrf body field. Tokens expire after the TTL (default one hour).
"""

from __future__ import annotations

import hmac
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

CSRF_HEADER = "X-CSRF-Token"
CSRF_FIELD = "_csrf"


@dataclass(frozen=True)
class CsrfToken:
    token: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CsrfTokenStore:
    """
    Thread-safe session -> token map with TTL.

    A live token is reused for repeat reads of the same session, so parallel
    tabs do not invalidate each other's tokens.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        *,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval: float = 300,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._tokens: dict[str, CsrfToken] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def issue(self, session_id: str) -> str:
        """Token for the session, minting a new one if none is live."""
        now = self._clock()
        with self._lock:
            self._maybe_cleanup(now)
            current = self._tokens.get(session_id)
            if current is not None and not current.is_expired(now):
                return current.token
            token = CsrfToken(secrets.token_hex(32), now + self._ttl)
            self._tokens[session_id] = token
            return token.token

    def verify(self, session_id: str, provided: str | None) -> bool:
        """Constant-time comparison against the session's live token."""
        if not provided:
            return False
        now = self._clock()
        with self._lock:
            current = self._tokens.get(session_id)
        if current is None or current.is_expired(now):
            return False
        return hmac.compare_digest(current.token.encode(), provided.encode())

    def revoke(self, session_id: str) -> bool:
        with self._lock:
            return self._tokens.pop(session_id, None) is not None

    def _maybe_cleanup(self, now: float) -> None:
        """Drop expired tokens (must hold lock)."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._tokens = {s: t for s, t in self._tokens.items() if not t.is_expired(now)}
        self._last_cleanup = now

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
