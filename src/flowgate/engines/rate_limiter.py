"""
Rate Limiting for Flowgate.

Fixed windows that reset once expired ("sliding window by reset"): the first
request from a key opens a window with count=1, later requests increment it,
and requests are allowed while count <= limit.

Counters live in a CounterStore injected into named limiters. The in-memory
store is the designed single-node scope; the Redis store is the extension
point for store-backed counters.

Zero-trust: Default deny when rate limit exceeded.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

Clock = Callable[[], float]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimitResult(Enum):
    """Result of a rate limit check."""

    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass
class RateWindow:
    """Live counting window for one key."""

    key: str
    window_start: float  # ms, in the store's clock
    count: int
    limit: int
    window_ms: int

    def is_expired(self, now_ms: float) -> bool:
        return now_ms - self.window_start >= self.window_ms


@dataclass
class RateLimitInfo:
    """Information about current rate limit state."""

    result: RateLimitResult
    key: str
    current_count: int
    limit: int
    window_ms: int
    remaining: int
    reset_in_ms: int
    retry_after_ms: int | None = None  # Set when denied
    limiter: str | None = None

    @property
    def is_allowed(self) -> bool:
        return self.result == RateLimitResult.ALLOWED

    @property
    def retry_after_seconds(self) -> int:
        """Retry-After header value (whole seconds, rounded up, at least 1)."""
        return max(1, math.ceil((self.retry_after_ms or self.reset_in_ms) / 1000))

    @classmethod
    def from_window(
        cls, window: RateWindow, now_ms: float, limiter: str | None = None
    ) -> RateLimitInfo:
        reset_in = max(0, int(math.ceil(window.window_start + window.window_ms - now_ms)))
        allowed = window.count <= window.limit
        return cls(
            result=RateLimitResult.ALLOWED if allowed else RateLimitResult.DENIED,
            key=window.key,
            current_count=window.count,
            limit=window.limit,
            window_ms=window.window_ms,
            remaining=max(0, window.limit - window.count),
            reset_in_ms=reset_in,
            retry_after_ms=None if allowed else reset_in,
            limiter=limiter,
        )


@runtime_checkable
class CounterStore(Protocol):
    """
    Protocol for rate-limit counter tables.

    atomic_increment must perform open-or-increment as one atomic step so two
    concurrent callers can never both observe count <= limit for the last slot.
    """

    def get(self, key: str) -> RateWindow | None:
        """Current live window, or None if absent or expired."""
        ...

    def set(self, key: str, window: RateWindow) -> None:
        ...

    def invalidate(self, key: str) -> bool:
        """Drop the window for a key. Returns True if one existed."""
        ...

    def atomic_increment(self, key: str, limit: int, window_ms: int) -> tuple[RateWindow, float]:
        """
        Open a new window (count=1) or increment the live one.

        Returns:
            Snapshot of the window after the increment, and the store's now (ms)
        """
        ...


class InMemoryCounterStore:
    """
    In-memory counter table.

    Thread-safe; the whole open-or-increment step runs under one lock and
    contains no await, so a cancelled request can never leave a half-applied
    increment.
    """

    def __init__(self, clock: Clock | None = None, cleanup_interval_ms: int = 60_000) -> None:
        self._clock = clock or _monotonic_ms
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval_ms
        self._last_cleanup = self._clock()

    def get(self, key: str) -> RateWindow | None:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.is_expired(now):
                return None
            return RateWindow(**vars(window))

    def set(self, key: str, window: RateWindow) -> None:
        with self._lock:
            self._windows[key] = window

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._windows.pop(key, None) is not None

    def atomic_increment(self, key: str, limit: int, window_ms: int) -> tuple[RateWindow, float]:
        now = self._clock()
        with self._lock:
            self._maybe_cleanup(now)

            window = self._windows.get(key)
            if window is None or window.is_expired(now):
                window = RateWindow(key=key, window_start=now, count=1, limit=limit, window_ms=window_ms)
                self._windows[key] = window
            else:
                window.count += 1

            return RateWindow(**vars(window)), now

    def _maybe_cleanup(self, now: float) -> None:
        """Drop expired windows (must hold lock)."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._windows = {k: w for k, w in self._windows.items() if not w.is_expired(now)}
        self._last_cleanup = now

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)


class RedisCounterStore:
    """
    Redis-backed counter table.

    Uses SET NX PX + INCR + PTTL in one MULTI/EXEC transaction, so the
    increment and the window creation are atomic on the server. Window start
    is derived from the remaining TTL.

    Requires:
        pip install redis

    Usage:
        import redis
        store = RedisCounterStore(redis.Redis(host="localhost", port=6379))
    """

    def __init__(self, redis_client: Any, key_prefix: str = "flowgate:ratelimit:") -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix

    def _now_ms(self) -> float:
        return time.time() * 1000

    def get(self, key: str) -> RateWindow | None:
        redis_key = f"{self._key_prefix}{key}"
        pipe = self._redis.pipeline()
        pipe.get(redis_key)
        pipe.pttl(redis_key)
        raw_count, ttl = pipe.execute()
        if raw_count is None or ttl is None or ttl <= 0:
            return None
        # Window size is not stored; report the remaining TTL as the window.
        return RateWindow(
            key=key,
            window_start=self._now_ms(),
            count=int(raw_count),
            limit=0,
            window_ms=int(ttl),
        )

    def set(self, key: str, window: RateWindow) -> None:
        remaining = int(window.window_start + window.window_ms - self._now_ms())
        if remaining > 0:
            self._redis.set(f"{self._key_prefix}{key}", window.count, px=remaining)

    def invalidate(self, key: str) -> bool:
        return self._redis.delete(f"{self._key_prefix}{key}") > 0

    def atomic_increment(self, key: str, limit: int, window_ms: int) -> tuple[RateWindow, float]:
        redis_key = f"{self._key_prefix}{key}"
        now = self._now_ms()

        pipe = self._redis.pipeline(transaction=True)
        pipe.set(redis_key, 0, px=window_ms, nx=True)
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        _, count, ttl = pipe.execute()

        remaining = int(ttl) if ttl and ttl > 0 else window_ms
        window = RateWindow(
            key=key,
            window_start=now - (window_ms - remaining),
            count=int(count),
            limit=limit,
            window_ms=window_ms,
        )
        return window, now


def check_and_consume(
    store: CounterStore,
    key: str,
    limit: int,
    window_ms: int,
    *,
    limiter: str | None = None,
) -> RateLimitInfo:
    """
    Count one request against key and decide.

    Returns:
        RateLimitInfo; DENIED carries retry_after_ms (remaining window time)
    """
    window, now = store.atomic_increment(key, limit, window_ms)
    return RateLimitInfo.from_window(window, now, limiter)


class SlidingWindowRateLimiter:
    """
    Named rate limiter with a fixed (limit, window) pair.

    Usage:
        limiter = SlidingWindowRateLimiter("api", limit=100, window_ms=15 * 60_000)

        info = limiter.check("subject:user-1")
        if not info.is_allowed:
            respond_429(info.retry_after_seconds)
    """

    def __init__(
        self,
        name: str,
        limit: int,
        window_ms: int,
        store: CounterStore | None = None,
    ) -> None:
        if limit < 1 or window_ms < 1:
            raise ValueError("limit and window_ms must be positive")
        self.name = name
        self.limit = limit
        self.window_ms = window_ms
        self._store = store if store is not None else InMemoryCounterStore()

    def _key(self, key: str) -> str:
        return f"{self.name}:{key}"

    def check(self, key: str) -> RateLimitInfo:
        """Check rate limit and consume one slot."""
        return check_and_consume(
            self._store, self._key(key), self.limit, self.window_ms, limiter=self.name
        )

    def reset(self, key: str) -> bool:
        return self._store.invalidate(self._key(key))

    def get_window(self, key: str) -> RateWindow | None:
        """Current window without consuming."""
        return self._store.get(self._key(key))


@dataclass(frozen=True)
class RateLimitRule:
    """Route class: requests whose path starts with prefix use limiter."""

    path_prefix: str
    limiter: str


class RateLimiterRegistry:
    """
    Named limiters plus path-prefix rules selecting one per request.

    The longest matching prefix wins, so a strict limiter for credential routes
    can sit under a broader API limiter.
    """

    def __init__(self, store: CounterStore | None = None) -> None:
        self._store = store if store is not None else InMemoryCounterStore()
        self._limiters: dict[str, SlidingWindowRateLimiter] = {}
        self._rules: list[RateLimitRule] = []

    def register(self, name: str, limit: int, window_ms: int) -> SlidingWindowRateLimiter:
        limiter = SlidingWindowRateLimiter(name, limit, window_ms, self._store)
        self._limiters[name] = limiter
        return limiter

    def add_rule(self, path_prefix: str, limiter: str) -> None:
        if limiter not in self._limiters:
            raise KeyError(f"Unknown limiter {limiter!r}")
        self._rules.append(RateLimitRule(path_prefix, limiter))
        self._rules.sort(key=lambda r: len(r.path_prefix), reverse=True)

    def get(self, name: str) -> SlidingWindowRateLimiter:
        return self._limiters[name]

    def limiter_for(self, path: str) -> SlidingWindowRateLimiter | None:
        """Limiter for a request path, or None when no rule applies."""
        for rule in self._rules:
            if path.startswith(rule.path_prefix):
                return self._limiters[rule.limiter]
        return None

    @property
    def names(self) -> list[str]:
        return list(self._limiters)
