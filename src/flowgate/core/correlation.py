"""
Correlation ID Context for Request Tracing.

Each gateway request runs inside a correlation context so that log lines and
audit events emitted anywhere in its lifecycle share one ID. The ID is taken
from the inbound headers when present and echoed on the response.

Usage:
    with correlation_context(headers_id, method="GET", path="/api/v1/workflows") as cid:
        logger.info("Processing")  # CorrelatedLogger adds cid

    current_id = get_correlation_id()
"""

from __future__ import annotations

import contextvars
import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "flowgate_correlation_id", default=None
)

_trace_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "flowgate_trace_context", default={}
)


def get_correlation_id() -> str | None:
    """Current correlation ID, or None outside a correlation context."""
    return _correlation_id.get()


def generate_correlation_id() -> str:
    """
    Generate a new correlation ID.

    Format: fg-{16 hex chars}
    """
    return f"fg-{uuid.uuid4().hex[:16]}"


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
    **extra_context: Any,
) -> Iterator[str]:
    """
    Scope a correlation ID (and extra trace fields) to a block.

    Safe for both sync and async code: state lives in context variables and is
    restored on exit.

    Args:
        correlation_id: ID to use (generates new one if None)
        **extra_context: Additional fields, e.g. method, path, client_ip

    Yields:
        The active correlation ID
    """
    cid = correlation_id or generate_correlation_id()

    id_token = _correlation_id.set(cid)
    ctx_token = _trace_context.set({**_trace_context.get(), **extra_context, "correlation_id": cid})
    try:
        yield cid
    finally:
        _correlation_id.reset(id_token)
        _trace_context.reset(ctx_token)


def get_trace_context() -> dict[str, Any]:
    """Correlation ID plus any extra context of the current scope."""
    context = dict(_trace_context.get())
    context["correlation_id"] = _correlation_id.get()
    return context


def add_trace_context(**kwargs: Any) -> None:
    """Add fields (e.g. subject_id once known) to the current trace."""
    _trace_context.set({**_trace_context.get(), **kwargs})


class CorrelationHeaders:
    """Header names used for correlation ID propagation."""

    CORRELATION_ID = "X-Correlation-ID"
    REQUEST_ID = "X-Request-ID"
    TRACE_ID = "X-Trace-ID"

    @classmethod
    def extract_from_headers(cls, headers: Mapping[str, str]) -> str | None:
        """
        Extract a correlation ID from request headers.

        Checks X-Correlation-ID, X-Request-ID, X-Trace-ID in that order.
        Header names are matched case-insensitively.
        """
        normalized = {k.lower(): v for k, v in headers.items()}
        for header in (cls.CORRELATION_ID, cls.REQUEST_ID, cls.TRACE_ID):
            value = normalized.get(header.lower())
            if value:
                return value
        return None


class CorrelatedLogger:
    """
    Logger wrapper that adds the correlation ID and trace context to records.

    Usage:
        logger = CorrelatedLogger(logging.getLogger(__name__))

        with correlation_context("req-123"):
            logger.info("Processing request")
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _add_correlation(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        extra = dict(kwargs.get("extra") or {})
        for key, value in get_trace_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return kwargs

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **self._add_correlation(kwargs))

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **self._add_correlation(kwargs))

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **self._add_correlation(kwargs))

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **self._add_correlation(kwargs))

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.exception(msg, *args, **self._add_correlation(kwargs))
