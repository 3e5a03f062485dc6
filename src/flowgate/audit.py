"""
Structured Security Audit Logging for Flowgate.

Security-relevant events (credential failures, permission denials, rate-limit
violations, state-changing requests) are recorded without blocking the
request path: record() enqueues and returns, a single worker per logger
appends to the AuditStore.

Events form a SHA-256 hash chain in arrival order, so a removed or edited
record is detectable with verify_chain().
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
import uuid
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from flowgate.core.correlation import get_correlation_id
from flowgate.core.identity import Identity

logger = logging.getLogger(__name__)

FALLBACK_LOGGER = "flowgate.audit.fallback"
GENESIS_HASH = "0" * 64

_HASH_FIELDS = ("event_hash",)


class AuditEventType(str, Enum):
    """Types of security audit events."""

    AUTH_FAILED = "auth_failed"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CSRF_REJECTED = "csrf_rejected"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
    REQUEST_COMPLETED = "request_completed"
    ROLE_CHANGED = "role_changed"

    @property
    def is_rejection(self) -> bool:
        return self not in (AuditEventType.REQUEST_COMPLETED, AuditEventType.ROLE_CHANGED)


@dataclass(frozen=True)
class AuditEvent:
    """
    Structured audit event.

    Write-once: chain fields (sequence, previous_hash, event_hash) are filled
    by the AuditLogger on a copy, never by mutation.
    """

    event_type: AuditEventType
    subject_id: str | None = None
    resource: str | None = None
    action: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    correlation_id: str | None = field(default_factory=get_correlation_id)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sequence: int | None = None
    previous_hash: str | None = None
    event_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["timestamp_iso"] = datetime.fromtimestamp(self.timestamp, UTC).isoformat()
        return data

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def compute_hash(self) -> str:
        """SHA-256 over the canonical JSON of every field except event_hash."""
        data = {k: v for k, v in self.to_dict().items() if k not in _HASH_FIELDS}
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        fields = {k: v for k, v in data.items() if k != "timestamp_iso"}
        fields["event_type"] = AuditEventType(fields["event_type"])
        return cls(**fields)


def verify_chain(events: Iterable[AuditEvent]) -> bool:
    """
    Verify an ordered run of chained events.

    Returns:
        False if any event was altered, dropped, or reordered
    """
    previous: str | None = None
    expected_seq: int | None = None
    for event in events:
        if event.sequence is None or event.event_hash is None:
            return False
        if expected_seq is not None and event.sequence != expected_seq:
            return False
        if previous is not None and event.previous_hash != previous:
            return False
        if event.compute_hash() != event.event_hash:
            return False
        previous = event.event_hash
        expected_seq = event.sequence + 1
    return True


@runtime_checkable
class AuditStore(Protocol):
    """Append-only audit sink."""

    async def append(self, event: AuditEvent) -> None:
        ...


class InMemoryAuditStore:
    """In-memory audit store (tests, single-process deployments)."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []

    async def append(self, event: AuditEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self._events if e.event_type == event_type]

    def __len__(self) -> int:
        return len(self._events)


class JsonlAuditStore:
    """
    Append-only JSON lines file.

    File writes run in a worker thread so the event loop never blocks on disk.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, event: AuditEvent) -> None:
        await asyncio.to_thread(self._write_line, event.to_json())

    def _write_line(self, line: str) -> None:
        with self._lock, open(self._path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()

    def read_events(self) -> list[AuditEvent]:
        """Load the file back (forensics and tests)."""
        if not self._path.exists():
            return []
        with open(self._path, encoding="utf-8") as f:
            return [AuditEvent.from_dict(json.loads(line)) for line in f if line.strip()]


class AuditLogger:
    """
    Non-blocking audit logger.

    record() never raises and never awaits. Events are chained at enqueue time
    and written in arrival order by one worker task. Store failures, timeouts,
    and queue overflow go to the "flowgate.audit.fallback" logger with the
    full event JSON.

    Usage:
        audit = AuditLogger(JsonlAuditStore(Path("security_audit.jsonl")))
        await audit.start()

        audit.record(AuditEvent(AuditEventType.PERMISSION_DENIED, subject_id="u1"))

        await audit.stop()  # drains the queue
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        write_timeout: float = 2.0,
        max_queue: int = 10_000,
        logger_name: str = "flowgate.audit",
    ) -> None:
        """
        Initialize audit logger.

        Args:
            store: Audit store
            write_timeout: Bound on each store append, in seconds
            max_queue: Pending events before new ones overflow to the fallback log
            logger_name: Name for the Python logger mirroring events
        """
        self._store = store
        self._write_timeout = write_timeout
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task[None] | None = None
        self._worker_loop: asyncio.AbstractEventLoop | None = None
        self._events_logger = logging.getLogger(logger_name)
        self._fallback = logging.getLogger(FALLBACK_LOGGER)
        self._sequence = 0
        self._last_hash = GENESIS_HASH
        self._failures = 0

    @property
    def store(self) -> AuditStore:
        return self._store

    @property
    def last_hash(self) -> str:
        return self._last_hash

    @property
    def failures(self) -> int:
        """Events that reached the fallback channel instead of the store."""
        return self._failures

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        self._ensure_worker()

    async def flush(self) -> None:
        """Wait until every enqueued event was written or sent to fallback."""
        self._ensure_worker()
        await self._queue.join()

    async def stop(self) -> None:
        """Drain pending events, then stop the worker."""
        if self._worker is None:
            return
        await self.flush()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    def record(self, event: AuditEvent) -> None:
        """
        Enqueue an event. Fire-and-forget; never raises.
        """
        try:
            self._ensure_worker()
            chained = replace(
                event,
                sequence=self._sequence,
                previous_hash=self._last_hash,
                event_hash=None,
            )
            chained = replace(chained, event_hash=chained.compute_hash())
            self._queue.put_nowait(chained)
        except asyncio.QueueFull:
            self._to_fallback(event, "audit queue full")
            return
        except Exception:
            self._to_fallback(event, "audit enqueue failed", exc_info=True)
            return

        # Advance the chain only for events that made it into the queue
        self._sequence += 1
        self._last_hash = chained.event_hash or self._last_hash

        self._events_logger.log(
            logging.WARNING if event.event_type.is_rejection else logging.INFO,
            "%s subject=%s resource=%s action=%s",
            event.event_type.value,
            event.subject_id,
            event.resource,
            event.action,
            extra={"correlation_id": event.correlation_id},
        )

    def log_security_event(
        self,
        event_type: AuditEventType,
        *,
        identity: Identity | None = None,
        resource: str | None = None,
        action: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Build and record an event for the current request."""
        self.record(
            AuditEvent(
                event_type=event_type,
                subject_id=identity.subject_id if identity else None,
                resource=resource,
                action=action,
                ip=ip,
                user_agent=user_agent,
                metadata={
                    **({"organization_id": identity.organization_id} if identity else {}),
                    **(metadata or {}),
                },
            )
        )

    def _ensure_worker(self) -> None:
        # Raises RuntimeError outside a running loop; record() reports it via fallback
        loop = asyncio.get_running_loop()
        if self.running and self._worker_loop is loop:
            return
        if self._worker_loop is not None and self._worker_loop is not loop:
            self._rebind_queue()
        self._worker = loop.create_task(self._run())
        self._worker_loop = loop

    def _rebind_queue(self) -> None:
        """Move pending events to a queue usable from the current loop."""
        old = self._queue
        self._queue = asyncio.Queue(maxsize=old.maxsize)
        while not old.empty():
            self._queue.put_nowait(old.get_nowait())

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await asyncio.wait_for(self._store.append(event), timeout=self._write_timeout)
            except asyncio.TimeoutError:
                self._to_fallback(event, f"audit store write timed out after {self._write_timeout}s")
            except asyncio.CancelledError:
                self._to_fallback(event, "audit worker cancelled")
                raise
            except Exception:
                self._to_fallback(event, "audit store write failed", exc_info=True)
            finally:
                self._queue.task_done()

    def _to_fallback(self, event: AuditEvent, reason: str, *, exc_info: bool = False) -> None:
        self._failures += 1
        try:
            self._fallback.error("%s: %s", reason, event.to_json(), exc_info=exc_info)
        except Exception:
            # Last resort; the fallback channel itself must not raise into callers
            logger.debug("Audit fallback logging failed", exc_info=True)
