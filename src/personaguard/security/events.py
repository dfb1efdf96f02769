"""
Security event log.

A bounded, append-only ring buffer shared by every validator and guard.
Instances are constructed explicitly and passed to the components that
write to them, so tests can assert on an isolated log. Appends never
block on I/O; optional JSON-lines persistence runs on a background
writer thread and is best effort.
"""

import json
import logging
import queue
import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..util.log import get_logger
from .severity import Severity

logger = get_logger(__name__)

DEFAULT_CAPACITY = 1000

_LOG_LEVELS = {
    Severity.NONE: logging.DEBUG,
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


class SecurityEventType(str, Enum):
    """Security event types for the audit trail."""

    # Content validation
    CONTENT_ACCEPTED = "content_accepted"
    CONTENT_SANITIZED = "content_sanitized"
    CONTENT_REJECTED = "content_rejected"
    UNICODE_ISSUE = "unicode_issue"
    STRUCTURED_REJECTED = "structured_rejected"
    SLOW_PATTERN = "slow_pattern"

    # Filesystem and command policy
    PATH_TRAVERSAL_ATTEMPT = "path_traversal_attempt"
    FILE_ACCESS = "file_access"
    COMMAND_REJECTED = "command_rejected"
    COMMAND_EXECUTED = "command_executed"

    # Admission control
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RATE_LIMIT_RESET = "rate_limit_reset"

    # Credentials
    CREDENTIAL_LOADED = "credential_loaded"
    CREDENTIAL_INVALID = "credential_invalid"
    SCOPE_CHECK_PASSED = "scope_check_passed"
    SCOPE_CHECK_FAILED = "scope_check_failed"

    # Static audit
    AUDIT_STARTED = "audit_started"
    AUDIT_FINDING = "audit_finding"
    AUDIT_COMPLETED = "audit_completed"


@dataclass(frozen=True)
class SecurityEvent:
    """A single audit-trail record."""

    event_type: SecurityEventType
    severity: Severity
    source: str
    details: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        data["timestamp_iso"] = datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()
        return data


class SecurityLog:
    """Thread-safe bounded ring buffer of security events.

    The oldest event is evicted first once ``capacity`` is reached.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, persist_path: Path | None = None):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._events: deque[SecurityEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._writer: _EventWriter | None = None
        if persist_path is not None:
            self._writer = _EventWriter(Path(persist_path))

    def record(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        source: str,
        details: dict[str, Any] | None = None,
        **metadata: Any,
    ) -> SecurityEvent:
        """Build and append an event."""
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            source=source,
            details=details or {},
            metadata=metadata,
        )
        self.append(event)
        return event

    def append(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

        logger.log(
            _LOG_LEVELS[event.severity],
            "%s from %s",
            event.event_type.value,
            event.source,
            extra={
                "event_type": event.event_type.value,
                "severity": event.severity.value,
                "source": event.source,
            },
        )

        if self._writer is not None:
            self._writer.submit(event)

    def recent_events(self, n: int = 50) -> list[SecurityEvent]:
        """Return up to ``n`` most recent events, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            snapshot = list(self._events)
        return snapshot[-n:]

    def events_by_severity(self, level: Severity | str) -> list[SecurityEvent]:
        """Return events whose severity equals ``level``."""
        level = Severity.parse(level)
        with self._lock:
            return [e for e in self._events if e.severity == level]

    def events_by_type(self, event_type: SecurityEventType) -> list[SecurityEvent]:
        with self._lock:
            return [e for e in self._events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def close(self) -> None:
        """Flush and stop the persistence writer, if any."""
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class _EventWriter:
    """Background JSON-lines writer fed from a queue."""

    _STOP = object()

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue: queue.Queue = queue.Queue(maxsize=10_000)
        self._thread = threading.Thread(target=self._run, name="security-log-writer", daemon=True)
        self._thread.start()

    def submit(self, event: SecurityEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("Security log persistence queue full, dropping event %s", event.event_id)

    def close(self, timeout: float = 5.0) -> None:
        self._queue.put(self._STOP)
        self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(item.to_dict(), default=str) + "\n")
            except OSError as e:
                logger.error("Failed to persist security event to %s: %s", self.path, e)
