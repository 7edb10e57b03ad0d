from __future__ import annotations

"""
Telemetry events for the end-to-end loop.

Event names carry a numeric prefix that orders them by pipeline stage:

    10  invocation started          (caller, per destination)
    11  invocation succeeded        (caller, status in [200, 299])
    15  invocation failed           (caller, any other status)
    20  request received            (receiver)
    21  forward succeeded           (receiver)
    25  forward failed              (receiver)
    100 message observed            (processor)

Consumers reconstruct a round trip by grouping on ``correlationId`` and
sorting on the prefix.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import getLogger
from typing import Dict, List, Mapping, Protocol

INVOCATION_STARTED = "10-InvocationStarted"
INVOCATION_SUCCEEDED = "11-InvocationSucceeded"
INVOCATION_FAILED = "15-InvocationFailed"
REQUEST_RECEIVED = "20-RequestReceived"
FORWARD_SUCCEEDED = "21-ForwardSucceeded"
FORWARD_FAILED = "25-ForwardFailed"
MESSAGE_OBSERVED = "100-MessageObserved"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timestamp(at: datetime | None = None) -> str:
    return (at or utcnow()).isoformat()


def stage_of(name: str) -> int:
    """Numeric stage prefix of an event name (``"11-..."`` -> 11)."""
    prefix, _, _ = name.partition("-")
    return int(prefix)


class TelemetryClient(Protocol):
    """Sink for named events with string properties."""

    def track_event(self, name: str, properties: Mapping[str, str]) -> None:
        """Record a single event."""


class LoggingTelemetry:
    """Emits every event as one log line on the ``roundtrip.telemetry`` logger."""

    def __init__(self, logger_name: str = "roundtrip.telemetry") -> None:
        self._logger = getLogger(logger_name)

    def track_event(self, name: str, properties: Mapping[str, str]) -> None:
        props = " ".join(f"{k}={v}" for k, v in sorted(properties.items()))
        self._logger.info("event=%s %s", name, props)


@dataclass(frozen=True, slots=True)
class TrackedEvent:
    name: str
    properties: Mapping[str, str]


@dataclass(slots=True)
class RecordingTelemetry:
    """Thread-safe in-memory sink; handy for tests and local diagnostics."""

    events: List[TrackedEvent] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def track_event(self, name: str, properties: Mapping[str, str]) -> None:
        with self._lock:
            self.events.append(TrackedEvent(name=name, properties=dict(properties)))

    def named(self, name: str) -> list[TrackedEvent]:
        with self._lock:
            return [e for e in self.events if e.name == name]

    def names(self) -> list[str]:
        with self._lock:
            return [e.name for e in self.events]


def event_properties(correlation_id: str, **extra: str) -> Dict[str, str]:
    props = {"correlationId": correlation_id}
    props.update(extra)
    return props
