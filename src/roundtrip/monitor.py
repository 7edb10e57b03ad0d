# src/roundtrip/monitor.py
from __future__ import annotations

"""
Connection-status state machine for the receiver's long-lived hub connection.

Status changes arrive as ConnectionStatusChange events on a queue fed by the
transport adapter. Every change is logged. A change with reason
RETRY_EXPIRED means the transport gave up reconnecting; the monitor then
terminates the process with EXIT_CONNECTION_LOST so a supervisor can restart
it from a clean state. All other changes are left to the transport's own
reconnect logic.
"""

import os
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from logging import getLogger
from typing import Callable, Optional

from .telemetry import utcnow

logger = getLogger(__name__)

EXIT_OK = 0
EXIT_CONNECTION_LOST = 3


class ConnectionState(IntEnum):
    CONNECTED = 0
    DISCONNECTED_RETRYING = 1
    DISCONNECTED_EXPIRED = 2
    DISABLED = 3
    CLOSED = 4


class ConnectionChangeReason(str, Enum):
    CONNECTION_OK = "connection-ok"
    COMMUNICATION_ERROR = "communication-error"
    NO_NETWORK = "no-network"
    RETRY_EXPIRED = "retry-expired"
    CLIENT_CLOSE = "client-close"
    IDLE = "idle"


class MonitorAction(IntEnum):
    CONTINUE = 0
    TERMINATE = 1


@dataclass(frozen=True, slots=True)
class ConnectionStatusChange:
    state: ConnectionState
    reason: ConnectionChangeReason
    at: datetime = field(default_factory=utcnow)


ExitFunc = Callable[[int], object]


class ConnectionMonitor:
    """
    Consumes connection status changes and decides continue vs. terminate.

    ``handle`` is pure apart from logging and the exit call, so it can be
    driven synchronously in tests; ``start`` runs it over a queue on a
    daemon thread.
    """

    def __init__(
        self,
        events: Optional[queue.Queue[ConnectionStatusChange]] = None,
        *,
        exit_func: ExitFunc = os._exit,
        exit_code: int = EXIT_CONNECTION_LOST,
    ) -> None:
        self._events: queue.Queue[ConnectionStatusChange] = events if events is not None else queue.Queue()
        self._exit_func = exit_func
        self._exit_code = exit_code

        self._state = ConnectionState.CONNECTED
        self._reason = ConnectionChangeReason.CONNECTION_OK
        self._lock = threading.Lock()

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def events(self) -> queue.Queue[ConnectionStatusChange]:
        return self._events

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def reason(self) -> ConnectionChangeReason:
        with self._lock:
            return self._reason

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def notify(self, change: ConnectionStatusChange) -> None:
        """Enqueue a change; used as the adapter's sink."""
        self._events.put(change)

    def handle(self, change: ConnectionStatusChange) -> MonitorAction:
        with self._lock:
            previous = self._state
            self._state = change.state
            self._reason = change.reason

        logger.info(
            "Module connection changed. New status=%s Reason=%s (was %s)",
            change.state.name,
            change.reason.value,
            previous.name,
        )

        if change.reason is ConnectionChangeReason.RETRY_EXPIRED:
            logger.error("Connection can not be re-established. Exiting with code %d", self._exit_code)
            self._exit_func(self._exit_code)
            return MonitorAction.TERMINATE

        return MonitorAction.CONTINUE

    # ------------------------------------------------------------------ #
    # Background consumer
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="connection-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                change = self._events.get(timeout=0.1)
            except queue.Empty:
                continue
            if self.handle(change) is MonitorAction.TERMINATE:
                return
