from __future__ import annotations

"""Fixed-interval trigger for dispatch cycles."""

import threading
from logging import getLogger
from typing import Callable, Optional

logger = getLogger(__name__)


class PeriodicTrigger:
    """
    Calls ``fn`` every ``interval_s`` seconds on a fresh thread.

    Ticks are not serialized: when a cycle outlives the interval, the next
    tick starts a concurrent cycle. Each cycle carries its own correlation id,
    so overlapping cycles only interleave their telemetry.
    """

    def __init__(
        self,
        interval_s: float,
        fn: Callable[[], object],
        *,
        run_on_startup: bool = False,
        name: str = "trigger",
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")
        self._interval_s = float(interval_s)
        self._fn = fn
        self._run_on_startup = run_on_startup
        self._name = name

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ticks = 0
        self._lock = threading.Lock()

    @property
    def ticks(self) -> int:
        with self._lock:
            return self._ticks

    def start(self) -> None:
        if self._thread is not None:
            return  # idempotent
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()
        logger.info("%s started with interval %.1fs", self._name, self._interval_s)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        if self._run_on_startup:
            self._fire()
        while not self._stop.wait(self._interval_s):
            self._fire()

    def _fire(self) -> None:
        with self._lock:
            self._ticks += 1
            tick = self._ticks
        t = threading.Thread(target=self._run_tick, args=(tick,), name=f"{self._name}-{tick}", daemon=True)
        t.start()

    def _run_tick(self, tick: int) -> None:
        logger.debug("%s tick %d fired", self._name, tick)
        try:
            self._fn()
        except Exception:
            logger.exception("%s tick %d failed", self._name, tick)
