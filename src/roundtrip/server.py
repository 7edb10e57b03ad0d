from __future__ import annotations

"""
Long-running services: caller (cloud, on a timer), receiver (edge module) and
processor (cloud ingestion).

Each service builds its collaborators once at startup, installs SIGTERM/SIGINT
handlers and then blocks on a single shutdown event. Shutdown does not drain
outstanding calls beyond their own deadlines. The receiver may instead be
terminated by its ConnectionMonitor (fail-stop).
"""

import os
import signal
import threading
from logging import getLogger
from typing import Optional

import grpc

from .config import AppSettings, ConfigError
from .destinations import DestinationRegistry
from .dispatcher import CycleResult, Dispatcher
from .handler import RequestHandler
from .ingestor import Ingestor
from .monitor import EXIT_OK, ConnectionMonitor, ExitFunc
from .telemetry import LoggingTelemetry, TelemetryClient
from .transports.base import MethodInvoker
from .transports.grpc_hub import HubClient, start_ingress_server
from .transports.grpc_methods import GrpcMethodInvoker, start_method_server
from .scheduler import PeriodicTrigger

logger = getLogger(__name__)


class _Service:
    name = "service"

    def __init__(self, settings: AppSettings, telemetry: Optional[TelemetryClient] = None) -> None:
        self._settings = settings
        self._telemetry: TelemetryClient = telemetry or LoggingTelemetry()
        self._shutdown_requested = threading.Event()

    def request_stop(self) -> None:
        """Asynchronous stop request; safe from signal handlers and other threads."""
        self._shutdown_requested.set()

    def start(self) -> int:
        """Run until a stop is requested. Returns the process exit code."""
        self._install_signal_handlers()
        try:
            # Teardown also runs when startup fails half-way.
            self._startup()
            logger.info("%s running", self.name)
            self._shutdown_requested.wait()
        finally:
            logger.info("%s shutting down", self.name)
            self._teardown()
        return EXIT_OK

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def handler(_signum: int, _frame: object) -> None:
            self._shutdown_requested.set()

        signal.signal(signal.SIGTERM, handler)
        if hasattr(signal, "SIGINT"):
            signal.signal(signal.SIGINT, handler)

    def _startup(self) -> None:
        raise NotImplementedError

    def _teardown(self) -> None:
        raise NotImplementedError

    def _stop_server(self, server: Optional[grpc.Server]) -> None:
        if server is not None:
            server.stop(self._settings.grpc.grace_s).wait()


class CallerService(_Service):
    """Invokes the direct method on every configured destination at a fixed interval."""

    name = "caller"

    def __init__(
        self,
        settings: AppSettings,
        telemetry: Optional[TelemetryClient] = None,
        *,
        invoker: Optional[MethodInvoker] = None,
    ) -> None:
        super().__init__(settings, telemetry)
        caller = settings.caller

        self._registry: DestinationRegistry = caller.registry()
        self._registry.log_errors()
        if not self._registry.destinations:
            raise ConfigError("None of the configured destinations is valid.")

        self._owns_invoker = invoker is None
        self._invoker = invoker or GrpcMethodInvoker(caller.endpoints, settings.grpc)
        self._dispatcher = Dispatcher(
            self._invoker,
            self._telemetry,
            method_name=caller.method_name,
            response_timeout_s=caller.response_timeout_s,
            connect_timeout_s=caller.connect_timeout_s,
            max_parallel=caller.max_parallel,
        )
        self._trigger: Optional[PeriodicTrigger] = None

    @property
    def registry(self) -> DestinationRegistry:
        return self._registry

    def run_once(self) -> CycleResult:
        logger.info("Caller cycle triggered for %d destination(s)", len(self._registry))
        return self._dispatcher.run_cycle(self._registry.destinations)

    def _startup(self) -> None:
        caller = self._settings.caller
        self._trigger = PeriodicTrigger(
            caller.interval_s,
            self.run_once,
            run_on_startup=caller.run_on_startup,
            name="caller-trigger",
        )
        self._trigger.start()

    def _teardown(self) -> None:
        if self._trigger is not None:
            self._trigger.stop()
        self.close()

    def close(self) -> None:
        if self._owns_invoker and isinstance(self._invoker, GrpcMethodInvoker):
            self._invoker.close()


class ReceiverService(_Service):
    """Edge module: serves direct methods and forwards messages to the hub."""

    name = "receiver"

    def __init__(
        self,
        settings: AppSettings,
        telemetry: Optional[TelemetryClient] = None,
        *,
        exit_func: ExitFunc = os._exit,
    ) -> None:
        super().__init__(settings, telemetry)
        self._monitor = ConnectionMonitor(exit_func=exit_func)
        self._hub = HubClient(settings.hub, settings.grpc, self._monitor.notify)
        self._handler = RequestHandler(
            self._hub,
            self._telemetry,
            module_id=settings.receiver.module_id,
            output_name=settings.receiver.output_name,
        )
        self._server: Optional[grpc.Server] = None
        self.port: Optional[int] = None

    @property
    def monitor(self) -> ConnectionMonitor:
        return self._monitor

    @property
    def handler(self) -> RequestHandler:
        return self._handler

    def _startup(self) -> None:
        logger.info("Module %s starting up...", self._settings.receiver.module_id)
        self._monitor.start()
        self._hub.open()
        self._server, self.port = start_method_server(
            self._handler.router(),
            self._settings.receiver.bind,
            self._settings.grpc,
        )

    def _teardown(self) -> None:
        self._stop_server(self._server)
        self._hub.close()
        self._monitor.stop()


class ProcessorService(_Service):
    """Cloud ingestion point: hosts the hub ingress and observes every delivered message."""

    name = "processor"

    def __init__(self, settings: AppSettings, telemetry: Optional[TelemetryClient] = None) -> None:
        super().__init__(settings, telemetry)
        self._ingestor = Ingestor(self._telemetry)
        self._server: Optional[grpc.Server] = None
        self.port: Optional[int] = None

    def _startup(self) -> None:
        self._server, self.port = start_ingress_server(
            self._ingestor.observe,
            self._settings.processor.bind,
            self._settings.grpc,
        )

    def _teardown(self) -> None:
        self._stop_server(self._server)
