# src/roundtrip/cli/commands.py
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from roundtrip.config import AppSettings, get_settings

LogLevelArg = Literal["fatal", "error", "warn", "info", "debug", "verbose"]


class _CommonCommand(BaseModel):
    config_file: Optional[str] = Field(None, description="Optional config file (toml/yaml).")
    loglevel: Optional[LogLevelArg] = Field(None, description="Logging level override.")


class CallerCommand(_CommonCommand):
    destinations: Optional[str] = Field(None, description="Comma-separated device/module pairs.")
    interval_s: Optional[float] = Field(None, description="Seconds between cycles.")
    once: bool = Field(False, description="Run a single cycle and exit (1 if any destination did not succeed).")


class ReceiverCommand(_CommonCommand):
    module_id: Optional[str] = Field(None, description="Module identity used in telemetry.")
    bind: Optional[str] = Field(None, description="host:port for the direct method server.")
    hub_address: Optional[str] = Field(None, description="Hub host:port.")
    transport_protocol: Optional[str] = Field(None, description="Hub transport: tcp or uds.")


class ProcessorCommand(_CommonCommand):
    bind: Optional[str] = Field(None, description="host:port for the hub ingress.")


def _section(overrides: dict[str, Any], section: str, **values: Any) -> None:
    present = {k: v for k, v in values.items() if v is not None}
    if present:
        overrides.setdefault(section, {}).update(present)


def _settings(command: _CommonCommand, overrides: dict[str, Any]) -> AppSettings:
    from roundtrip.logs import configure_logging

    if command.loglevel is not None:
        overrides["logging"] = {"level": command.loglevel}
    settings = get_settings(config_file=command.config_file, **overrides)
    configure_logging(settings.logging)
    return settings


def handle_caller(command: CallerCommand) -> int:
    overrides: dict[str, Any] = {}
    _section(overrides, "caller", destinations=command.destinations, interval_s=command.interval_s)
    settings = _settings(command, overrides)

    from roundtrip.server import CallerService

    service = CallerService(settings)
    if command.once:
        try:
            result = service.run_once()
        finally:
            service.close()
        return 0 if result.all_succeeded else 1
    return service.start()


def handle_receiver(command: ReceiverCommand) -> int:
    overrides: dict[str, Any] = {}
    _section(overrides, "receiver", module_id=command.module_id, bind=command.bind)
    _section(overrides, "hub", address=command.hub_address, transport_protocol=command.transport_protocol)
    settings = _settings(command, overrides)

    from roundtrip.server import ReceiverService

    return ReceiverService(settings).start()


def handle_processor(command: ProcessorCommand) -> int:
    overrides: dict[str, Any] = {}
    _section(overrides, "processor", bind=command.bind)
    settings = _settings(command, overrides)

    from roundtrip.server import ProcessorService

    return ProcessorService(settings).start()
