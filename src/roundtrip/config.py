# src/roundtrip/config.py
from __future__ import annotations

import json
from contextlib import contextmanager
from enum import Enum
from functools import lru_cache
from logging import getLogger
from pathlib import Path
from typing import Any, Literal, Optional, cast, get_args
import contextvars

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource

from .destinations import DestinationRegistry, parse_destinations
from .exceptions import ConfigError

logger = getLogger(__name__)

__all__ = [
    "AppSettings",
    "CallerSettings",
    "ConfigError",
    "GrpcSettings",
    "HubSettings",
    "LoggingSettings",
    "ProcessorSettings",
    "ReceiverSettings",
    "TransportProtocol",
    "clear_settings_cache",
    "get_settings",
]


# ---------------------------------------------------------------------------
# Config file support (context + loader)
# ---------------------------------------------------------------------------

_CONFIG_FILE_CTX: contextvars.ContextVar[Path | None] = contextvars.ContextVar(
    "ROUNDTRIP_CONFIG_FILE_CTX",
    default=None,
)


def _find_default_config_file() -> Path | None:
    """Look for config file in current working directory."""
    cwd = Path.cwd()
    for name in ("config.toml", "config.yaml", "config.yml"):
        p = cwd / name
        if p.is_file():
            return p
    return None


def _load_toml(path: Path) -> dict[str, Any]:
    import tomllib

    data = tomllib.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_yaml(path: Path) -> dict[str, Any]:
    import yaml

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_config_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        return _load_toml(path)
    if suffix in {".yaml", ".yml"}:
        return _load_yaml(path)
    raise ConfigError(f"Unsupported config file type: {path} (expected .toml/.yaml/.yml)")


class _ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source that loads from an optional config file, below secrets and above defaults."""

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Not used; __call__ returns the full dict.
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        path = _CONFIG_FILE_CTX.get()
        if path is None:
            return {}

        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")

        return _load_config_file(path)


@contextmanager
def _config_file_context(path: Path | None) -> Any:
    token = _CONFIG_FILE_CTX.set(path)
    try:
        yield
    finally:
        _CONFIG_FILE_CTX.reset(token)


# ─────────────────────────────────────────────────────────────
# Section configs
# ─────────────────────────────────────────────────────────────

LogLevel = Literal["fatal", "error", "warn", "info", "debug", "verbose"]
LOG_LEVELS: tuple[str, ...] = get_args(LogLevel)
DEFAULT_LOG_LEVEL = "info"


class LoggingSettings(BaseModel):
    level: LogLevel = Field(
        DEFAULT_LOG_LEVEL,
        description="Minimum log severity (fatal/error/warn/info/debug/verbose). Unknown values fall back to 'info'.",
    )
    format: str = "%(asctime)s [%(levelname).3s] %(name)s - %(message)s"

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        text = "" if value is None else str(value).strip().lower()
        if not text:
            return DEFAULT_LOG_LEVEL
        if text not in LOG_LEVELS:
            logger.warning("Ignoring unknown logging level=%s. Using default=%s", value, DEFAULT_LOG_LEVEL)
            return DEFAULT_LOG_LEVEL
        return text


class GrpcSettings(BaseModel):
    max_workers: int = Field(10, description="Maximum number of worker threads for gRPC servers.")
    grace_s: float = Field(5.0, description="Grace period in seconds for server shutdown.")

    max_send_message_bytes: int | None = Field(default=None, description="Maximum send message size in bytes (None = "
                                                                         "default).")
    max_receive_message_bytes: int | None = Field(default=None, description="Maximum receive message size in bytes ("
                                                                            "None = default).")

    compression: Literal["none", "gzip"] = Field("none", description="Compression algorithm for gRPC calls.")

    def channel_options(self) -> list[tuple[str, Any]]:
        options: list[tuple[str, Any]] = []
        if self.max_send_message_bytes is not None:
            options.append(("grpc.max_send_message_length", self.max_send_message_bytes))
        if self.max_receive_message_bytes is not None:
            options.append(("grpc.max_receive_message_length", self.max_receive_message_bytes))
        return options


class CallerSettings(BaseModel):
    destinations: str = Field(
        "",
        description="Comma-separated device/module pairs to invoke, e.g. 'dev1/mod1,dev2/mod2'.",
    )
    interval_s: float = Field(120.0, gt=0, description="Seconds between dispatch cycles.")
    run_on_startup: bool = Field(False, description="Run a cycle immediately when the caller starts.")
    method_name: str = Field("NewMessageRequest", description="Direct method to invoke.")
    response_timeout_s: float = Field(10.0, gt=0, description="Deadline for a direct method response.")
    connect_timeout_s: float = Field(10.0, gt=0, description="Time allowed to connect to an endpoint.")
    max_parallel: int | None = Field(
        None,
        gt=0,
        description="Upper bound on concurrent calls per cycle (None = one per destination).",
    )
    endpoints: dict[str, str] = Field(
        default_factory=dict,
        description="Address book mapping 'device/module' to the module's 'host:port'.",
    )

    @field_validator("endpoints", mode="before")
    @classmethod
    def _parse_endpoints(cls, value: Any) -> Any:
        # Accept a JSON object or 'dev/mod=host:port;dev/mod=host:port' from the environment.
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return {}
            if text.startswith("{"):
                return json.loads(text)
            out: dict[str, str] = {}
            for item in text.split(";"):
                if not item.strip():
                    continue
                key, sep, addr = item.partition("=")
                if not sep:
                    raise ValueError(f"Endpoint entry {item!r} is not of the form 'device/module=host:port'")
                out[key.strip()] = addr.strip()
            return out
        return value

    def registry(self) -> DestinationRegistry:
        if not self.destinations.strip():
            raise ConfigError("No destinations configured (caller.destinations is empty).")
        return parse_destinations(self.destinations)


class ReceiverSettings(BaseModel):
    module_id: str = Field("DirectMethodReceiver", description="Identity of this edge module in telemetry.")
    bind: str = Field("0.0.0.0:50061", description="host:port the direct method server listens on.")
    output_name: str = Field("output1", description="Hub output the forwarded messages are sent to.")


class TransportProtocol(str, Enum):
    TCP = "tcp"
    UDS = "uds"


class HubSettings(BaseModel):
    transport_protocol: TransportProtocol = Field(
        TransportProtocol.TCP,
        description="How the receiver reaches the hub: 'tcp' or 'uds'. Unknown values fall back to 'tcp'.",
    )
    address: str = Field("localhost:50071", description="Hub host:port (tcp).")
    socket_path: str = Field("/var/run/roundtrip/hub.sock", description="Hub unix socket path (uds).")
    connect_timeout_s: float = Field(10.0, gt=0, description="Time allowed for the initial hub connection.")
    send_timeout_s: float = Field(10.0, gt=0, description="Deadline for a single forward to the hub.")
    retry_window_s: float = Field(
        240.0,
        gt=0,
        description="How long the connection may stay disconnected before reconnecting is given up.",
    )

    @field_validator("transport_protocol", mode="before")
    @classmethod
    def _default_on_unknown(cls, value: Any) -> Any:
        if value is None or isinstance(value, TransportProtocol):
            return value or TransportProtocol.TCP
        text = str(value).strip().lower()
        if not text:
            return TransportProtocol.TCP
        try:
            return TransportProtocol(text)
        except ValueError:
            logger.warning(
                "Ignoring unknown transport_protocol=%s. Using default=%s",
                value,
                TransportProtocol.TCP.value,
            )
            return TransportProtocol.TCP

    def target(self) -> str:
        """gRPC target string for the configured protocol."""
        if self.transport_protocol is TransportProtocol.UDS:
            return f"unix://{self.socket_path}"
        return self.address


class ProcessorSettings(BaseModel):
    bind: str = Field("0.0.0.0:50071", description="host:port the hub ingress listens on.")


# ─────────────────────────────────────────────────────────────
# Top-level settings
# ─────────────────────────────────────────────────────────────


class AppSettings(BaseSettings):
    """
    Canonical configuration for the caller, receiver and processor services.

    Precedence (highest → lowest):

    1. Init kwargs (tests/overrides)
    2. Environment variables (ROUNDTRIP_ prefix, ``__`` for nesting)
    3. .env and .env.local
    4. Secret files in /run/secrets/roundtrip
    5. Config file
    6. Defaults in this class
    """

    model_config = SettingsConfigDict(
        env_prefix="ROUNDTRIP_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        secrets_dir="/run/secrets/roundtrip",
        extra="ignore",
        validate_default=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources override later sources.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            _ConfigFileSettingsSource(settings_cls),
        )

    logging: LoggingSettings = LoggingSettings()
    grpc: GrpcSettings = GrpcSettings()
    caller: CallerSettings = CallerSettings()
    receiver: ReceiverSettings = ReceiverSettings()
    hub: HubSettings = HubSettings()
    processor: ProcessorSettings = ProcessorSettings()


@lru_cache(maxsize=16)
def _get_settings_cached(config_file_str: str | None, overrides_json: str) -> AppSettings:
    overrides = json.loads(overrides_json)
    config_path = Path(config_file_str) if config_file_str is not None else None
    with _config_file_context(config_path):
        return AppSettings(**overrides)


def get_settings(*, config_file: str | Path | None = None, **overrides: Any) -> AppSettings:
    """
    Cached accessor for process-wide settings.

    ``overrides`` are init kwargs and take highest precedence (handy in tests).
    If ``config_file`` is None, config.toml / config.yaml / config.yml in the
    current directory is used when present.
    """
    resolved: Optional[Path]
    if config_file is None:
        resolved = _find_default_config_file()
    else:
        resolved = Path(config_file)

    overrides_json = json.dumps(overrides, sort_keys=True, default=str)
    return _get_settings_cached(str(resolved) if resolved is not None else None, overrides_json)


def clear_settings_cache() -> None:
    _get_settings_cached.cache_clear()
