from __future__ import annotations

"""
Edge-to-hub message path over gRPC.

HubClient is the receiver's output channel and long-lived hub connection.
It subscribes to the channel's connectivity and translates each transition
into a ConnectionStatusChange for the ConnectionMonitor:

    READY                          -> CONNECTED             / CONNECTION_OK
    CONNECTING, TRANSIENT_FAILURE  -> DISCONNECTED_RETRYING / COMMUNICATION_ERROR
    (not READY again within retry_window_s)
                                   -> DISCONNECTED_EXPIRED  / RETRY_EXPIRED
    IDLE after a lost connection   -> DISCONNECTED_RETRYING / COMMUNICATION_ERROR
                                      (and a reconnect is requested)
    IDLE otherwise                 -> DISABLED              / IDLE
    SHUTDOWN, close()              -> CLOSED                / CLIENT_CLOSE

The ingress side (MessageIngressService) is hosted by the processor and hands
every delivered message to a callback, normally Ingestor.observe.
"""

import base64
import threading
from logging import getLogger
from typing import Callable, Dict, Optional

import grpc
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import GrpcSettings, HubSettings
from ..exceptions import ConnectionNotReadyError, ForwardError
from ..messages import DeliveredMessage, Message
from ..monitor import ConnectionChangeReason, ConnectionState, ConnectionStatusChange
from ..telemetry import utcnow
from .base import OutputChannel
from .grpc_common import bind_and_start, create_channel, create_server

logger = getLogger(__name__)

SERVICE = "roundtrip.MessageIngress"
DELIVER = f"/{SERVICE}/Deliver"
ACK = b'{"accepted":true}'


class HubEnvelope(BaseModel):
    """Wire form of a message on its way to the hub ingress."""

    model_config = ConfigDict(populate_by_name=True)

    body: str = Field(description="Base64 encoded message body.")
    content_type: str = Field(alias="contentType")
    content_encoding: str = Field(alias="contentEncoding")
    properties: Dict[str, str] = Field(default_factory=dict)
    output: str = ""

    @classmethod
    def from_message(cls, output_name: str, message: Message) -> "HubEnvelope":
        return cls(
            body=base64.b64encode(message.body).decode("ascii"),
            content_type=message.content_type,
            content_encoding=message.content_encoding,
            properties=dict(message.properties),
            output=output_name,
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def to_delivered(self) -> DeliveredMessage:
        return DeliveredMessage(
            body=base64.b64decode(self.body, validate=True),
            properties=self.properties,
            enqueued_time=utcnow(),
        )


# ---------------------------------------------------------------------- #
# Client (edge side)
# ---------------------------------------------------------------------- #

StatusSink = Callable[[ConnectionStatusChange], None]
ChannelFactory = Callable[[str, GrpcSettings], grpc.Channel]
TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]


def _daemon_timer(interval: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(interval, fn)
    t.daemon = True
    return t


class HubClient(OutputChannel):
    """Long-lived connection from an edge module to its hub."""

    def __init__(
        self,
        settings: HubSettings,
        grpc_settings: GrpcSettings,
        status_sink: StatusSink,
        *,
        channel_factory: Optional[ChannelFactory] = None,
        timer_factory: TimerFactory = _daemon_timer,
    ) -> None:
        self._settings = settings
        self._grpc_settings = grpc_settings
        self._sink = status_sink
        self._channel_factory = channel_factory or create_channel
        self._timer_factory = timer_factory

        self._channel: Optional[grpc.Channel] = None
        self._lock = threading.RLock()
        self._connected = False
        self._retrying = False
        self._closed = False
        self._expiry: Optional[threading.Timer] = None
        self._reconnect: Optional[grpc.Future] = None

    @property
    def target(self) -> str:
        return self._settings.target()

    @property
    def channel(self) -> grpc.Channel:
        if self._channel is None:
            raise RuntimeError("HubClient not opened.")
        return self._channel

    # --- lifecycle ---------------------------------------------------------

    def open(self) -> None:
        """Connect to the hub, waiting up to ``connect_timeout_s`` for readiness."""
        if self._channel is not None:
            return  # idempotent

        channel = self._channel_factory(self.target, self._grpc_settings)
        try:
            grpc.channel_ready_future(channel).result(timeout=self._settings.connect_timeout_s)
        except grpc.FutureTimeoutError as exc:
            channel.close()
            raise ConnectionNotReadyError(
                f"Hub at {self.target} not reachable within {self._settings.connect_timeout_s:.1f}s"
            ) from exc

        with self._lock:
            self._channel = channel
            self._connected = True
            self._closed = False

        channel.subscribe(self._on_connectivity, try_to_connect=True)
        logger.info(
            "Hub client initialized using %s (%s)",
            self._settings.transport_protocol.value,
            self.target,
        )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._cancel_expiry_locked()
            reconnect, self._reconnect = self._reconnect, None
            channel = self._channel

        if reconnect is not None:
            reconnect.cancel()

        if channel is not None:
            channel.unsubscribe(self._on_connectivity)
            channel.close()
        self._emit(ConnectionState.CLOSED, ConnectionChangeReason.CLIENT_CLOSE)

    # --- output channel ----------------------------------------------------

    def send_event(self, output_name: str, message: Message) -> None:
        envelope = HubEnvelope.from_message(output_name, message)
        call = self.channel.unary_unary(DELIVER)
        try:
            call(envelope.to_bytes(), timeout=self._settings.send_timeout_s)
        except grpc.RpcError as exc:
            raise ForwardError(f"Hub rejected message on {output_name}: {exc}") from exc

    # --- connectivity adapter ---------------------------------------------

    def _on_connectivity(self, connectivity: grpc.ChannelConnectivity) -> None:
        reconnect = False
        with self._lock:
            if self._closed:
                return

            if connectivity == grpc.ChannelConnectivity.READY:
                self._connected = True
                self._retrying = False
                self._cancel_expiry_locked()
                change = (ConnectionState.CONNECTED, ConnectionChangeReason.CONNECTION_OK)
            elif connectivity in (grpc.ChannelConnectivity.CONNECTING, grpc.ChannelConnectivity.TRANSIENT_FAILURE):
                self._connected = False
                self._retrying = True
                self._arm_expiry_locked()
                change = (ConnectionState.DISCONNECTED_RETRYING, ConnectionChangeReason.COMMUNICATION_ERROR)
            elif connectivity == grpc.ChannelConnectivity.IDLE and (self._connected or self._retrying):
                # A dropped connection without traffic lands in IDLE; the channel
                # only reconnects when asked to.
                self._connected = False
                self._retrying = True
                self._arm_expiry_locked()
                reconnect = True
                change = (ConnectionState.DISCONNECTED_RETRYING, ConnectionChangeReason.COMMUNICATION_ERROR)
            elif connectivity == grpc.ChannelConnectivity.IDLE:
                self._cancel_expiry_locked()
                change = (ConnectionState.DISABLED, ConnectionChangeReason.IDLE)
            else:
                self._connected = False
                self._retrying = False
                self._cancel_expiry_locked()
                change = (ConnectionState.CLOSED, ConnectionChangeReason.CLIENT_CLOSE)

        if reconnect:
            self._request_reconnect()
        self._emit(*change)

    def _request_reconnect(self) -> None:
        with self._lock:
            channel = self._channel
            if channel is None or self._closed:
                return
        # channel_ready_future subscribes with try_to_connect=True.
        future = grpc.channel_ready_future(channel)
        with self._lock:
            previous, self._reconnect = self._reconnect, future
        if previous is not None:
            previous.cancel()
        logger.info("Hub connection lost; reconnecting to %s", self.target)

    def _arm_expiry_locked(self) -> None:
        if self._expiry is not None:
            return
        self._expiry = self._timer_factory(self._settings.retry_window_s, self._on_retry_window_elapsed)
        self._expiry.start()

    def _cancel_expiry_locked(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

    def _on_retry_window_elapsed(self) -> None:
        with self._lock:
            self._expiry = None
            if self._connected or self._closed:
                return
        logger.warning(
            "Hub connection not re-established within %.1fs; giving up",
            self._settings.retry_window_s,
        )
        self._emit(ConnectionState.DISCONNECTED_EXPIRED, ConnectionChangeReason.RETRY_EXPIRED)

    def _emit(self, state: ConnectionState, reason: ConnectionChangeReason) -> None:
        self._sink(ConnectionStatusChange(state=state, reason=reason))


# ---------------------------------------------------------------------- #
# Ingress (cloud side)
# ---------------------------------------------------------------------- #

MessageCallback = Callable[[DeliveredMessage], None]


class MessageIngressService(grpc.GenericRpcHandler):
    """Receives hub envelopes and hands each delivered message to ``on_message``."""

    def __init__(self, on_message: MessageCallback) -> None:
        self._on_message = on_message

    def service(self, handler_call_details: grpc.HandlerCallDetails) -> Optional[grpc.RpcMethodHandler]:
        if handler_call_details.method != DELIVER:
            return None
        return grpc.unary_unary_rpc_method_handler(self._deliver)

    def _deliver(self, request: bytes, context: grpc.ServicerContext) -> bytes:
        try:
            message = HubEnvelope.model_validate_json(request).to_delivered()
        except (ValidationError, ValueError) as exc:
            logger.warning("Rejecting malformed hub envelope: %s", exc)
            context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"Malformed envelope: {exc}")

        try:
            self._on_message(message)
        except Exception as exc:
            logger.exception("Error while ingesting message: %s", exc)
            context.abort(grpc.StatusCode.INTERNAL, f"Error ingesting message: {exc!r}")

        return ACK


def start_ingress_server(on_message: MessageCallback, bind: str, settings: GrpcSettings) -> tuple[grpc.Server, int]:
    """Create and start the hub ingress server. Returns the server and its bound port."""
    server = create_server(settings, [MessageIngressService(on_message)])
    port = bind_and_start(server, bind)
    logger.info("Message ingress listening on %s (port %d)", bind, port)
    return server, port
