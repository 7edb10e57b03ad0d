from __future__ import annotations

import json
import threading
import time
from typing import Callable, Iterator, List

import grpc  # type: ignore[import]
import pytest

from roundtrip import telemetry as tm
from roundtrip.config import GrpcSettings, HubSettings
from roundtrip.destinations import Destination, parse_destinations
from roundtrip.dispatcher import Dispatcher
from roundtrip.exceptions import ConnectionNotReadyError, ForwardError, TransportError
from roundtrip.handler import RequestHandler
from roundtrip.ingestor import Ingestor
from roundtrip.messages import Message
from roundtrip.monitor import ConnectionChangeReason, ConnectionState, ConnectionStatusChange
from roundtrip.telemetry import RecordingTelemetry
from roundtrip.transports.grpc_common import create_channel, create_server, bind_and_start
from roundtrip.transports.grpc_hub import DELIVER, HubClient, HubEnvelope, start_ingress_server
from roundtrip.transports.grpc_methods import (
    SERVICE,
    GrpcMethodInvoker,
    MethodResult,
    method_path,
    start_method_server,
)


# ---------------------------------------------------------------------------
# Fakes / helpers
# ---------------------------------------------------------------------------


class NullOutput:
    def __init__(self) -> None:
        self.sent: List[Message] = []

    def send_event(self, output_name: str, message: Message) -> None:
        self.sent.append(message)


class FakeTimer:
    """
    Stand-in for threading.Timer; fires only when the test says so.
    """

    def __init__(self, interval: float, fn: Callable[[], None]) -> None:
        self.interval = interval
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fn()


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, fn: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, fn)
        self.timers.append(timer)
        return timer


class GarbageResponder(grpc.GenericRpcHandler):  # type: ignore[misc]
    """Answers every direct method with bytes that are not a result envelope."""

    def service(self, handler_call_details):  # type: ignore[override]
        if not handler_call_details.method.startswith(f"/{SERVICE}/"):
            return None
        return grpc.unary_unary_rpc_method_handler(lambda request, context: b"not-json")


DEST = Destination("dev1", "mod1")


def _payload(cid: str = "abc-123") -> bytes:
    return json.dumps({"correlationId": cid, "text": "hello"}).encode()


@pytest.fixture
def method_server(grpc_settings: GrpcSettings, telemetry: RecordingTelemetry) -> Iterator[tuple[int, NullOutput]]:
    output = NullOutput()
    router = RequestHandler(output, telemetry, module_id="mod1").router()
    server, port = start_method_server(router, "127.0.0.1:0", grpc_settings)
    try:
        yield port, output
    finally:
        server.stop(0).wait()


@pytest.fixture
def ingress_server(grpc_settings: GrpcSettings, telemetry: RecordingTelemetry) -> Iterator[tuple[grpc.Server, int]]:
    server, port = start_ingress_server(Ingestor(telemetry).observe, "127.0.0.1:0", grpc_settings)
    try:
        yield server, port
    finally:
        server.stop(0).wait()


# ---------------------------------------------------------------------------
# Direct methods
# ---------------------------------------------------------------------------


def test_method_path() -> None:
    assert method_path("NewMessageRequest") == "/roundtrip.DirectMethods/NewMessageRequest"


def test_invoker_round_trip(method_server, grpc_settings: GrpcSettings) -> None:
    port, output = method_server
    invoker = GrpcMethodInvoker({"dev1/mod1": f"127.0.0.1:{port}"}, grpc_settings)
    try:
        response = invoker.invoke(
            DEST, "NewMessageRequest", _payload(), response_timeout_s=5.0, connect_timeout_s=5.0
        )
    finally:
        invoker.close()

    assert response.status == 200
    assert response.json() == {"ModuleResponse": "Message sent successfully to Edge Hub"}
    assert output.sent[0].properties["correlationId"] == "abc-123"


def test_invoker_unknown_method_is_404(method_server, grpc_settings: GrpcSettings) -> None:
    port, _ = method_server
    invoker = GrpcMethodInvoker({"dev1/mod1": f"127.0.0.1:{port}"}, grpc_settings)
    try:
        response = invoker.invoke(DEST, "Reboot", b"", response_timeout_s=5.0, connect_timeout_s=5.0)
    finally:
        invoker.close()

    assert response.status == 404
    assert response.json() == {"ModuleResponse": "Method Reboot not implemented"}


def test_invoker_reuses_channels(method_server, grpc_settings: GrpcSettings) -> None:
    port, _ = method_server
    created: List[str] = []

    def factory(target: str, settings: GrpcSettings) -> grpc.Channel:
        created.append(target)
        return create_channel(target, settings)

    invoker = GrpcMethodInvoker({"dev1/mod1": f"127.0.0.1:{port}"}, grpc_settings, channel_factory=factory)
    try:
        for cid in ("a", "b", "c"):
            invoker.invoke(DEST, "NewMessageRequest", _payload(cid), response_timeout_s=5.0, connect_timeout_s=5.0)
    finally:
        invoker.close()

    assert created == [f"127.0.0.1:{port}"]


def test_invoker_unknown_destination(grpc_settings: GrpcSettings) -> None:
    invoker = GrpcMethodInvoker({}, grpc_settings)

    with pytest.raises(KeyError):
        invoker.invoke(DEST, "NewMessageRequest", _payload(), response_timeout_s=1.0, connect_timeout_s=1.0)


def test_invoker_unreachable_endpoint(grpc_settings: GrpcSettings) -> None:
    invoker = GrpcMethodInvoker({"dev1/mod1": "127.0.0.1:1"}, grpc_settings)
    try:
        with pytest.raises(ConnectionNotReadyError):
            invoker.invoke(DEST, "NewMessageRequest", _payload(), response_timeout_s=0.3, connect_timeout_s=0.3)
    finally:
        invoker.close()


def test_invoker_malformed_response(grpc_settings: GrpcSettings) -> None:
    server = create_server(grpc_settings, [GarbageResponder()])
    port = bind_and_start(server, "127.0.0.1:0")
    invoker = GrpcMethodInvoker({"dev1/mod1": f"127.0.0.1:{port}"}, grpc_settings)
    try:
        with pytest.raises(TransportError):
            invoker.invoke(DEST, "NewMessageRequest", _payload(), response_timeout_s=5.0, connect_timeout_s=5.0)
    finally:
        invoker.close()
        server.stop(0).wait()


def test_method_result_without_payload() -> None:
    response = MethodResult(status=204).to_response()

    assert response.status == 204
    assert response.json() is None


# ---------------------------------------------------------------------------
# Hub client and ingress
# ---------------------------------------------------------------------------


def test_hub_client_delivers_to_ingress(
    ingress_server, grpc_settings: GrpcSettings, telemetry: RecordingTelemetry
) -> None:
    _, port = ingress_server
    changes: List[ConnectionStatusChange] = []
    hub = HubClient(HubSettings(address=f"127.0.0.1:{port}", connect_timeout_s=5.0), grpc_settings, changes.append)

    hub.open()
    try:
        hub.send_event("output1", Message(body=b"hello", properties={"correlationId": "Y", "scope": "end2end"}))
    finally:
        hub.close()

    (observed,) = telemetry.named(tm.MESSAGE_OBSERVED)
    assert observed.properties["correlationId"] == "Y"
    assert ConnectionState.CLOSED in [c.state for c in changes]


def test_hub_client_open_fails_when_hub_unreachable(grpc_settings: GrpcSettings) -> None:
    hub = HubClient(HubSettings(address="127.0.0.1:1", connect_timeout_s=0.3), grpc_settings, lambda _c: None)

    with pytest.raises(ConnectionNotReadyError):
        hub.open()


def test_send_event_failure_is_forward_error(grpc_settings: GrpcSettings, telemetry: RecordingTelemetry) -> None:
    server, port = start_ingress_server(Ingestor(telemetry).observe, "127.0.0.1:0", grpc_settings)
    hub = HubClient(
        HubSettings(address=f"127.0.0.1:{port}", connect_timeout_s=5.0, send_timeout_s=0.5),
        grpc_settings,
        lambda _c: None,
    )
    hub.open()
    server.stop(0).wait()
    try:
        with pytest.raises(ForwardError):
            hub.send_event("output1", Message(body=b"x", properties={"correlationId": "z"}))
    finally:
        hub.close()


def test_ingress_rejects_malformed_envelope(ingress_server, grpc_settings: GrpcSettings) -> None:
    _, port = ingress_server
    channel = create_channel(f"127.0.0.1:{port}", grpc_settings)
    try:
        call = channel.unary_unary(DELIVER)
        with pytest.raises(grpc.RpcError) as excinfo:
            call(b"{not json", timeout=5.0)
        assert excinfo.value.code() == grpc.StatusCode.INVALID_ARGUMENT

        bad_body = b'{"body": "***", "contentType": "application/json", "contentEncoding": "UTF-8"}'
        with pytest.raises(grpc.RpcError) as excinfo:
            call(bad_body, timeout=5.0)
        assert excinfo.value.code() == grpc.StatusCode.INVALID_ARGUMENT
    finally:
        channel.close()


def test_ingress_reports_callback_failure(grpc_settings: GrpcSettings) -> None:
    def broken(_message) -> None:
        raise RuntimeError("storage down")

    server, port = start_ingress_server(broken, "127.0.0.1:0", grpc_settings)
    channel = create_channel(f"127.0.0.1:{port}", grpc_settings)
    try:
        envelope = HubEnvelope.from_message("output1", Message(body=b"x"))
        with pytest.raises(grpc.RpcError) as excinfo:
            channel.unary_unary(DELIVER)(envelope.to_bytes(), timeout=5.0)
        assert excinfo.value.code() == grpc.StatusCode.INTERNAL
    finally:
        channel.close()
        server.stop(0).wait()


def test_envelope_preserves_message() -> None:
    message = Message(body=b"\x00binary\xff", properties={"correlationId": "c", "scope": "end2end"})

    delivered = HubEnvelope.model_validate_json(HubEnvelope.from_message("out", message).to_bytes()).to_delivered()

    assert delivered.body == message.body
    assert dict(delivered.properties) == message.properties
    assert delivered.enqueued_time is not None


# ---------------------------------------------------------------------------
# Connectivity adapter
# ---------------------------------------------------------------------------


def _adapter(retry_window_s: float = 240.0) -> tuple[HubClient, List[ConnectionStatusChange], FakeTimerFactory]:
    changes: List[ConnectionStatusChange] = []
    timers = FakeTimerFactory()
    hub = HubClient(
        HubSettings(retry_window_s=retry_window_s),
        GrpcSettings(),
        changes.append,
        timer_factory=timers,  # type: ignore[arg-type]
    )
    return hub, changes, timers


def test_transient_failure_then_expiry() -> None:
    hub, changes, timers = _adapter(retry_window_s=30.0)

    hub._on_connectivity(grpc.ChannelConnectivity.TRANSIENT_FAILURE)
    hub._on_connectivity(grpc.ChannelConnectivity.CONNECTING)

    assert len(timers.timers) == 1
    assert timers.timers[0].interval == 30.0
    assert timers.timers[0].started

    timers.timers[0].fire()

    assert [(c.state, c.reason) for c in changes] == [
        (ConnectionState.DISCONNECTED_RETRYING, ConnectionChangeReason.COMMUNICATION_ERROR),
        (ConnectionState.DISCONNECTED_RETRYING, ConnectionChangeReason.COMMUNICATION_ERROR),
        (ConnectionState.DISCONNECTED_EXPIRED, ConnectionChangeReason.RETRY_EXPIRED),
    ]


def test_reconnect_within_window_cancels_expiry() -> None:
    hub, changes, timers = _adapter()

    hub._on_connectivity(grpc.ChannelConnectivity.TRANSIENT_FAILURE)
    hub._on_connectivity(grpc.ChannelConnectivity.READY)
    timers.timers[0].fire()

    assert timers.timers[0].cancelled
    assert changes[-1].state is ConnectionState.CONNECTED
    assert ConnectionChangeReason.RETRY_EXPIRED not in [c.reason for c in changes]


def test_idle_and_shutdown_mapping() -> None:
    hub, changes, _ = _adapter()

    hub._on_connectivity(grpc.ChannelConnectivity.IDLE)
    hub._on_connectivity(grpc.ChannelConnectivity.SHUTDOWN)

    assert [(c.state, c.reason) for c in changes] == [
        (ConnectionState.DISABLED, ConnectionChangeReason.IDLE),
        (ConnectionState.CLOSED, ConnectionChangeReason.CLIENT_CLOSE),
    ]


def test_no_events_after_close() -> None:
    hub, changes, timers = _adapter()

    hub._on_connectivity(grpc.ChannelConnectivity.TRANSIENT_FAILURE)
    hub.close()
    hub._on_connectivity(grpc.ChannelConnectivity.READY)
    timers.timers[0].fire()

    assert [c.state for c in changes] == [ConnectionState.DISCONNECTED_RETRYING, ConnectionState.CLOSED]
    assert timers.timers[0].cancelled


def test_expiry_with_real_timer_reaches_sink() -> None:
    expired = threading.Event()
    seen: List[ConnectionStatusChange] = []

    def sink(change: ConnectionStatusChange) -> None:
        seen.append(change)
        if change.reason is ConnectionChangeReason.RETRY_EXPIRED:
            expired.set()

    hub = HubClient(HubSettings(retry_window_s=0.05), GrpcSettings(), sink)
    hub._on_connectivity(grpc.ChannelConnectivity.TRANSIENT_FAILURE)

    assert expired.wait(timeout=2.0)
    hub.close()


class SubscribingChannel:
    """Stand-in for grpc.Channel that records connectivity subscriptions."""

    def __init__(self) -> None:
        self.subscriptions: List[bool] = []
        self.unsubscribed = 0
        self.closed = False

    def subscribe(self, callback, try_to_connect: bool = False) -> None:
        self.subscriptions.append(try_to_connect)

    def unsubscribe(self, callback) -> None:
        self.unsubscribed += 1

    def close(self) -> None:
        self.closed = True


def test_idle_after_lost_connection_keeps_retrying_and_reconnects() -> None:
    hub, changes, timers = _adapter(retry_window_s=5.0)
    channel = SubscribingChannel()
    hub._channel = channel  # type: ignore[assignment]

    hub._on_connectivity(grpc.ChannelConnectivity.READY)
    hub._on_connectivity(grpc.ChannelConnectivity.IDLE)

    assert (changes[-1].state, changes[-1].reason) == (
        ConnectionState.DISCONNECTED_RETRYING,
        ConnectionChangeReason.COMMUNICATION_ERROR,
    )
    assert channel.subscriptions == [True]
    assert len(timers.timers) == 1 and timers.timers[0].started

    timers.timers[0].fire()

    assert changes[-1].reason is ConnectionChangeReason.RETRY_EXPIRED
    hub.close()
    assert channel.closed


def test_idle_while_retrying_asks_again_to_connect() -> None:
    hub, changes, timers = _adapter()
    channel = SubscribingChannel()
    hub._channel = channel  # type: ignore[assignment]

    hub._on_connectivity(grpc.ChannelConnectivity.TRANSIENT_FAILURE)
    hub._on_connectivity(grpc.ChannelConnectivity.IDLE)
    hub._on_connectivity(grpc.ChannelConnectivity.IDLE)

    assert [c.state for c in changes] == [ConnectionState.DISCONNECTED_RETRYING] * 3
    assert channel.subscriptions == [True, True]
    assert len(timers.timers) == 1


def test_hub_outage_without_traffic_expires(grpc_settings: GrpcSettings, telemetry: RecordingTelemetry) -> None:
    server, port = start_ingress_server(Ingestor(telemetry).observe, "127.0.0.1:0", grpc_settings)
    expired = threading.Event()
    changes: List[ConnectionStatusChange] = []

    def sink(change: ConnectionStatusChange) -> None:
        changes.append(change)
        if change.reason is ConnectionChangeReason.RETRY_EXPIRED:
            expired.set()

    hub = HubClient(
        HubSettings(address=f"127.0.0.1:{port}", connect_timeout_s=5.0, retry_window_s=1.0),
        grpc_settings,
        sink,
    )
    hub.open()
    try:
        server.stop(0).wait()

        assert expired.wait(timeout=10.0), [(c.state.name, c.reason.value) for c in changes]
        assert ConnectionState.DISABLED not in [c.state for c in changes]
    finally:
        hub.close()


class CannedChannel:
    """Stand-in for grpc.Channel answering every direct method with 200."""

    def __init__(self, target: str) -> None:
        self.target = target
        self.closed = False

    def unary_unary(self, path: str):
        def call(request: bytes, timeout: float) -> bytes:
            return MethodResult(status=200, payload={"ModuleResponse": "ok"}).model_dump_json().encode()

        return call

    def close(self) -> None:
        self.closed = True


def test_concurrent_cycle_shares_one_channel_per_address(telemetry: RecordingTelemetry) -> None:
    made: List[CannedChannel] = []
    made_lock = threading.Lock()

    def slow_factory(target: str, settings: GrpcSettings) -> CannedChannel:
        time.sleep(0.05)
        channel = CannedChannel(target)
        with made_lock:
            made.append(channel)
        return channel

    invoker = GrpcMethodInvoker(
        {"d1/m": "h:1", "d2/m": "h:1", "d3/m": "h:1"},
        GrpcSettings(),
        channel_factory=slow_factory,  # type: ignore[arg-type]
        ready_waiter=lambda _channel, _timeout: None,
    )

    result = Dispatcher(invoker, telemetry).run_cycle(parse_destinations("d1/m,d2/m,d3/m"))
    invoker.close()

    assert result.all_succeeded
    assert len(made) == 1
    assert all(c.closed for c in made)
