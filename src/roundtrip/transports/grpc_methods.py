from __future__ import annotations

"""
Direct methods over gRPC.

Every method is an RPC on the ``roundtrip.DirectMethods`` service whose path
ends in the method name, e.g. ``/roundtrip.DirectMethods/NewMessageRequest``.
The server installs a generic handler, so any name is routed: the name is
resolved from the path before the request body is looked at.

Request bytes are the JSON payload verbatim. Response bytes are a JSON
envelope ``{"status": <int>, "payload": <json or null>}``.
"""

import json
import threading
from dataclasses import dataclass
from functools import partial
from logging import getLogger
from typing import Any, Callable, Dict, Mapping, Optional

import grpc
from pydantic import BaseModel, ValidationError

from ..config import GrpcSettings
from ..destinations import Destination
from ..exceptions import ConnectionNotReadyError, TransportError
from ..handler import MethodRouter
from ..messages import MethodResponse
from .base import MethodInvoker
from .grpc_common import bind_and_start, create_channel, create_server

logger = getLogger(__name__)

SERVICE = "roundtrip.DirectMethods"


def method_path(name: str) -> str:
    return f"/{SERVICE}/{name}"


class MethodResult(BaseModel):
    """Wire envelope of a direct method response."""

    status: int
    payload: Any = None

    @classmethod
    def from_response(cls, response: MethodResponse) -> "MethodResult":
        return cls(status=response.status, payload=response.json())

    def to_response(self) -> MethodResponse:
        if self.payload is None:
            return MethodResponse(status=self.status)
        return MethodResponse(status=self.status, payload=json.dumps(self.payload).encode("utf-8"))


# ---------------------------------------------------------------------- #
# Client
# ---------------------------------------------------------------------- #

ChannelFactory = Callable[[str, GrpcSettings], grpc.Channel]
ReadyWaiter = Callable[[grpc.Channel, float], None]


def _wait_until_ready(channel: grpc.Channel, timeout_s: float) -> None:
    try:
        grpc.channel_ready_future(channel).result(timeout=timeout_s)
    except grpc.FutureTimeoutError as exc:
        raise ConnectionNotReadyError(f"Channel not ready within {timeout_s:.1f}s") from exc


@dataclass(slots=True)
class _Endpoint:
    address: str
    channel: grpc.Channel


class GrpcMethodInvoker(MethodInvoker):
    """
    Invokes direct methods on edge modules via gRPC.

    Destinations are resolved to ``host:port`` through an address book keyed
    by ``device/module``. Channels are created lazily and reused.
    """

    def __init__(
        self,
        endpoints: Mapping[str, str],
        settings: GrpcSettings,
        *,
        channel_factory: Optional[ChannelFactory] = None,
        ready_waiter: Optional[ReadyWaiter] = None,
    ) -> None:
        self._address_book = dict(endpoints)
        self._settings = settings
        self._channel_factory = channel_factory or create_channel
        self._ready_waiter = ready_waiter or _wait_until_ready
        self._endpoints: Dict[str, _Endpoint] = {}
        self._lock = threading.Lock()

    def invoke(
        self,
        destination: Destination,
        method_name: str,
        payload: bytes,
        *,
        response_timeout_s: float,
        connect_timeout_s: float,
    ) -> MethodResponse:
        addr = self._resolve_address(destination)
        endpoint = self._get_or_create_endpoint(addr)

        self._ready_waiter(endpoint.channel, connect_timeout_s)

        call = endpoint.channel.unary_unary(method_path(method_name))
        try:
            raw = call(payload, timeout=response_timeout_s)
        except grpc.RpcError as exc:
            code = exc.code() if hasattr(exc, "code") else None
            name = code.name if code is not None else "UNKNOWN"
            raise TransportError(f"Direct method {method_name} on {destination} failed: {name}") from exc

        try:
            return MethodResult.model_validate_json(raw).to_response()
        except ValidationError as exc:
            raise TransportError(f"Malformed response from {destination}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            endpoints = list(self._endpoints.values())
            self._endpoints.clear()
        for endpoint in endpoints:
            endpoint.channel.close()

    def _resolve_address(self, destination: Destination) -> str:
        try:
            return self._address_book[str(destination)]
        except KeyError:
            msg = f"No address for destination {destination} in the endpoint address book"
            logger.error(msg)
            raise KeyError(msg) from None

    def _get_or_create_endpoint(self, addr: str) -> _Endpoint:
        # Dispatch threads share endpoints; one channel per address.
        with self._lock:
            endpoint = self._endpoints.get(addr)
            if endpoint is not None:
                return endpoint

            endpoint = _Endpoint(address=addr, channel=self._channel_factory(addr, self._settings))
            self._endpoints[addr] = endpoint
        logger.info("GrpcMethodInvoker created new endpoint for addr=%s", addr)
        return endpoint


# ---------------------------------------------------------------------- #
# Server
# ---------------------------------------------------------------------- #


class DirectMethodService(grpc.GenericRpcHandler):
    """Routes every ``/roundtrip.DirectMethods/<name>`` call to a MethodRouter."""

    def __init__(self, router: MethodRouter) -> None:
        self._router = router

    def service(self, handler_call_details: grpc.HandlerCallDetails) -> Optional[grpc.RpcMethodHandler]:
        prefix = f"/{SERVICE}/"
        method = handler_call_details.method
        if not method.startswith(prefix):
            return None
        name = method[len(prefix):]
        return grpc.unary_unary_rpc_method_handler(partial(self._invoke, name))

    def _invoke(self, name: str, request: bytes, context: grpc.ServicerContext) -> bytes:
        logger.debug("Direct method call name=%s size=%d", name, len(request))
        response = self._router.dispatch(name, request)
        return MethodResult.from_response(response).model_dump_json().encode("utf-8")


def start_method_server(router: MethodRouter, bind: str, settings: GrpcSettings) -> tuple[grpc.Server, int]:
    """Create and start the direct method server. Returns the server and its bound port."""
    server = create_server(settings, [DirectMethodService(router)])
    port = bind_and_start(server, bind)
    logger.info("Direct method server listening on %s (port %d), methods=%s", bind, port, router.methods)
    return server, port
