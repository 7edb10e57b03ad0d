# src/roundtrip/handler.py
from __future__ import annotations

import threading
from logging import getLogger
from typing import Callable, Dict, Optional

from . import telemetry as tm
from .correlation import CORRELATION_ID_PROPERTY
from .dispatcher import NEW_MESSAGE_REQUEST
from .exceptions import RequestDeserializationError
from .messages import (
    SCOPE_END2END,
    SCOPE_PROPERTY,
    Message,
    MethodRequestPayload,
    MethodResponse,
)
from .telemetry import TelemetryClient
from .transports.base import OutputChannel

logger = getLogger(__name__)

DEFAULT_OUTPUT = "output1"

SENT_OK = "Message sent successfully to Edge Hub"
NOT_SENT = "Message not sent to Edge Hub"

MethodCallback = Callable[[bytes], MethodResponse]
DefaultCallback = Callable[[str, bytes], MethodResponse]


def method_not_implemented(name: str, payload: bytes) -> MethodResponse:
    """Default handler for any method without a registered callback."""
    logger.info("Received method invocation for non-existing method %s. Returning 404.", name)
    return MethodResponse.of(404, f"Method {name} not implemented")


class MethodRouter:
    """
    Maps direct method names to callbacks.

    The method name is resolved before the payload is looked at, so unknown
    methods get the default response regardless of their body.
    """

    def __init__(self, default: DefaultCallback = method_not_implemented) -> None:
        self._methods: Dict[str, MethodCallback] = {}
        self._default = default

    def register(self, name: str, callback: MethodCallback) -> None:
        self._methods[name] = callback

    def set_default(self, callback: DefaultCallback) -> None:
        self._default = callback

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    def dispatch(self, name: str, payload: bytes) -> MethodResponse:
        callback = self._methods.get(name)
        if callback is None:
            return self._default(name, payload)

        try:
            return callback(payload)
        except RequestDeserializationError as exc:
            logger.warning("Rejecting %s request with invalid payload: %s", name, exc)
            return MethodResponse.of(400, f"Invalid request payload: {exc}")
        except Exception as exc:
            logger.exception("Unhandled error in method %s", name)
            return MethodResponse.of(500, f"Method {name} failed: {exc!r}")


class RequestHandler:
    """
    Edge-side handler for ``NewMessageRequest``.

    Turns each call into an outbound message stamped with the caller's
    correlation id and forwards it to the hub. A failed forward is answered
    with 500; the handler stays up for subsequent calls.
    """

    def __init__(
        self,
        output: OutputChannel,
        telemetry: TelemetryClient,
        *,
        module_id: str,
        output_name: str = DEFAULT_OUTPUT,
    ) -> None:
        self._output = output
        self._telemetry = telemetry
        self._module_id = module_id
        self._output_name = output_name

        self._counter = 0
        self._counter_lock = threading.Lock()

    @property
    def invocations(self) -> int:
        with self._counter_lock:
            return self._counter

    def _next_count(self) -> int:
        with self._counter_lock:
            self._counter += 1
            return self._counter

    def router(self, router: Optional[MethodRouter] = None) -> MethodRouter:
        router = router or MethodRouter()
        router.register(NEW_MESSAGE_REQUEST, self.new_message_request)
        return router

    def build_message(self, request: MethodRequestPayload) -> Message:
        return Message(
            body=request.text.encode("utf-8"),
            properties={
                CORRELATION_ID_PROPERTY: request.correlation_id,
                SCOPE_PROPERTY: SCOPE_END2END,
            },
        )

    def new_message_request(self, payload: bytes) -> MethodResponse:
        count = self._next_count()
        request = MethodRequestPayload.from_json(payload)

        props = tm.event_properties(
            request.correlation_id,
            edgeModuleId=self._module_id,
            timestamp=tm.timestamp(),
        )
        logger.info(
            "NewMessageRequest method invocation received. Count=%d. CorrelationId=%s",
            count,
            request.correlation_id,
        )
        self._telemetry.track_event(tm.REQUEST_RECEIVED, props)

        message = self.build_message(request)
        try:
            self._output.send_event(self._output_name, message)
        except Exception:
            logger.exception("Error during message sending to Edge Hub. CorrelationId=%s", request.correlation_id)
            self._telemetry.track_event(tm.FORWARD_FAILED, props)
            return MethodResponse.of(500, NOT_SENT)

        self._telemetry.track_event(tm.FORWARD_SUCCEEDED, props)
        logger.info("Message sent successfully to Edge Hub. CorrelationId=%s", request.correlation_id)
        return MethodResponse.of(200, SENT_OK)
