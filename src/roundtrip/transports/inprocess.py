from __future__ import annotations

"""In-process transports that wire caller, receiver and processor together without a network."""

from dataclasses import dataclass
from typing import Callable, Mapping

from ..destinations import Destination
from ..handler import MethodRouter
from ..messages import DeliveredMessage, Message, MethodResponse
from ..telemetry import utcnow
from .base import MethodInvoker, OutputChannel


@dataclass(slots=True)
class InProcessInvoker(MethodInvoker):
    """Deliver direct method calls to routers registered in the same process."""

    routers: Mapping[str, MethodRouter]

    def invoke(
        self,
        destination: Destination,
        method_name: str,
        payload: bytes,
        *,
        response_timeout_s: float,
        connect_timeout_s: float,
    ) -> MethodResponse:
        try:
            router = self.routers[str(destination)]
        except KeyError as exc:
            raise KeyError(f"InProcessInvoker: unknown destination {destination}") from exc
        return router.dispatch(method_name, payload)


@dataclass(slots=True)
class InProcessOutput(OutputChannel):
    """Hand forwarded messages straight to a delivery callback (e.g. Ingestor.observe)."""

    on_message: Callable[[DeliveredMessage], None]

    def send_event(self, output_name: str, message: Message) -> None:
        self.on_message(
            DeliveredMessage(
                body=bytes(message.body),
                properties=dict(message.properties),
                enqueued_time=utcnow(),
            )
        )
