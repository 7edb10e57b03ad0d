from __future__ import annotations

"""Transport protocols the core depends on."""

from typing import Protocol

from ..destinations import Destination
from ..messages import Message, MethodResponse


class MethodInvoker(Protocol):
    """Client side of the direct method boundary."""

    def invoke(
        self,
        destination: Destination,
        method_name: str,
        payload: bytes,
        *,
        response_timeout_s: float,
        connect_timeout_s: float,
    ) -> MethodResponse:
        """
        Invoke ``method_name`` on ``destination`` and return its response.

        Raises on transport failure (timeout, unreachable endpoint, unknown
        destination address).
        """


class OutputChannel(Protocol):
    """Edge-side channel for handing messages to the hub."""

    def send_event(self, output_name: str, message: Message) -> None:
        """Send ``message`` on ``output_name``; raises on failure."""
