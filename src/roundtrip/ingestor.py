from __future__ import annotations

from datetime import datetime
from logging import getLogger
from typing import Callable

from . import telemetry as tm
from .messages import DeliveredMessage
from .telemetry import TelemetryClient

logger = getLogger(__name__)


class Ingestor:
    """
    Cloud-side observer of delivered messages.

    Messages carrying a ``correlationId`` property produce one
    ``MESSAGE_OBSERVED`` event each; others are logged as a warning and
    otherwise ignored. Redeliveries are recorded again; deduplication is left
    to whoever analyses the event stream.
    """

    def __init__(self, telemetry: TelemetryClient, *, clock: Callable[[], datetime] = tm.utcnow) -> None:
        self._telemetry = telemetry
        self._clock = clock

    def observe(self, message: DeliveredMessage) -> None:
        logger.info("Received a message: %s", message.body_text())

        correlation_id = message.correlation_id
        if correlation_id is None:
            logger.warning("Message received without correlationId property")
            return

        logger.info("Message correlationId=%s", correlation_id)
        self._telemetry.track_event(
            tm.MESSAGE_OBSERVED,
            tm.event_properties(correlation_id, timestamp=tm.timestamp(self._clock())),
        )
