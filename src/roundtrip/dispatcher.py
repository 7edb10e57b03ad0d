# src/roundtrip/dispatcher.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from logging import getLogger
from typing import Iterable, List, Optional, Tuple

from . import telemetry as tm
from .correlation import new_correlation_id
from .destinations import Destination
from .messages import MethodRequestPayload
from .outcomes import Error, Failure, InvocationOutcome, Success, classify_status
from .telemetry import TelemetryClient
from .transports.base import MethodInvoker

logger = getLogger(__name__)

NEW_MESSAGE_REQUEST = "NewMessageRequest"
DEFAULT_TEXT_TEMPLATE = "End2End test message with correlationId={correlation_id}"
DEFAULT_TIMEOUT_S = 10.0


@dataclass(slots=True)
class CycleResult:
    """All outcomes of one dispatch cycle, in destination order."""

    correlation_id: str
    outcomes: List[Tuple[Destination, InvocationOutcome]] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return all(isinstance(o, Success) for _, o in self.outcomes)

    def outcome_for(self, destination: Destination) -> InvocationOutcome:
        for dest, outcome in self.outcomes:
            if dest == destination:
                return outcome
        raise KeyError(str(destination))


class Dispatcher:
    """
    Fans a single direct method call out to every configured destination.

    One correlation id is generated per cycle and embedded in the payload
    sent to all destinations. Calls are independent: an exception raised for
    one destination becomes an ``Error`` outcome for that destination only.
    No retries are made within a cycle.
    """

    def __init__(
        self,
        invoker: MethodInvoker,
        telemetry: TelemetryClient,
        *,
        method_name: str = NEW_MESSAGE_REQUEST,
        response_timeout_s: float = DEFAULT_TIMEOUT_S,
        connect_timeout_s: float = DEFAULT_TIMEOUT_S,
        max_parallel: Optional[int] = None,
        text_template: str = DEFAULT_TEXT_TEMPLATE,
    ) -> None:
        self._invoker = invoker
        self._telemetry = telemetry
        self._method_name = method_name
        self._response_timeout_s = response_timeout_s
        self._connect_timeout_s = connect_timeout_s
        self._max_parallel = max_parallel
        self._text_template = text_template

    @property
    def method_name(self) -> str:
        return self._method_name

    def build_payload(self, correlation_id: str) -> MethodRequestPayload:
        text = self._text_template.format(correlation_id=correlation_id)
        return MethodRequestPayload.create(correlation_id, text)

    def run_cycle(
        self,
        destinations: Iterable[Destination],
        correlation_id: Optional[str] = None,
    ) -> CycleResult:
        dests = list(destinations)
        cid = correlation_id or new_correlation_id()
        payload = self.build_payload(cid).to_json()

        logger.info(
            "Starting cycle correlationId=%s method=%s destinations=%d",
            cid,
            self._method_name,
            len(dests),
        )

        result = CycleResult(correlation_id=cid)
        if not dests:
            logger.warning("No destinations configured; nothing to invoke. correlationId=%s", cid)
            return result

        workers = self._max_parallel or len(dests)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
            futures = [pool.submit(self._invoke_one, dest, cid, payload) for dest in dests]
            # _invoke_one never raises, so result() only returns outcomes.
            result.outcomes = [(dest, fut.result()) for dest, fut in zip(dests, futures)]

        logger.info(
            "Cycle finished correlationId=%s succeeded=%d failed=%d errors=%d",
            cid,
            sum(isinstance(o, Success) for _, o in result.outcomes),
            sum(isinstance(o, Failure) for _, o in result.outcomes),
            sum(isinstance(o, Error) for _, o in result.outcomes),
        )
        return result

    # ------------------------------------------------------------------ #
    # Per-destination call
    # ------------------------------------------------------------------ #

    def _invoke_one(self, destination: Destination, correlation_id: str, payload: bytes) -> InvocationOutcome:
        props = tm.event_properties(correlation_id, destination=str(destination))
        self._telemetry.track_event(tm.INVOCATION_STARTED, props)
        logger.info(
            "Invoking method %s on module %s. CorrelationId=%s",
            self._method_name,
            destination,
            correlation_id,
        )

        try:
            response = self._invoker.invoke(
                destination,
                self._method_name,
                payload,
                response_timeout_s=self._response_timeout_s,
                connect_timeout_s=self._connect_timeout_s,
            )
        except Exception as exc:
            logger.error(
                "[%s] Exception on direct method call. CorrelationId=%s",
                destination,
                correlation_id,
                exc_info=exc,
            )
            return Error(destination=destination, correlation_id=correlation_id, cause=exc)

        outcome = classify_status(destination, correlation_id, response.status)
        props = props | {"status": str(response.status)}
        if isinstance(outcome, Success):
            self._telemetry.track_event(tm.INVOCATION_SUCCEEDED, props)
            logger.info("[%s] Successful direct method call result code=%d", destination, response.status)
        else:
            self._telemetry.track_event(tm.INVOCATION_FAILED, props)
            logger.warning("[%s] Unsuccessful direct method call result code=%d", destination, response.status)
        return outcome
