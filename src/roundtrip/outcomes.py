from __future__ import annotations

"""Invocation outcomes produced by the Dispatcher, one per destination per cycle."""

from dataclasses import dataclass
from typing import Union

from .destinations import Destination

SUCCESS_MIN = 200
SUCCESS_MAX = 299


def is_success_status(status: int) -> bool:
    return SUCCESS_MIN <= status <= SUCCESS_MAX


@dataclass(frozen=True, slots=True)
class Success:
    destination: Destination
    correlation_id: str
    status: int

    kind = "success"


@dataclass(frozen=True, slots=True)
class Failure:
    """The endpoint answered, but with a status outside [200, 299]."""

    destination: Destination
    correlation_id: str
    status: int

    kind = "failure"


@dataclass(frozen=True, slots=True)
class Error:
    """The call itself raised (timeout, unreachable endpoint, ...)."""

    destination: Destination
    correlation_id: str
    cause: BaseException

    kind = "error"


InvocationOutcome = Union[Success, Failure, Error]


def classify_status(destination: Destination, correlation_id: str, status: int) -> Success | Failure:
    if is_success_status(status):
        return Success(destination=destination, correlation_id=correlation_id, status=status)
    return Failure(destination=destination, correlation_id=correlation_id, status=status)
