# src/roundtrip/messages.py
from __future__ import annotations

"""Payloads exchanged over the direct method boundary and the message boundary."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .correlation import CORRELATION_ID_PROPERTY
from .exceptions import RequestDeserializationError

SCOPE_PROPERTY = "scope"
SCOPE_END2END = "end2end"
CONTENT_TYPE_JSON = "application/json"
CONTENT_ENCODING_UTF8 = "UTF-8"


class MethodRequestPayload(BaseModel):
    """Body of a ``NewMessageRequest`` call: ``{"correlationId": ..., "text": ...}``."""

    # Validated by alias only: ``correlation_id`` is not part of the wire contract.
    model_config = ConfigDict(frozen=True)

    correlation_id: str = Field(alias=CORRELATION_ID_PROPERTY)
    text: str

    @classmethod
    def create(cls, correlation_id: str, text: str) -> "MethodRequestPayload":
        return cls.model_validate({CORRELATION_ID_PROPERTY: correlation_id, "text": text})

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes | str) -> "MethodRequestPayload":
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise RequestDeserializationError(
                f"{exc.error_count()} validation error(s): "
                + "; ".join(f"{'.'.join(map(str, e['loc'])) or '<body>'}: {e['msg']}" for e in exc.errors())
            ) from exc


class MethodResponsePayload(BaseModel):
    """Body of a direct method response. ``ModuleResponse`` is omitted when None."""

    model_config = ConfigDict(populate_by_name=True)

    module_response: Optional[str] = Field(default=None, alias="ModuleResponse")

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


@dataclass(frozen=True, slots=True)
class MethodResponse:
    """Status code plus raw JSON payload returned by a direct method."""

    status: int
    payload: bytes = b""

    @classmethod
    def of(cls, status: int, module_response: str | None) -> "MethodResponse":
        return cls(status=status, payload=MethodResponsePayload(module_response=module_response).to_json())

    def json(self) -> Any:
        if not self.payload:
            return None
        return json.loads(self.payload)


@dataclass(slots=True)
class Message:
    """Outbound message an edge module hands to its hub."""

    body: bytes
    content_type: str = CONTENT_TYPE_JSON
    content_encoding: str = CONTENT_ENCODING_UTF8
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def correlation_id(self) -> str | None:
        return self.properties.get(CORRELATION_ID_PROPERTY)


@dataclass(frozen=True, slots=True)
class DeliveredMessage:
    """A message as delivered to the cloud-side ingestion point. Read-only."""

    body: bytes
    properties: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    enqueued_time: datetime | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.properties, MappingProxyType):
            object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    @property
    def correlation_id(self) -> str | None:
        return self.properties.get(CORRELATION_ID_PROPERTY)

    def body_text(self) -> str:
        return self.body.decode("utf-8", errors="replace")
