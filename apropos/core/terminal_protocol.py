"""Client-to-server messages on the terminal WebSocket."""

from __future__ import annotations

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from apropos.core.errors import ProtocolError


class InputMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["input"]
    data: str = ""


class ResizeMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["resize"]
    cols: int = Field(ge=1, le=1000)
    rows: int = Field(ge=1, le=1000)


class SelectionMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["selection"]
    active: bool


class ScrollMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["scroll"]
    lines: int


ClientMessage = Annotated[
    Union[InputMessage, ResizeMessage, SelectionMessage, ScrollMessage],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str) -> ClientMessage:
    """Decode one JSON text frame from the browser.

    Raises:
        ProtocolError: Not JSON, not an object, or an unknown/invalid message
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ProtocolError("Message must be a JSON object")
    try:
        return _client_message_adapter.validate_python(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid message: {e.error_count()} error(s) for type {payload.get('type')!r}") from e
