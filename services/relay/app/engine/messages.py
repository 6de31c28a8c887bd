"""Wire schema for relay frames.

Inbound frames are decoded into one model per ``type``; anything that does not
fit (bad JSON, unknown type, wrong field types) becomes ``MalformedMessage``.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import MalformedMessage


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreateSession(_Inbound):
    type: Literal["create-session"]


class JoinSession(_Inbound):
    type: Literal["join-session"]
    code: Optional[str] = None
    agent_key: Optional[str] = Field(default=None, alias="agentKey")


class FullPage(_Inbound):
    type: Literal["full-page"]
    html: str
    password_length: Optional[int] = Field(default=0, alias="passwordLength")


class CursorMove(_Inbound):
    type: Literal["cursor-move"]
    x: float
    y: float


class VoiceMessage(_Inbound):
    type: Literal["voice-message"]
    text: str


class AiResponse(_Inbound):
    type: Literal["ai-response"]
    text: str


class EndSession(_Inbound):
    type: Literal["end-session"]


InboundMessage = Annotated[
    Union[CreateSession, JoinSession, FullPage, CursorMove, VoiceMessage, AiResponse, EndSession],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)


def decode(raw: Union[str, bytes]) -> InboundMessage:
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError as exc:
        raise MalformedMessage(f"{exc.error_count()} validation error(s): {exc.errors()[0]['msg']}") from exc


def event(kind: str, **fields: Any) -> Dict[str, Any]:
    """Build an outbound event envelope."""
    return {"type": kind, **fields}
