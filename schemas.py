from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from errors import ProtocolError


class WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# -------------------- Stored message --------------------

class ChatMessage(WireModel):
    type: Literal["message"] = "message"
    message_id: str = Field(..., description="msg_<ms>_<hex>")
    content: str
    session_id: str = Field(..., description="Owning session")
    timestamp: int = Field(..., description="Creation time, epoch ms")
    edited_at: Optional[int] = None
    nickname: Optional[str] = None
    signature: str = ""


# -------------------- Inbound events --------------------

class JoinEvent(WireModel):
    type: Literal["join"]
    session_id: Optional[str] = None
    timestamp: Optional[int] = None


class MessageEvent(WireModel):
    type: Literal["message"]
    content: str
    session_id: Optional[str] = None
    timestamp: Optional[int] = None
    signature: Optional[str] = None
    nickname: Optional[str] = None


class EditEvent(WireModel):
    type: Literal["edit"]
    message_id: str
    new_content: str
    session_id: Optional[str] = None
    timestamp: Optional[int] = None
    signature: Optional[str] = None


class TypingEvent(WireModel):
    type: Literal["typing"]
    typing: bool
    session_id: Optional[str] = None


InboundEvent = Annotated[
    Union[JoinEvent, MessageEvent, EditEvent, TypingEvent],
    Field(discriminator="type"),
]

_inbound = TypeAdapter(InboundEvent)


def parse_event(raw: Union[str, bytes]) -> Union[JoinEvent, MessageEvent, EditEvent, TypingEvent]:
    try:
        return _inbound.validate_json(raw)
    except ValidationError as e:
        errors = e.errors()
        kind = errors[0]["type"] if errors else "invalid"
        raise ProtocolError(f"Malformed event ({kind})") from e


# -------------------- Outbound events --------------------

def message_edited_event(message: ChatMessage) -> Dict[str, Any]:
    return {"type": "message_edited", "message": message.to_wire()}


def user_count_event(count: int) -> Dict[str, Any]:
    return {"type": "user_count", "count": count}


def typing_event(session_id: str, typing: bool) -> Dict[str, Any]:
    return {"type": "typing", "sessionId": session_id, "typing": typing}


def system_event(content: str, session_id: Optional[str] = None) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": "system", "content": content}
    if session_id is not None:
        event["sessionId"] = session_id
    return event


def error_event(content: str) -> Dict[str, Any]:
    return {"type": "error", "content": content}
