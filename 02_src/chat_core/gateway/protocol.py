"""WebSocket frame envelopes and request payloads."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..config import PUBLIC_ROOMS_LIMIT, ROOM_DEFAULT_MAX_MEMBERS
from ..errors import ValidationFailure

REPLY_EVENT = "reply"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InboundFrame(CamelModel):
    """Client -> server."""

    event: str
    data: dict[str, Any] | None = None
    request_id: str | None = None  # echoed back on the reply


class OutboundFrame(CamelModel):
    """Server -> client: a reply (event="reply") or a push."""

    event: str
    data: dict[str, Any] = {}
    request_id: str | None = None

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# Request payloads
class StartConversationRequest(CamelModel):
    other_user_id: str = Field(min_length=1)


class ConversationRequest(CamelModel):
    conversation_id: str = Field(min_length=1)


class ListConversationsRequest(CamelModel):
    include_archived: bool = False


class ArchiveConversationRequest(ConversationRequest):
    archived: bool = True


class PinConversationRequest(ConversationRequest):
    pinned: bool = True


class SendConversationMessageRequest(ConversationRequest):
    content: str | None = None
    reply_to_id: str | None = None


class CreateRoomRequest(CamelModel):
    name: str
    description: str | None = None
    is_private: bool = False
    max_members: int = ROOM_DEFAULT_MAX_MEMBERS
    category: str = "general"


class RoomRequest(CamelModel):
    room_id: str = Field(min_length=1)


class JoinRoomRequest(RoomRequest):
    invite_code: str | None = None


class JoinByInviteRequest(CamelModel):
    invite_code: str = Field(min_length=1)


class PublicRoomsRequest(CamelModel):
    category: str | None = None
    limit: int = Field(default=PUBLIC_ROOMS_LIMIT, ge=1, le=100)


class SendRoomMessageRequest(RoomRequest):
    content: str | None = None
    reply_to_id: str | None = None


class MessageRequest(CamelModel):
    message_id: str = Field(min_length=1)


class EditMessageRequest(MessageRequest):
    content: str


class TypingRequest(CamelModel):
    conversation_id: str | None = None
    room_id: str | None = None


def parse_request(model: type[BaseModel], data: dict | None) -> Any:
    """Validate a payload, reporting problems as ValidationFailure."""
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationFailure(f"Invalid payload: {problems}") from e
