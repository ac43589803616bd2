from pydantic import BaseModel, Field


class ChatMessageCreateRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)
    message_type: str = Field(default="text", pattern=r"^(text|emoji)$")


class PrivateMessageCreateRequest(BaseModel):
    recipient_id: str = Field(min_length=1, max_length=32)
    message: str = Field(min_length=1, max_length=2000)


class ChatMessageRead(BaseModel):
    id: str
    room_id: str
    sender_id: str | None = None
    sender_username: str | None = None
    recipient_id: str | None = None
    message: str
    message_type: str
    filtered: bool = False
    created_at: str | None = None


class ChatHistoryRead(BaseModel):
    room_id: str
    messages: list[ChatMessageRead]
    has_more: bool


class ChatRoomRead(BaseModel):
    room_id: str
    type: str
    name: str


class ChatParticipantRead(BaseModel):
    id: str
    username: str
    avatar_url: str | None = None
    is_online: bool = False
    is_player: bool = False
