from datetime import datetime

from pydantic import BaseModel, Field


class SocialUserRead(BaseModel):
    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    level: int = 1
    is_online: bool = False
    last_seen_at: datetime | None = None


class UserSearchResultRead(SocialUserRead):
    is_friend: bool = False


class BlockedUserRead(SocialUserRead):
    blocked_at: datetime | None = None


class FriendRequestRead(BaseModel):
    id: str
    sender_id: str
    recipient_id: str
    sender_username: str
    recipient_username: str
    message: str | None = None
    status: str
    created_at: datetime
    resolved_at: datetime | None = None


class FriendRequestsRead(BaseModel):
    incoming: list[FriendRequestRead]
    outgoing: list[FriendRequestRead]


class GameInviteRead(BaseModel):
    id: str
    sender_id: str
    recipient_id: str
    sender_username: str
    recipient_username: str
    room_id: str
    status: str
    created_at: datetime
    resolved_at: datetime | None = None


class GameInvitesRead(BaseModel):
    incoming: list[GameInviteRead]
    outgoing: list[GameInviteRead]


class FriendRequestCreateRequest(BaseModel):
    username: str = Field(min_length=3, max_length=40)
    message: str | None = Field(default=None, max_length=200)


class GameInviteCreateRequest(BaseModel):
    recipient_id: str = Field(min_length=1, max_length=32)
    room_id: str = Field(min_length=4, max_length=40)
