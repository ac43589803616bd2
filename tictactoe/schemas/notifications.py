from pydantic import BaseModel


class NotificationRead(BaseModel):
    id: str
    type: str
    title: str
    message: str
    data: dict = {}
    is_read: bool
    created_at: str | None = None
    read_at: str | None = None
    expires_at: str | None = None


class NotificationPage(BaseModel):
    items: list[NotificationRead]
    total: int
    unread_count: int
    page: int
    limit: int
    has_more: bool


class UnreadCountRead(BaseModel):
    unread_count: int
