from datetime import datetime

from pydantic import BaseModel, Field


class AdminAuditLogRead(BaseModel):
    id: str
    actor_user_id: str
    actor_role: str
    action: str
    status: str
    message: str
    target_user_id: str | None = None
    target_game_id: str | None = None
    metadata_json: str
    created_at: datetime

    class Config:
        from_attributes = True


class AdminUserRead(BaseModel):
    id: str
    email: str
    username: str
    role: str
    level: int
    xp: int
    energy: int
    games_played: int
    wins: int
    losses: int
    draws: int
    is_online: bool
    is_blocked: bool
    email_verified: bool
    created_at: datetime
    last_login_at: datetime | None = None

    class Config:
        from_attributes = True


class AdminUserPage(BaseModel):
    items: list[AdminUserRead]
    total: int
    page: int
    limit: int


class AdminUserUpdateRequest(BaseModel):
    role: str | None = Field(default=None, min_length=3, max_length=20)
    is_blocked: bool | None = None
    energy: int | None = Field(default=None, ge=0, le=100)
    xp: int | None = Field(default=None, ge=0)


class DashboardStatsRead(BaseModel):
    total_users: int
    online_users: int
    new_users_today: int
    blocked_users: int
    total_games: int
    active_games: int
    waiting_games: int
    completed_today: int
    queue_size: int


class SystemSettingsRead(BaseModel):
    maintenance_mode: bool
    registration_enabled: bool
    chat_enabled: bool
    max_concurrent_games: int
    announcement: str


class SystemSettingsUpdateRequest(BaseModel):
    maintenance_mode: bool | None = None
    registration_enabled: bool | None = None
    chat_enabled: bool | None = None
    max_concurrent_games: int | None = Field(default=None, ge=1, le=100000)
    announcement: str | None = Field(default=None, max_length=500)


class AdminNotificationCreateRequest(BaseModel):
    recipient_id: str = Field(min_length=1, max_length=32)
    title: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=500)
