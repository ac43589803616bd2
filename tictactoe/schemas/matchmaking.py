from datetime import datetime

from pydantic import BaseModel, Field


class MatchmakingJoinRequest(BaseModel):
    game_mode: str = Field(default="classic", pattern=r"^(classic|blitz|ranked|custom)$")
    rating: int | None = Field(default=None, ge=0, le=3000)


class QueueStatsRead(BaseModel):
    total_players: int
    average_wait_seconds: float
    level_distribution: dict[int, int] = Field(default_factory=dict)
    modes: dict[str, int] = Field(default_factory=dict)


class MatchmakingStatusRead(BaseModel):
    in_queue: bool
    position: int | None = None
    estimated_wait_seconds: int | None = None
    joined_at: datetime | None = None
    game_mode: str | None = None
    room_id: str | None = None
    queue: QueueStatsRead


class ForceMatchRequest(BaseModel):
    player1_id: str = Field(min_length=1, max_length=32)
    player2_id: str = Field(min_length=1, max_length=32)


class QueueCleanupRequest(BaseModel):
    max_age_seconds: int | None = Field(default=None, ge=1, le=86400)


class QueueCleanupRead(BaseModel):
    removed: int
    user_ids: list[str]
