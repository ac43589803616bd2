from pydantic import BaseModel, Field, model_validator


class GameCreateRequest(BaseModel):
    game_mode: str = Field(default="classic", pattern=r"^(classic|blitz|ranked|custom)$")
    is_private: bool = False
    password: str | None = Field(default=None, min_length=1, max_length=64)


class GameJoinRequest(BaseModel):
    password: str | None = Field(default=None, max_length=64)


class MoveRequest(BaseModel):
    position: int | None = Field(default=None, ge=0, le=8)
    row: int | None = Field(default=None, ge=0, le=2)
    col: int | None = Field(default=None, ge=0, le=2)

    @model_validator(mode="after")
    def _require_cell(self) -> "MoveRequest":
        if self.position is None and (self.row is None or self.col is None):
            raise ValueError("Either position or row and col are required")
        return self

    def cell(self) -> int:
        if self.position is not None:
            return self.position
        return self.row * 3 + self.col


class PlayerRead(BaseModel):
    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    level: int = 1
    is_online: bool = False


class MoveRead(BaseModel):
    user_id: str
    position: int
    symbol: str
    timestamp: str


class GameRead(BaseModel):
    id: str
    room_id: str
    game_mode: str
    is_private: bool
    has_password: bool = False
    creator_id: str
    player_x: PlayerRead | None = None
    player_o: PlayerRead | None = None
    board: list[str]
    current_symbol: str
    current_player_id: str | None = None
    status: str
    result: str | None = None
    winner_id: str | None = None
    winning_line: list[int] | None = None
    moves: list[MoveRead] = Field(default_factory=list)
    created_at: str | None = None
    started_at: str | None = None
    ended_at: str | None = None


class GameCreateResponse(BaseModel):
    game: GameRead
    created: bool


class RewardRead(BaseModel):
    outcome: str
    xp_gained: int
    level: int
    leveled_up: bool


class MoveResultRead(BaseModel):
    game: GameRead
    position: int
    symbol: str
    result: str
    winner_symbol: str | None = None
    rewards: dict[str, RewardRead] = Field(default_factory=dict)


class GameEndResponse(BaseModel):
    game: GameRead
    rewards: dict[str, RewardRead] = Field(default_factory=dict)


class GamePage(BaseModel):
    items: list[GameRead]
    total: int
    page: int
    limit: int
    has_more: bool


class UserGameStatsRead(BaseModel):
    user_id: str
    username: str
    games_played: int
    wins: int
    losses: int
    draws: int
    win_rate: float
    active_games: int
    level: int
    xp: int
    xp_into_level: int
    xp_for_next_level: int
    is_max_level: bool


class LeaderboardEntryRead(BaseModel):
    rank: int
    user_id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    level: int
    games_played: int
    wins: int
    losses: int
    draws: int
    win_rate: float


class LeaderboardRead(BaseModel):
    items: list[LeaderboardEntryRead]
    total: int
    page: int
    limit: int
    sort_by: str
