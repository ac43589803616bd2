from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_user, require_play_allowed
from tictactoe.db.models import Game, User
from tictactoe.db.session import get_db
from tictactoe.realtime.socket_server import (
    notify_game_joined,
    notify_game_over,
    notify_game_updated,
)
from tictactoe.schemas.game import (
    GameCreateRequest,
    GameCreateResponse,
    GameEndResponse,
    GameJoinRequest,
    GamePage,
    GameRead,
    LeaderboardRead,
    MoveRequest,
    MoveResultRead,
    UserGameStatsRead,
)
from tictactoe.schemas.profile import EnergyRead
from tictactoe.services.admin_service import get_system_setting, has_role_at_least
from tictactoe.services.energy_service import refresh_energy
from tictactoe.services.game_service import OPEN_STATUSES, game_service

router = APIRouter()


def _ensure_visible(game: Game, user: User) -> None:
    if not game.is_private:
        return
    if user.id in (game.player_x_id, game.player_o_id) or has_role_at_least(user.role, "mod"):
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This game is private")


@router.get("/stats", response_model=UserGameStatsRead)
def get_my_stats(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserGameStatsRead:
    return UserGameStatsRead.model_validate(game_service.user_stats(db, current_user))


@router.get("/energy", response_model=EnergyRead)
def get_my_energy(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> EnergyRead:
    energy_status = refresh_energy(current_user)
    db.add(current_user)
    db.commit()
    return EnergyRead(**vars(energy_status))


@router.get("/leaderboard", response_model=LeaderboardRead)
def get_leaderboard(
    sort_by: str = Query(default="wins", max_length=20),
    min_games: int = Query(default=0, ge=0),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> LeaderboardRead:
    payload = game_service.leaderboard(db, sort_by=sort_by, min_games=min_games, page=page, limit=limit)
    return LeaderboardRead.model_validate(payload)


@router.get("/active", response_model=list[GameRead])
def get_active_games(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[GameRead]:
    games = game_service.active_games_for_user(db, current_user.id)
    return [GameRead.model_validate(game_service.serialize_game(db, game)) for game in games]


@router.get("/history", response_model=GamePage)
def get_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GamePage:
    return GamePage.model_validate(game_service.history(db, current_user.id, page=page, limit=limit))


@router.post("/rooms", response_model=GameCreateResponse, status_code=status.HTTP_201_CREATED)
def create_room(
    payload: GameCreateRequest,
    current_user: User = Depends(require_play_allowed),
    db: Session = Depends(get_db),
) -> GameCreateResponse:
    if game_service.open_game_for_user(db, current_user.id) is None:
        open_games = db.scalar(select(func.count(Game.id)).where(Game.status.in_(OPEN_STATUSES))) or 0
        if open_games >= int(get_system_setting(db, "max_concurrent_games")):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Too many games in progress, try again later",
            )
    try:
        game, created = game_service.create_game(
            db,
            current_user,
            game_mode=payload.game_mode,
            is_private=payload.is_private,
            password=payload.password,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return GameCreateResponse(
        game=GameRead.model_validate(game_service.serialize_game(db, game)),
        created=created,
    )


@router.get("/rooms", response_model=list[GameRead])
def list_rooms(
    game_mode: str | None = Query(default=None, max_length=20),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[GameRead]:
    games = game_service.list_available(
        db,
        exclude_user_id=current_user.id,
        game_mode=game_mode,
        limit=limit,
    )
    return [GameRead.model_validate(game_service.serialize_game(db, game)) for game in games]


@router.get("/rooms/{room_id}", response_model=GameRead)
def get_room(
    room_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GameRead:
    game = game_service.get_game(db, room_id)
    if not game:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")
    _ensure_visible(game, current_user)
    return GameRead.model_validate(game_service.serialize_game(db, game))


@router.post("/rooms/{room_id}/join", response_model=GameRead)
async def join_room(
    room_id: str,
    payload: GameJoinRequest | None = None,
    current_user: User = Depends(require_play_allowed),
    db: Session = Depends(get_db),
) -> GameRead:
    try:
        game = game_service.join_game(db, room_id, current_user, password=payload.password if payload else None)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not game:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")

    game_payload = game_service.serialize_game(db, game)
    await notify_game_joined(game_payload, current_user.id)
    return GameRead.model_validate(game_payload)


@router.post("/rooms/{room_id}/leave", response_model=GameEndResponse)
async def leave_room(
    room_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GameEndResponse:
    try:
        result = game_service.leave_game(db, room_id, current_user)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if not result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")

    game, rewards = result
    game_payload = game_service.serialize_game(db, game)
    if rewards:
        await notify_game_over(game_payload, rewards, reason="left")
    else:
        await notify_game_updated(game_payload)
    return GameEndResponse.model_validate({"game": game_payload, "rewards": rewards})


@router.post("/rooms/{room_id}/move", response_model=MoveResultRead)
async def make_move(
    room_id: str,
    payload: MoveRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MoveResultRead:
    try:
        result = game_service.make_move(db, room_id, current_user, payload.cell())
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")

    outcome = result["outcome"]
    game_payload = game_service.serialize_game(db, result["game"])
    if outcome.finished:
        await notify_game_over(game_payload, result["rewards"], reason=outcome.result)
    else:
        await notify_game_updated(game_payload)
    return MoveResultRead.model_validate(
        {
            "game": game_payload,
            "position": result["position"],
            "symbol": result["symbol"],
            "result": outcome.result,
            "winner_symbol": outcome.winner_symbol,
            "rewards": result["rewards"],
        }
    )


@router.post("/rooms/{room_id}/forfeit", response_model=GameEndResponse)
async def forfeit(
    room_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GameEndResponse:
    try:
        result = game_service.forfeit(db, room_id, current_user)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")

    game, rewards = result
    game_payload = game_service.serialize_game(db, game)
    await notify_game_over(game_payload, rewards, reason="forfeit")
    return GameEndResponse.model_validate({"game": game_payload, "rewards": rewards})
