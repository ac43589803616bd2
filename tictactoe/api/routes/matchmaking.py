from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_user, require_min_role, require_play_allowed
from tictactoe.db.models import User
from tictactoe.db.session import get_db
from tictactoe.realtime.socket_server import start_matched_game
from tictactoe.schemas.auth import MessageRead
from tictactoe.schemas.matchmaking import (
    ForceMatchRequest,
    MatchmakingJoinRequest,
    MatchmakingStatusRead,
    QueueCleanupRead,
    QueueCleanupRequest,
    QueueStatsRead,
)
from tictactoe.services.admin_service import write_audit_log
from tictactoe.services.energy_service import ensure_can_play
from tictactoe.services.game_service import game_service
from tictactoe.services.matchmaking_service import matchmaking_service

router = APIRouter()


def _status_payload(db: Session, user_id: str) -> MatchmakingStatusRead:
    entry = matchmaking_service.get_entry(user_id)
    open_game = game_service.open_game_for_user(db, user_id)
    return MatchmakingStatusRead(
        in_queue=entry is not None,
        position=matchmaking_service.position(user_id) if entry else None,
        estimated_wait_seconds=matchmaking_service.estimated_wait_seconds(entry) if entry else None,
        joined_at=entry.joined_at if entry else None,
        game_mode=entry.game_mode if entry else None,
        room_id=open_game.room_id if open_game else None,
        queue=QueueStatsRead.model_validate(matchmaking_service.stats()),
    )


@router.post("/join", response_model=MatchmakingStatusRead)
async def join_queue(
    payload: MatchmakingJoinRequest,
    current_user: User = Depends(require_play_allowed),
    db: Session = Depends(get_db),
) -> MatchmakingStatusRead:
    if game_service.open_game_for_user(db, current_user.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Leave your current game first")
    if matchmaking_service.is_queued(current_user.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Player already in queue")
    try:
        ensure_can_play(current_user)
        db.add(current_user)
        db.commit()
        matchmaking_service.join(
            current_user.id,
            current_user.username,
            current_user.level,
            rating=payload.rating,
            game_mode=payload.game_mode,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    match = matchmaking_service.find_match(current_user.id)
    if match:
        await start_matched_game(match)
    return _status_payload(db, current_user.id)


@router.post("/leave", response_model=MessageRead)
def leave_queue(current_user: User = Depends(get_current_user)) -> MessageRead:
    if matchmaking_service.leave(current_user.id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not in queue")
    return MessageRead(message="Left matchmaking queue")


@router.get("/status", response_model=MatchmakingStatusRead)
def queue_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MatchmakingStatusRead:
    return _status_payload(db, current_user.id)


@router.get("/stats", response_model=QueueStatsRead)
def queue_stats(_: User = Depends(get_current_user)) -> QueueStatsRead:
    return QueueStatsRead.model_validate(matchmaking_service.stats())


@router.post("/force-match", response_model=MessageRead)
async def force_match(
    payload: ForceMatchRequest,
    current_user: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> MessageRead:
    match = matchmaking_service.force_match(payload.player1_id, payload.player2_id)
    if not match:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Both players must be queued")
    game_payload = await start_matched_game(match)
    if not game_payload:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Could not start matched game")

    write_audit_log(
        db,
        actor_user_id=current_user.id,
        actor_role=current_user.role,
        action="matchmaking.force_match",
        status="success",
        message=f"forced match {game_payload['room_id']}",
        target_game_id=game_payload["id"],
        metadata={"player1_id": payload.player1_id, "player2_id": payload.player2_id},
    )
    return MessageRead(message=game_payload["room_id"])


@router.post("/cleanup", response_model=QueueCleanupRead)
def cleanup_queue(
    payload: QueueCleanupRequest,
    current_user: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> QueueCleanupRead:
    removed = matchmaking_service.cleanup(payload.max_age_seconds)
    write_audit_log(
        db,
        actor_user_id=current_user.id,
        actor_role=current_user.role,
        action="matchmaking.cleanup",
        status="success",
        message=f"removed {len(removed)} queue entries",
        metadata={"max_age_seconds": payload.max_age_seconds},
    )
    return QueueCleanupRead(removed=len(removed), user_ids=[entry.user_id for entry in removed])
