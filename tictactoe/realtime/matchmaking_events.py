import logging

from tictactoe.db.models import User
from tictactoe.db.session import SessionLocal
from tictactoe.realtime.socket_server import (
    _is_socket_event_allowed,
    _sid_to_identity,
    _socket_rate_limited_payload,
    sio,
    start_matched_game,
)
from tictactoe.services.admin_service import has_role_at_least, is_maintenance_mode
from tictactoe.services.energy_service import ensure_can_play
from tictactoe.services.game_service import game_service
from tictactoe.services.matchmaking_service import matchmaking_service

logger = logging.getLogger(__name__)


async def _match_error(sid: str, message: str) -> dict:
    await sio.emit("match_error", {"error": message}, room=sid)
    return {"ok": False, "error": message}


def queue_status(user_id: str) -> dict:
    entry = matchmaking_service.get_entry(user_id)
    if entry is None:
        return {"in_queue": False, "position": None, "estimated_wait_seconds": None, "game_mode": None}
    return {
        "in_queue": True,
        "position": matchmaking_service.position(user_id),
        "estimated_wait_seconds": matchmaking_service.estimated_wait_seconds(entry),
        "game_mode": entry.game_mode,
    }


@sio.event
async def find_match(sid, data=None):
    if not _is_socket_event_allowed(sid, "find_match"):
        return await _socket_rate_limited_payload(sid, "find_match")
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    data = data if isinstance(data, dict) else {}
    game_mode = data.get("game_mode") or "classic"
    rating = data.get("rating")

    db = SessionLocal()
    try:
        user = db.get(User, identity.user_id)
        if not user or user.is_deleted or user.is_blocked:
            return {"ok": False, "error": "unauthorized"}
        if is_maintenance_mode(db) and not has_role_at_least(user.role, "admin"):
            return await _match_error(sid, "Server is in maintenance mode")
        if game_service.open_game_for_user(db, user.id):
            return await _match_error(sid, "Leave your current game first")
        try:
            ensure_can_play(user)
            db.commit()
            matchmaking_service.join(
                user.id,
                user.username,
                user.level,
                rating=rating if isinstance(rating, int) and not isinstance(rating, bool) else None,
                game_mode=game_mode,
                socket_id=sid,
            )
        except ValueError as exc:
            db.rollback()
            return await _match_error(sid, str(exc))
    finally:
        db.close()

    status_payload = queue_status(identity.user_id)
    await sio.emit("matchmaking_queued", status_payload, room=sid)

    match = matchmaking_service.find_match(identity.user_id)
    if match is None:
        return {"ok": True, "matched": False, **status_payload}
    game_payload = await start_matched_game(match)
    if game_payload is None:
        return {"ok": False, "error": "Could not start matched game"}
    return {"ok": True, "matched": True, "room_id": game_payload["room_id"]}


@sio.event
async def cancel_matchmaking(sid, data=None):
    if not _is_socket_event_allowed(sid, "cancel_matchmaking"):
        return await _socket_rate_limited_payload(sid, "cancel_matchmaking")
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    removed = matchmaking_service.leave(identity.user_id)
    if removed is None:
        return await _match_error(sid, "Not in queue")
    await sio.emit("matchmaking_cancelled", {"user_id": identity.user_id}, room=sid)
    return {"ok": True}


@sio.event
async def matchmaking_status(sid, data=None):
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    status_payload = queue_status(identity.user_id)
    await sio.emit("matchmaking_status", status_payload, room=sid)
    return {"ok": True, **status_payload}
