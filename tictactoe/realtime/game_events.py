import logging

from sqlalchemy.orm import Session

from tictactoe.db.models import User
from tictactoe.db.session import SessionLocal
from tictactoe.realtime.socket_server import (
    _is_socket_event_allowed,
    _sid_spectating,
    _sid_to_identity,
    _socket_rate_limited_payload,
    attach_sid_to_game,
    emit_game_over,
    emit_game_state,
    game_room,
    notify_game_joined,
    sio,
    symbol_for,
)
from tictactoe.services.admin_service import has_role_at_least, is_maintenance_mode
from tictactoe.services.board import position_from
from tictactoe.services.game_service import game_service

logger = logging.getLogger(__name__)


def _room_id_from(data) -> str:
    if isinstance(data, dict):
        room_id = data.get("room_id")
        if isinstance(room_id, str):
            return room_id.strip()
    return ""


def _position_from(data) -> int | None:
    if not isinstance(data, dict):
        return None
    position = data.get("position")
    if position is None and data.get("row") is not None and data.get("col") is not None:
        row, col = data.get("row"), data.get("col")
        if isinstance(row, bool) or isinstance(col, bool) or not isinstance(row, int) or not isinstance(col, int):
            return None
        try:
            return position_from(row, col)
        except ValueError:
            return -1
    if isinstance(position, bool) or not isinstance(position, int):
        return None
    return position


async def _game_error(sid: str, message: str) -> dict:
    await sio.emit("game_error", {"error": message}, room=sid)
    return {"ok": False, "error": message}


def _load_user(db: Session, sid: str) -> User | None:
    identity = _sid_to_identity.get(sid)
    if not identity:
        return None
    user = db.get(User, identity.user_id)
    if not user or user.is_deleted or user.is_blocked:
        return None
    return user


def _can_view(game_payload: dict, user: User) -> bool:
    if not game_payload["is_private"]:
        return True
    return symbol_for(game_payload, user.id) is not None or has_role_at_least(user.role, "mod")


@sio.event
async def join_game(sid, data):
    if not _is_socket_event_allowed(sid, "join_game"):
        return await _socket_rate_limited_payload(sid, "join_game")
    room_id = _room_id_from(data)
    if not room_id:
        return await _game_error(sid, "room_id required")
    password = data.get("password") if isinstance(data, dict) else None

    db = SessionLocal()
    try:
        user = _load_user(db, sid)
        if not user:
            return {"ok": False, "error": "unauthorized"}
        game = game_service.get_game(db, room_id)
        if game is None:
            return await _game_error(sid, "Game not found")

        joined = False
        if game.player_x_id != user.id and game.player_o_id != user.id:
            if is_maintenance_mode(db) and not has_role_at_least(user.role, "admin"):
                return await _game_error(sid, "Server is in maintenance mode")
            try:
                game = game_service.join_game(db, room_id, user, password=password)
            except (ValueError, PermissionError) as exc:
                db.rollback()
                return await _game_error(sid, str(exc))
            joined = True
        payload = game_service.serialize_game(db, game)
    finally:
        db.close()

    if joined:
        await notify_game_joined(payload, user.id)
    else:
        await attach_sid_to_game(sid, payload["room_id"])
        await emit_game_state(payload, sid=sid)
    return {"ok": True, "game": payload, "symbol": symbol_for(payload, user.id)}


@sio.event
async def leave_game(sid, data):
    if not _is_socket_event_allowed(sid, "leave_game"):
        return await _socket_rate_limited_payload(sid, "leave_game")
    session = await sio.get_session(sid)
    room_id = _room_id_from(data) or session.get("room_id") or ""
    if not room_id:
        return await _game_error(sid, "Not in a game")

    db = SessionLocal()
    try:
        user = _load_user(db, sid)
        if not user:
            return {"ok": False, "error": "unauthorized"}
        try:
            result = game_service.leave_game(db, room_id, user)
        except (ValueError, PermissionError) as exc:
            db.rollback()
            return await _game_error(sid, str(exc))
        if result is None:
            return await _game_error(sid, "Game not found")
        game, rewards = result
        payload = game_service.serialize_game(db, game)
    finally:
        db.close()

    await sio.emit(
        "player_left",
        {"room_id": payload["room_id"], "user_id": user.id, "username": user.username},
        room=game_room(payload["room_id"]),
    )
    if payload["status"] == "completed" and rewards:
        await emit_game_over(payload, rewards, reason="left")
    else:
        await emit_game_state(payload)
    await attach_sid_to_game(sid, None)
    return {"ok": True, "game": payload}


@sio.event
async def make_move(sid, data):
    if not _is_socket_event_allowed(sid, "make_move"):
        return await _socket_rate_limited_payload(sid, "make_move")
    session = await sio.get_session(sid)
    room_id = _room_id_from(data) or session.get("room_id") or ""
    if not room_id:
        return await _game_error(sid, "Not in a game")
    position = _position_from(data)
    if position is None:
        return await _game_error(sid, "Position must be an integer")

    db = SessionLocal()
    try:
        user = _load_user(db, sid)
        if not user:
            return {"ok": False, "error": "unauthorized"}
        try:
            result = game_service.make_move(db, room_id, user, position)
        except (ValueError, PermissionError) as exc:
            db.rollback()
            return await _game_error(sid, str(exc))
        if result is None:
            return await _game_error(sid, "Game not found")
        payload = game_service.serialize_game(db, result["game"])
    finally:
        db.close()

    outcome = result["outcome"]
    await sio.emit(
        "move_made",
        {
            "room_id": payload["room_id"],
            "user_id": user.id,
            "position": result["position"],
            "symbol": result["symbol"],
            "board": payload["board"],
            "current_symbol": payload["current_symbol"],
            "current_player_id": payload["current_player_id"],
        },
        room=game_room(payload["room_id"]),
    )
    if outcome.finished:
        await emit_game_over(payload, result["rewards"], reason=outcome.result)
    return {"ok": True, "game": payload}


@sio.event
async def forfeit_game(sid, data):
    if not _is_socket_event_allowed(sid, "forfeit_game"):
        return await _socket_rate_limited_payload(sid, "forfeit_game")
    session = await sio.get_session(sid)
    room_id = _room_id_from(data) or session.get("room_id") or ""
    if not room_id:
        return await _game_error(sid, "Not in a game")

    db = SessionLocal()
    try:
        user = _load_user(db, sid)
        if not user:
            return {"ok": False, "error": "unauthorized"}
        try:
            result = game_service.forfeit(db, room_id, user)
        except (ValueError, PermissionError) as exc:
            db.rollback()
            return await _game_error(sid, str(exc))
        if result is None:
            return await _game_error(sid, "Game not found")
        game, rewards = result
        payload = game_service.serialize_game(db, game)
    finally:
        db.close()

    await emit_game_over(payload, rewards, reason="forfeit")
    return {"ok": True, "game": payload}


@sio.event
async def spectate_game(sid, data):
    if not _is_socket_event_allowed(sid, "spectate_game"):
        return await _socket_rate_limited_payload(sid, "spectate_game")
    room_id = _room_id_from(data)
    if not room_id:
        return await _game_error(sid, "room_id required")

    db = SessionLocal()
    try:
        user = _load_user(db, sid)
        if not user:
            return {"ok": False, "error": "unauthorized"}
        game = game_service.get_game(db, room_id)
        if game is None:
            return await _game_error(sid, "Game not found")
        payload = game_service.serialize_game(db, game)
    finally:
        db.close()

    if not _can_view(payload, user):
        return await _game_error(sid, "This game is private")

    previous = _sid_spectating.get(sid)
    if previous and previous != payload["room_id"]:
        await sio.leave_room(sid, game_room(previous))
    await sio.enter_room(sid, game_room(payload["room_id"]))
    _sid_spectating[sid] = payload["room_id"]
    await emit_game_state(payload, sid=sid)
    return {"ok": True, "game": payload}


@sio.event
async def stop_spectating(sid, data=None):
    room_id = _sid_spectating.pop(sid, None)
    if not room_id:
        return {"ok": False, "error": "Not spectating"}
    await sio.leave_room(sid, game_room(room_id))
    return {"ok": True, "room_id": room_id}


@sio.event
async def get_game_state(sid, data):
    if not _is_socket_event_allowed(sid, "get_game_state"):
        return await _socket_rate_limited_payload(sid, "get_game_state")
    session = await sio.get_session(sid)
    room_id = _room_id_from(data) or session.get("room_id") or ""
    if not room_id:
        return await _game_error(sid, "room_id required")

    db = SessionLocal()
    try:
        user = _load_user(db, sid)
        if not user:
            return {"ok": False, "error": "unauthorized"}
        game = game_service.get_game(db, room_id)
        if game is None:
            return await _game_error(sid, "Game not found")
        payload = game_service.serialize_game(db, game)
    finally:
        db.close()

    if not _can_view(payload, user):
        return await _game_error(sid, "This game is private")
    await emit_game_state(payload, sid=sid)
    return {"ok": True, "game": payload}
