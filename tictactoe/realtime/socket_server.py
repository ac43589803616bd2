import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from urllib.parse import parse_qs

import socketio

from tictactoe.core.config import get_settings
from tictactoe.core.request_meta import extract_client_ip_from_environ
from tictactoe.core.security import decode_access_token_payload
from tictactoe.db.models import Notification, User
from tictactoe.db.session import SessionLocal
from tictactoe.services.admin_service import normalize_role
from tictactoe.services.auth_service import get_active_user_session_by_id, get_user_by_id
from tictactoe.services.chat_service import chat_service
from tictactoe.services.game_service import game_service
from tictactoe.services.matchmaking_service import MatchResult, matchmaking_service
from tictactoe.services.notification_service import notification_service, serialize_notification
from tictactoe.services.rate_limit_service import rate_limit_service

logger = logging.getLogger(__name__)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")

settings = get_settings()
TICK_SECONDS = max(0.5, settings.matchmaking_tick_seconds)
RECONNECT_GRACE_SECONDS = max(5, settings.game_reconnect_grace_seconds)
HOUSEKEEPING_INTERVAL_SECONDS = max(TICK_SECONDS, settings.housekeeping_interval_seconds)


@dataclass
class ConnectionIdentity:
    user_id: str
    username: str
    role: str


_sid_to_identity: dict[str, ConnectionIdentity] = {}
_user_to_sids: dict[str, set[str]] = {}
_reconnect_deadlines: dict[str, datetime] = {}
_sid_spectating: dict[str, str] = {}
_sid_client_ip: dict[str, str] = {}
_tick_task: asyncio.Task | None = None
_last_housekeeping_at: datetime | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def game_room(room_id: str) -> str:
    return f"game:{room_id}"


def chat_room(room_id: str) -> str:
    return f"chat:{room_id}"


def _session_string(session: dict, key: str) -> str:
    value = session.get(key)
    return value.strip() if isinstance(value, str) else ""


def _is_socket_connect_allowed(client_ip: str) -> bool:
    if not settings.rate_limit_enabled:
        return True
    return rate_limit_service.check_scope("ws_connect", client_ip).allowed


def _is_socket_event_allowed(sid: str, event_name: str) -> bool:
    if not settings.rate_limit_enabled:
        return True
    identity = _sid_to_identity.get(sid)
    if not identity:
        return False
    return rate_limit_service.check_scope("ws_event", f"{event_name}:{identity.user_id}").allowed


async def _socket_rate_limited_payload(sid: str, event_name: str) -> dict:
    await sio.emit(
        "rate_limited",
        {"event": event_name, "message": "Too many requests. Slow down."},
        room=sid,
    )
    return {"ok": False, "error": "rate limit exceeded"}


def _resolve_token(auth: dict | None, environ: dict) -> str | None:
    token = auth.get("token") if isinstance(auth, dict) else None
    if not token and settings.websocket_allow_query_token:
        token = parse_qs(environ.get("QUERY_STRING", "")).get("token", [None])[0]
    if isinstance(token, str) and token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1]
    return token if isinstance(token, str) and token.strip() else None


def _load_identity_from_token(token: str | None) -> tuple[ConnectionIdentity | None, str | None]:
    if not token:
        return None, None
    payload = decode_access_token_payload(token)
    if not payload:
        return None, None
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        return None, None
    session_id = payload.get("sid")
    if session_id is not None and not isinstance(session_id, str):
        return None, None

    db = SessionLocal()
    try:
        user = get_user_by_id(db, subject)
        if not user or user.is_deleted or user.is_blocked:
            return None, None

        if settings.security_track_sessions:
            if not isinstance(session_id, str) or not session_id.strip():
                return None, None
            active_session = get_active_user_session_by_id(
                db,
                user_id=user.id,
                session_id=session_id.strip(),
            )
            if not active_session:
                return None, None

        return ConnectionIdentity(
            user_id=user.id,
            username=user.username,
            role=normalize_role(user.role),
        ), session_id.strip() if isinstance(session_id, str) else None
    finally:
        db.close()


def _register_presence(sid: str, identity: ConnectionIdentity) -> None:
    _sid_to_identity[sid] = identity
    _user_to_sids.setdefault(identity.user_id, set()).add(sid)


def _unregister_presence(sid: str) -> ConnectionIdentity | None:
    identity = _sid_to_identity.pop(sid, None)
    if not identity:
        return None
    user_sids = _user_to_sids.get(identity.user_id)
    if user_sids:
        user_sids.discard(sid)
        if len(user_sids) == 0:
            _user_to_sids.pop(identity.user_id, None)
    return identity


def is_user_online(user_id: str) -> bool:
    return user_id in _user_to_sids


def _set_online(user_id: str, online: bool) -> None:
    db = SessionLocal()
    try:
        user = db.get(User, user_id)
        if not user:
            return
        user.is_online = online
        user.last_seen_at = _utc_now()
        db.commit()
    finally:
        db.close()


def _set_reconnect_deadline(user_id: str) -> None:
    _reconnect_deadlines[user_id] = _utc_now() + timedelta(seconds=RECONNECT_GRACE_SECONDS)


def _clear_reconnect_deadline(user_id: str) -> None:
    _reconnect_deadlines.pop(user_id, None)


async def attach_sid_to_game(sid: str, room_id: str | None) -> str | None:
    """Move a socket into a game room; returns the room it was in before."""
    try:
        session = await sio.get_session(sid)
    except KeyError:
        return None

    previous_room_id = session.get("room_id")
    if previous_room_id and previous_room_id != room_id:
        await sio.leave_room(sid, game_room(previous_room_id))

    if room_id:
        await sio.enter_room(sid, game_room(room_id))
    session["room_id"] = room_id
    await sio.save_session(sid, session)
    return previous_room_id


async def attach_user_to_game(user_id: str, room_id: str | None) -> None:
    for user_sid in list(_user_to_sids.get(user_id, set())):
        await attach_sid_to_game(user_sid, room_id)


async def emit_game_state(game_payload: dict, sid: str | None = None) -> None:
    await sio.emit("game_state", game_payload, room=sid or game_room(game_payload["room_id"]))


async def _push_game_result_notifications(user_ids: list[str]) -> None:
    user_ids = [user_id for user_id in user_ids if user_id in _user_to_sids]
    if not user_ids:
        return
    db = SessionLocal()
    try:
        latest = {
            user_id: notification_service.list_for_user(db, user_id, type="game_result", limit=1)["items"]
            for user_id in user_ids
        }
    finally:
        db.close()
    for user_id, items in latest.items():
        for item in items:
            await notify_user(user_id, "notification", item)


def _game_over_text(game_payload: dict, reason: str) -> str:
    if game_payload["result"] == "draw":
        return "Game ended in a draw"
    players = [game_payload.get("player_x"), game_payload.get("player_o")]
    winner = next((p for p in players if p and p["id"] == game_payload["winner_id"]), None)
    if winner is None:
        return "Game was closed"
    if reason in ("forfeit", "left", "disconnect"):
        return f"{winner['username']} won, opponent forfeited"
    return f"{winner['username']} won the game"


async def _post_game_system_message(game_payload: dict, reason: str) -> None:
    db = SessionLocal()
    try:
        message = chat_service.post_system_message(db, game_payload["room_id"], _game_over_text(game_payload, reason))
    finally:
        db.close()
    await sio.emit("chat_message", message, room=chat_room(game_payload["room_id"]))


async def emit_game_over(game_payload: dict, rewards: dict, reason: str) -> None:
    await sio.emit(
        "game_over",
        {
            "room_id": game_payload["room_id"],
            "result": game_payload["result"],
            "winner_id": game_payload["winner_id"],
            "winning_line": game_payload["winning_line"],
            "reason": reason,
            "rewards": rewards,
            "game": game_payload,
        },
        room=game_room(game_payload["room_id"]),
    )
    await _post_game_system_message(game_payload, reason)
    await _push_game_result_notifications(list(rewards))


async def start_matched_game(match: MatchResult) -> dict | None:
    player_ids = (match.player1.user_id, match.player2.user_id)
    db = SessionLocal()
    try:
        try:
            game = game_service.create_matched_game(db, match)
        except ValueError as exc:
            db.rollback()
            logger.info("Matched game %s not started: %s", match.room_id, exc)
            for user_id in player_ids:
                await notify_user(user_id, "match_error", {"error": str(exc)})
            return None
        payload = game_service.serialize_game(db, game)
    finally:
        db.close()

    for entry, opponent in ((match.player1, match.player2), (match.player2, match.player1)):
        await attach_user_to_game(entry.user_id, match.room_id)
        await notify_user(
            entry.user_id,
            "match_found",
            {
                "room_id": match.room_id,
                "symbol": "X" if entry is match.player1 else "O",
                "opponent": {
                    "id": opponent.user_id,
                    "username": opponent.username,
                    "level": opponent.level,
                },
                "quality": round(match.quality, 3),
                "game": payload,
            },
        )
    await emit_game_state(payload)
    return payload


async def _restore_sid_game_membership(sid: str, user_id: str) -> dict | None:
    db = SessionLocal()
    try:
        game = game_service.open_game_for_user(db, user_id)
        payload = game_service.serialize_game(db, game) if game else None
    finally:
        db.close()
    await attach_sid_to_game(sid, payload["room_id"] if payload else None)
    return payload


async def _forfeit_offline_user(user_id: str) -> None:
    db = SessionLocal()
    try:
        game = game_service.active_game_for_user(db, user_id)
        user = db.get(User, user_id)
        if not game or not user:
            return
        room_id = game.room_id
        finished, rewards = game_service.forfeit(db, room_id, user)
        payload = game_service.serialize_game(db, finished)
    finally:
        db.close()

    logger.info("User %s did not reconnect, game %s forfeited", user_id, room_id)
    await sio.emit(
        "player_disconnected",
        {"room_id": room_id, "user_id": user_id, "reason": "disconnect_grace_expired"},
        room=game_room(room_id),
    )
    await emit_game_over(payload, rewards, reason="disconnect")


async def _process_reconnect_deadlines() -> None:
    now = _utc_now()
    expired_user_ids = [
        user_id
        for user_id, deadline in _reconnect_deadlines.items()
        if now >= deadline and user_id not in _user_to_sids
    ]
    for user_id in expired_user_ids:
        _reconnect_deadlines.pop(user_id, None)
        await _forfeit_offline_user(user_id)


async def _process_matchmaking() -> None:
    for match in matchmaking_service.run_pairing():
        await start_matched_game(match)
    for entry in matchmaking_service.cleanup():
        await notify_user(
            entry.user_id,
            "matchmaking_timeout",
            {"message": "No opponent found, you were removed from the queue"},
        )


async def _process_housekeeping() -> int:
    """Drop expired notifications, at most once per housekeeping interval."""
    global _last_housekeeping_at
    now = _utc_now()
    if _last_housekeeping_at and (now - _last_housekeeping_at).total_seconds() < HOUSEKEEPING_INTERVAL_SECONDS:
        return 0
    _last_housekeeping_at = now
    db = SessionLocal()
    try:
        removed = notification_service.cleanup_expired(db)
    finally:
        db.close()
    return removed


async def _tick_loop() -> None:
    while True:
        await asyncio.sleep(TICK_SECONDS)
        try:
            await _process_reconnect_deadlines()
            await _process_matchmaking()
            await _process_housekeeping()
        except Exception:
            logger.exception("Realtime tick failed")


def _ensure_tick_task() -> None:
    global _tick_task
    if _tick_task and not _tick_task.done():
        return
    _tick_task = sio.start_background_task(_tick_loop)


@sio.event
async def connect(sid: str, environ: dict, auth: dict | None = None) -> bool:
    client_ip = extract_client_ip_from_environ(environ)
    if not _is_socket_connect_allowed(client_ip):
        return False

    token = _resolve_token(auth, environ)
    identity, session_id = _load_identity_from_token(token)
    if not identity:
        return False

    _ensure_tick_task()
    _register_presence(sid, identity)
    _sid_client_ip[sid] = client_ip
    _clear_reconnect_deadline(identity.user_id)
    _set_online(identity.user_id, True)
    await sio.save_session(
        sid,
        {
            "user_id": identity.user_id,
            "username": identity.username,
            "role": identity.role,
            "session_id": session_id,
            "room_id": None,
        },
    )
    restored = await _restore_sid_game_membership(sid, identity.user_id)
    await sio.emit(
        "system",
        {
            "message": "connected",
            "user_id": identity.user_id,
            "username": identity.username,
            "role": identity.role,
            "reconnect_grace_seconds": RECONNECT_GRACE_SECONDS,
        },
        room=sid,
    )
    await sio.emit(
        "session_restored",
        {
            "room_id": restored["room_id"] if restored else None,
            "recovered": restored is not None,
        },
        room=sid,
    )
    if restored:
        await emit_game_state(restored, sid=sid)
        if restored["status"] == "active":
            await sio.emit(
                "player_reconnected",
                {"room_id": restored["room_id"], "user_id": identity.user_id},
                room=game_room(restored["room_id"]),
            )
    logger.debug("Socket %s connected as %s", sid, identity.username)
    return True


@sio.event
async def disconnect(sid: str) -> None:
    _sid_client_ip.pop(sid, None)
    _sid_spectating.pop(sid, None)
    identity = _unregister_presence(sid)
    if not identity:
        return
    if identity.user_id in _user_to_sids:
        return

    # last connection of this user is gone
    _set_online(identity.user_id, False)
    matchmaking_service.leave(identity.user_id)
    for room_id in chat_service.remove_member_everywhere(identity.user_id):
        await sio.emit(
            "user_left_chat",
            {"room_id": room_id, "user_id": identity.user_id, "username": identity.username},
            room=chat_room(room_id),
        )

    db = SessionLocal()
    try:
        game = game_service.active_game_for_user(db, identity.user_id)
        room_id = game.room_id if game else None
    finally:
        db.close()
    if room_id:
        _set_reconnect_deadline(identity.user_id)
        await sio.emit(
            "player_disconnected",
            {
                "room_id": room_id,
                "user_id": identity.user_id,
                "grace_seconds": RECONNECT_GRACE_SECONDS,
            },
            room=game_room(room_id),
        )


async def notify_user(user_id: str, event: str, payload: dict) -> None:
    for user_sid in list(_user_to_sids.get(user_id, set())):
        await sio.emit(event, payload, room=user_sid)


async def notify_notification(notification: Notification | None) -> None:
    if notification is None:
        return
    await notify_user(notification.recipient_id, "notification", serialize_notification(notification))


async def notify_game_updated(game_payload: dict) -> None:
    await emit_game_state(game_payload)


async def notify_game_joined(game_payload: dict, user_id: str) -> None:
    await attach_user_to_game(user_id, game_payload["room_id"])
    await sio.emit(
        "player_joined",
        {
            "room_id": game_payload["room_id"],
            "user_id": user_id,
            "symbol": symbol_for(game_payload, user_id),
        },
        room=game_room(game_payload["room_id"]),
    )
    await emit_game_state(game_payload)


async def notify_game_over(game_payload: dict, rewards: dict, reason: str) -> None:
    await emit_game_over(game_payload, rewards, reason)


async def notify_role_updated(user_id: str, role: str) -> None:
    normalized_role = normalize_role(role)
    for user_sid in list(_user_to_sids.get(user_id, set())):
        identity = _sid_to_identity.get(user_sid)
        if identity:
            identity.role = normalized_role
        try:
            session = await sio.get_session(user_sid)
            session["role"] = normalized_role
            await sio.save_session(user_sid, session)
        except KeyError:
            pass
        await sio.emit(
            "role_updated",
            {"user_id": user_id, "role": normalized_role},
            room=user_sid,
        )


async def notify_account_blocked(user_id: str) -> None:
    for user_sid in list(_user_to_sids.get(user_id, set())):
        await sio.emit(
            "account_blocked",
            {"user_id": user_id, "message": "Your account has been blocked"},
            room=user_sid,
        )
        await sio.disconnect(user_sid)


def symbol_for(game_payload: dict, user_id: str) -> str | None:
    if game_payload.get("player_x") and game_payload["player_x"]["id"] == user_id:
        return "X"
    if game_payload.get("player_o") and game_payload["player_o"]["id"] == user_id:
        return "O"
    return None


def build_socket_app(api_app) -> socketio.ASGIApp:
    return socketio.ASGIApp(sio, other_asgi_app=api_app, socketio_path="socket.io")


# event handlers register themselves on `sio`
from tictactoe.realtime import chat_events, game_events, matchmaking_events  # noqa: E402,F401
