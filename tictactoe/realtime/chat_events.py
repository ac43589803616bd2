from datetime import datetime
import logging

from tictactoe.db.models import User
from tictactoe.db.session import SessionLocal
from tictactoe.realtime.socket_server import (
    _is_socket_event_allowed,
    _sid_to_identity,
    _socket_rate_limited_payload,
    chat_room,
    notify_user,
    sio,
)
from tictactoe.services.admin_service import get_system_setting
from tictactoe.services.chat_service import chat_service

logger = logging.getLogger(__name__)


def _chat_room_id(data) -> str:
    if isinstance(data, dict):
        room_id = data.get("room_id")
        if isinstance(room_id, str) and room_id.strip():
            return room_id.strip()
    return chat_service.global_room_id


async def _chat_error(sid: str, message: str) -> dict:
    await sio.emit("chat_error", {"error": message}, room=sid)
    return {"ok": False, "error": message}


def _parse_before(value) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@sio.event
async def join_chat(sid, data=None):
    if not _is_socket_event_allowed(sid, "join_chat"):
        return await _socket_rate_limited_payload(sid, "join_chat")
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    room_id = _chat_room_id(data)

    db = SessionLocal()
    try:
        try:
            history = chat_service.history(db, room_id, identity.user_id)
        except PermissionError as exc:
            return await _chat_error(sid, str(exc))
    finally:
        db.close()

    await sio.enter_room(sid, chat_room(room_id))
    chat_service.add_member(room_id, identity.user_id)
    await sio.emit(
        "user_joined_chat",
        {"room_id": room_id, "user_id": identity.user_id, "username": identity.username},
        room=chat_room(room_id),
        skip_sid=sid,
    )
    return {"ok": True, "room_id": room_id, "history": history}


@sio.event
async def leave_chat(sid, data=None):
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    room_id = _chat_room_id(data)
    await sio.leave_room(sid, chat_room(room_id))
    chat_service.remove_member(room_id, identity.user_id)
    await sio.emit(
        "user_left_chat",
        {"room_id": room_id, "user_id": identity.user_id, "username": identity.username},
        room=chat_room(room_id),
    )
    return {"ok": True, "room_id": room_id}


@sio.event
async def send_chat_message(sid, data):
    if not _is_socket_event_allowed(sid, "send_chat_message"):
        return await _socket_rate_limited_payload(sid, "send_chat_message")
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    if not isinstance(data, dict):
        return await _chat_error(sid, "Invalid payload")
    room_id = _chat_room_id(data)

    db = SessionLocal()
    try:
        if not get_system_setting(db, "chat_enabled"):
            return await _chat_error(sid, "Chat is disabled")
        sender = db.get(User, identity.user_id)
        if not sender or sender.is_blocked or sender.is_deleted:
            return {"ok": False, "error": "unauthorized"}
        try:
            message = chat_service.send_message(
                db,
                sender,
                room_id,
                str(data.get("message") or ""),
                message_type=data.get("message_type") or "text",
            )
        except (ValueError, PermissionError) as exc:
            db.rollback()
            return await _chat_error(sid, str(exc))
    finally:
        db.close()

    await sio.emit("chat_message", message, room=chat_room(room_id))
    return {"ok": True, "message": message}


@sio.event
async def private_message(sid, data):
    if not _is_socket_event_allowed(sid, "private_message"):
        return await _socket_rate_limited_payload(sid, "private_message")
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    if not isinstance(data, dict) or not isinstance(data.get("recipient_id"), str):
        return await _chat_error(sid, "recipient_id required")

    db = SessionLocal()
    try:
        if not get_system_setting(db, "chat_enabled"):
            return await _chat_error(sid, "Chat is disabled")
        sender = db.get(User, identity.user_id)
        if not sender or sender.is_blocked or sender.is_deleted:
            return {"ok": False, "error": "unauthorized"}
        try:
            message = chat_service.send_private_message(
                db,
                sender,
                data["recipient_id"],
                str(data.get("message") or ""),
            )
        except (ValueError, PermissionError) as exc:
            db.rollback()
            return await _chat_error(sid, str(exc))
    finally:
        db.close()

    await notify_user(message["recipient_id"], "chat_message", message)
    await notify_user(identity.user_id, "chat_message", message)
    return {"ok": True, "message": message}


async def _broadcast_typing(sid, data, event: str) -> dict:
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    room_id = _chat_room_id(data)

    db = SessionLocal()
    try:
        allowed = chat_service.can_read(db, room_id, identity.user_id)
    finally:
        db.close()
    if not allowed:
        return {"ok": False, "error": "Not allowed in this room"}

    await sio.emit(
        event,
        {"room_id": room_id, "user_id": identity.user_id, "username": identity.username},
        room=chat_room(room_id),
        skip_sid=sid,
    )
    return {"ok": True}


@sio.event
async def typing(sid, data=None):
    return await _broadcast_typing(sid, data, "user_typing")


@sio.event
async def stop_typing(sid, data=None):
    return await _broadcast_typing(sid, data, "user_stopped_typing")


@sio.event
async def chat_history(sid, data=None):
    if not _is_socket_event_allowed(sid, "chat_history"):
        return await _socket_rate_limited_payload(sid, "chat_history")
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "error": "unauthorized"}
    data = data if isinstance(data, dict) else {}
    limit = data.get("limit")

    db = SessionLocal()
    try:
        try:
            history = chat_service.history(
                db,
                _chat_room_id(data),
                identity.user_id,
                before=_parse_before(data.get("before")),
                limit=limit if isinstance(limit, int) and not isinstance(limit, bool) else None,
            )
        except PermissionError as exc:
            return await _chat_error(sid, str(exc))
    finally:
        db.close()
    return {"ok": True, **history}
