from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_user
from tictactoe.db.models import User
from tictactoe.db.session import get_db
from tictactoe.realtime.socket_server import chat_room, notify_user, sio
from tictactoe.schemas.chat import (
    ChatHistoryRead,
    ChatMessageCreateRequest,
    ChatMessageRead,
    ChatParticipantRead,
    ChatRoomRead,
    PrivateMessageCreateRequest,
)
from tictactoe.services.admin_service import get_system_setting
from tictactoe.services.chat_service import chat_service

router = APIRouter()


def _ensure_chat_enabled(db: Session) -> None:
    if not get_system_setting(db, "chat_enabled"):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Chat is disabled")


@router.get("/rooms", response_model=list[ChatRoomRead])
def list_rooms(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[ChatRoomRead]:
    return [ChatRoomRead.model_validate(room) for room in chat_service.rooms_for_user(db, current_user.id)]


@router.get("/rooms/{room_id}/messages", response_model=ChatHistoryRead)
def get_history(
    room_id: str,
    before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ChatHistoryRead:
    try:
        history = chat_service.history(db, room_id, current_user.id, before=before, limit=limit)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return ChatHistoryRead.model_validate(history)


@router.post(
    "/rooms/{room_id}/messages",
    response_model=ChatMessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    room_id: str,
    payload: ChatMessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ChatMessageRead:
    _ensure_chat_enabled(db)
    try:
        message = chat_service.send_message(
            db,
            current_user,
            room_id,
            payload.message,
            message_type=payload.message_type,
        )
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    await sio.emit("chat_message", message, room=chat_room(room_id))
    return ChatMessageRead.model_validate(message)


@router.get("/rooms/{room_id}/participants", response_model=list[ChatParticipantRead])
def list_participants(
    room_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[ChatParticipantRead]:
    try:
        participants = chat_service.participants(db, room_id, current_user.id)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return [ChatParticipantRead.model_validate(item) for item in participants]


@router.post("/private", response_model=ChatMessageRead, status_code=status.HTTP_201_CREATED)
async def send_private_message(
    payload: PrivateMessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ChatMessageRead:
    _ensure_chat_enabled(db)
    try:
        message = chat_service.send_private_message(db, current_user, payload.recipient_id, payload.message)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    await notify_user(payload.recipient_id, "chat_message", message)
    return ChatMessageRead.model_validate(message)
