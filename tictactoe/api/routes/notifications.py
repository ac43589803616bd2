from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_user
from tictactoe.db.models import User
from tictactoe.db.session import get_db
from tictactoe.schemas.auth import MessageRead
from tictactoe.schemas.notifications import NotificationPage, NotificationRead, UnreadCountRead
from tictactoe.services.notification_service import notification_service, serialize_notification

router = APIRouter()


@router.get("", response_model=NotificationPage)
def list_notifications(
    unread_only: bool = Query(default=False),
    type: str | None = Query(default=None, max_length=30),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationPage:
    payload = notification_service.list_for_user(
        db,
        current_user.id,
        unread_only=unread_only,
        type=type,
        page=page,
        limit=limit,
    )
    return NotificationPage.model_validate(payload)


@router.get("/unread-count", response_model=UnreadCountRead)
def unread_count(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UnreadCountRead:
    return UnreadCountRead(unread_count=notification_service.unread_count(db, current_user.id))


@router.post("/read-all", response_model=MessageRead)
def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MessageRead:
    updated = notification_service.mark_all_read(db, current_user.id)
    return MessageRead(message="All notifications marked as read", count=updated)


@router.delete("/read", response_model=MessageRead)
def delete_read(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MessageRead:
    removed = notification_service.delete_read(db, current_user.id)
    return MessageRead(message="Read notifications deleted", count=removed)


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationRead:
    notification = notification_service.mark_read(db, current_user.id, notification_id)
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return NotificationRead.model_validate(serialize_notification(notification))


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> None:
    if not notification_service.delete(db, current_user.id, notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
