from datetime import datetime, timedelta, timezone
import json
import logging

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from tictactoe.core.config import get_settings
from tictactoe.db.models import Notification

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"game_invite", "friend_request", "game_result", "system", "achievement"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_notification(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "data": json.loads(notification.data_json or "{}"),
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "expires_at": notification.expires_at.isoformat() if notification.expires_at else None,
    }


def _not_expired(now: datetime):
    return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


class NotificationService:
    def add(
        self,
        db: Session,
        *,
        recipient_id: str,
        type: str,
        title: str,
        message: str,
        data: dict | None = None,
        expires_at: datetime | None = None,
    ) -> Notification:
        """Stage a notification in the caller's transaction."""
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        if expires_at is None:
            expires_at = _utc_now() + timedelta(days=get_settings().notification_default_ttl_days)
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title.strip()[:100],
            message=message.strip()[:500],
            data_json=json.dumps(data or {}),
            expires_at=expires_at,
        )
        db.add(notification)
        return notification

    def create(self, db: Session, **kwargs) -> Notification:
        notification = self.add(db, **kwargs)
        db.commit()
        db.refresh(notification)
        return notification

    def list_for_user(
        self,
        db: Session,
        user_id: str,
        *,
        unread_only: bool = False,
        type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        now = _utc_now()
        base = select(Notification).where(Notification.recipient_id == user_id).where(_not_expired(now))
        if unread_only:
            base = base.where(Notification.is_read.is_(False))
        if type:
            base = base.where(Notification.type == type)
        total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
        rows = db.scalars(
            base.order_by(Notification.created_at.desc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return {
            "items": [serialize_notification(row) for row in rows],
            "total": total,
            "unread_count": self.unread_count(db, user_id),
            "page": page,
            "limit": limit,
            "has_more": page * limit < total,
        }

    def unread_count(self, db: Session, user_id: str) -> int:
        return db.scalar(
            select(func.count(Notification.id))
            .where(Notification.recipient_id == user_id)
            .where(Notification.is_read.is_(False))
            .where(_not_expired(_utc_now()))
        ) or 0

    def mark_read(self, db: Session, user_id: str, notification_id: str) -> Notification | None:
        notification = db.get(Notification, notification_id)
        if notification is None or notification.recipient_id != user_id:
            return None
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = _utc_now()
            db.commit()
            db.refresh(notification)
        return notification

    def mark_all_read(self, db: Session, user_id: str) -> int:
        result = db.execute(
            update(Notification)
            .where(Notification.recipient_id == user_id)
            .where(Notification.is_read.is_(False))
            .values(is_read=True, read_at=_utc_now())
        )
        db.commit()
        return result.rowcount or 0

    def delete(self, db: Session, user_id: str, notification_id: str) -> bool:
        notification = db.get(Notification, notification_id)
        if notification is None or notification.recipient_id != user_id:
            return False
        db.delete(notification)
        db.commit()
        return True

    def delete_read(self, db: Session, user_id: str) -> int:
        result = db.execute(
            delete(Notification)
            .where(Notification.recipient_id == user_id)
            .where(Notification.is_read.is_(True))
        )
        db.commit()
        return result.rowcount or 0

    def cleanup_expired(self, db: Session) -> int:
        result = db.execute(delete(Notification).where(Notification.expires_at <= _utc_now()))
        db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Removed %d expired notifications", removed)
        return removed


notification_service = NotificationService()
