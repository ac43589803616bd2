from datetime import datetime, timezone
import logging
import threading

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from tictactoe.core.config import get_settings
from tictactoe.db.models import ChatMessage, Game, User
from tictactoe.services.profanity_service import looks_like_spam, sanitize_chat_message
from tictactoe.services.social_service import social_service

logger = logging.getLogger(__name__)

MESSAGE_TYPES = {"text", "emoji", "system"}
REPEAT_WINDOW_SECONDS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def direct_room_id(user_a_id: str, user_b_id: str) -> str:
    first, second = sorted((user_a_id, user_b_id))
    return f"dm:{first}:{second}"


def serialize_message(message: ChatMessage, sender: User | None = None) -> dict:
    return {
        "id": message.id,
        "room_id": message.room_id,
        "sender_id": message.sender_id,
        "sender_username": sender.username if sender else None,
        "recipient_id": message.recipient_id,
        "message": message.message,
        "message_type": message.message_type,
        "filtered": message.filtered,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


class ChatService:
    def __init__(self) -> None:
        # room_id -> user ids currently joined over the socket
        self._members: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    @property
    def global_room_id(self) -> str:
        return get_settings().chat_global_room_id

    def reset(self) -> None:
        with self._lock:
            self._members.clear()

    def add_member(self, room_id: str, user_id: str) -> None:
        with self._lock:
            self._members.setdefault(room_id, set()).add(user_id)

    def remove_member(self, room_id: str, user_id: str) -> None:
        with self._lock:
            members = self._members.get(room_id)
            if not members:
                return
            members.discard(user_id)
            if not members:
                self._members.pop(room_id, None)

    def remove_member_everywhere(self, user_id: str) -> list[str]:
        with self._lock:
            rooms = [room_id for room_id, members in self._members.items() if user_id in members]
        for room_id in rooms:
            self.remove_member(room_id, user_id)
        return rooms

    def member_ids(self, room_id: str) -> set[str]:
        with self._lock:
            return set(self._members.get(room_id, set()))

    def _game_for_room(self, db: Session, room_id: str) -> Game | None:
        return db.scalar(select(Game).where(Game.room_id == room_id))

    def can_read(self, db: Session, room_id: str, user_id: str) -> bool:
        if room_id == self.global_room_id:
            return True
        if room_id.startswith("dm:"):
            return user_id in room_id.split(":")[1:]
        game = self._game_for_room(db, room_id)
        if game is None:
            return False
        if not game.is_private:
            return True
        return user_id in (game.player_x_id, game.player_o_id)

    def can_post(self, db: Session, room_id: str, user_id: str) -> bool:
        if room_id == self.global_room_id:
            return True
        if room_id.startswith("dm:"):
            # direct rooms only take messages through send_private_message
            return False
        game = self._game_for_room(db, room_id)
        return game is not None and user_id in (game.player_x_id, game.player_o_id)

    def _clean(self, db: Session, sender_id: str, room_id: str, text: str) -> tuple[str, bool]:
        cleaned, filtered = sanitize_chat_message(text or "")
        if not cleaned:
            raise ValueError("Message cannot be empty")
        if looks_like_spam(cleaned):
            raise ValueError("Message looks like spam")
        last = db.scalar(
            select(ChatMessage)
            .where(ChatMessage.sender_id == sender_id)
            .where(ChatMessage.room_id == room_id)
            .order_by(ChatMessage.created_at.desc())
        )
        if last is not None and last.message == cleaned:
            if (_utc_now() - _as_aware(last.created_at)).total_seconds() < REPEAT_WINDOW_SECONDS:
                raise ValueError("Duplicate message")
        return cleaned, filtered

    def send_message(
        self,
        db: Session,
        sender: User,
        room_id: str,
        text: str,
        message_type: str = "text",
    ) -> dict:
        if not isinstance(message_type, str) or message_type not in MESSAGE_TYPES - {"system"}:
            raise ValueError("Invalid message type")
        if not self.can_post(db, room_id, sender.id):
            raise PermissionError("Not allowed to post in this room")
        cleaned, filtered = self._clean(db, sender.id, room_id, text)
        message = ChatMessage(
            room_id=room_id,
            sender_id=sender.id,
            message=cleaned,
            message_type=message_type,
            filtered=filtered,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        if filtered:
            logger.info("Filtered chat message from %s in %s", sender.username, room_id)
        return serialize_message(message, sender)

    def send_private_message(self, db: Session, sender: User, recipient_id: str, text: str) -> dict:
        recipient = db.get(User, recipient_id)
        if recipient is None or recipient.is_deleted:
            raise ValueError("Recipient not found")
        if recipient.id == sender.id:
            raise ValueError("Cannot message yourself")
        if social_service.is_blocked_between(db, sender.id, recipient.id):
            raise PermissionError("Cannot message this user")
        if not social_service.are_friends(db, sender.id, recipient.id):
            raise PermissionError("You can only message friends")

        room_id = direct_room_id(sender.id, recipient.id)
        cleaned, filtered = self._clean(db, sender.id, room_id, text)
        message = ChatMessage(
            room_id=room_id,
            sender_id=sender.id,
            recipient_id=recipient.id,
            message=cleaned,
            message_type="text",
            filtered=filtered,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        return serialize_message(message, sender)

    def post_system_message(self, db: Session, room_id: str, text: str) -> dict:
        message = ChatMessage(room_id=room_id, sender_id=None, message=text[:500], message_type="system")
        db.add(message)
        db.commit()
        db.refresh(message)
        return serialize_message(message)

    def history(
        self,
        db: Session,
        room_id: str,
        user_id: str,
        *,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> dict:
        if not self.can_read(db, room_id, user_id):
            raise PermissionError("Not allowed to read this room")
        page_size = limit or get_settings().chat_history_page_size
        page_size = max(1, min(page_size, 100))
        stmt = select(ChatMessage).where(ChatMessage.room_id == room_id)
        if before is not None:
            stmt = stmt.where(ChatMessage.created_at < before)
        rows = db.scalars(stmt.order_by(ChatMessage.created_at.desc()).limit(page_size + 1)).all()
        has_more = len(rows) > page_size
        rows = rows[:page_size]

        sender_ids = {row.sender_id for row in rows if row.sender_id}
        senders = {
            user.id: user for user in db.scalars(select(User).where(User.id.in_(sender_ids))).all()
        } if sender_ids else {}
        return {
            "room_id": room_id,
            "messages": [serialize_message(row, senders.get(row.sender_id)) for row in rows],
            "has_more": has_more,
        }

    def rooms_for_user(self, db: Session, user_id: str) -> list[dict]:
        rooms = [{"room_id": self.global_room_id, "type": "global", "name": "Global chat"}]
        games = db.scalars(
            select(Game)
            .where(Game.status.in_(("waiting", "active")))
            .where(or_(Game.player_x_id == user_id, Game.player_o_id == user_id))
            .order_by(Game.created_at.desc())
        ).all()
        for game in games:
            rooms.append({"room_id": game.room_id, "type": "game", "name": f"Game {game.room_id}"})
        for friend in social_service.list_friends(db, user_id):
            rooms.append(
                {
                    "room_id": direct_room_id(user_id, friend.id),
                    "type": "direct",
                    "name": friend.display_name or friend.username,
                }
            )
        return rooms

    def participants(self, db: Session, room_id: str, user_id: str) -> list[dict]:
        if not self.can_read(db, room_id, user_id):
            raise PermissionError("Not allowed to read this room")
        member_ids = self.member_ids(room_id)
        game = self._game_for_room(db, room_id)
        if game is not None:
            member_ids |= {pid for pid in (game.player_x_id, game.player_o_id) if pid}
        if not member_ids:
            return []
        users = db.scalars(select(User).where(User.id.in_(member_ids)).order_by(User.username.asc())).all()
        return [
            {
                "id": user.id,
                "username": user.username,
                "avatar_url": user.avatar_url,
                "is_online": user.is_online,
                "is_player": game is not None and user.id in (game.player_x_id, game.player_o_id),
            }
            for user in users
        ]


chat_service = ChatService()
