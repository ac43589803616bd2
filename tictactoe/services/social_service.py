from datetime import datetime, timezone
import logging

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session

from tictactoe.db.models import BlockedUser, FriendRequest, Friendship, Game, GameInvite, Notification, User
from tictactoe.services.notification_service import notification_service

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 20


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def user_brief(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "level": user.level,
        "is_online": user.is_online,
        "last_seen_at": user.last_seen_at,
    }


def _friendship_exists(db: Session, user_id: str, friend_id: str) -> bool:
    pair = db.scalar(
        select(Friendship.id).where(
            and_(
                Friendship.user_id == user_id,
                Friendship.friend_id == friend_id,
            )
        )
    )
    return pair is not None


def _ensure_friendship_pair(db: Session, user_a_id: str, user_b_id: str) -> None:
    if user_a_id == user_b_id:
        return
    if not _friendship_exists(db, user_a_id, user_b_id):
        db.add(Friendship(user_id=user_a_id, friend_id=user_b_id))
    if not _friendship_exists(db, user_b_id, user_a_id):
        db.add(Friendship(user_id=user_b_id, friend_id=user_a_id))


def _pair_filter(model, left: str, right: str, user_a_id: str, user_b_id: str):
    left_col = getattr(model, left)
    right_col = getattr(model, right)
    return or_(
        and_(left_col == user_a_id, right_col == user_b_id),
        and_(left_col == user_b_id, right_col == user_a_id),
    )


class SocialService:
    def are_friends(self, db: Session, user_id: str, other_user_id: str) -> bool:
        return _friendship_exists(db, user_id, other_user_id)

    def is_blocked_between(self, db: Session, user_a_id: str, user_b_id: str) -> bool:
        block = db.scalar(
            select(BlockedUser.id).where(
                _pair_filter(BlockedUser, "user_id", "blocked_user_id", user_a_id, user_b_id)
            )
        )
        return block is not None

    def _active_user_by_username(self, db: Session, username: str) -> User | None:
        return db.scalar(
            select(User)
            .where(User.username == username.strip())
            .where(User.is_deleted.is_(False))
        )

    def list_friends(self, db: Session, user_id: str) -> list[User]:
        friend_ids = db.scalars(
            select(Friendship.friend_id).where(Friendship.user_id == user_id)
        ).all()
        if not friend_ids:
            return []
        return db.scalars(
            select(User)
            .where(User.id.in_(friend_ids))
            .where(User.is_deleted.is_(False))
            .order_by(User.is_online.desc(), User.username.asc())
        ).all()

    def list_friend_requests(self, db: Session, user_id: str, incoming: bool) -> list[dict]:
        base_filter = FriendRequest.recipient_id == user_id if incoming else FriendRequest.sender_id == user_id
        requests = db.scalars(
            select(FriendRequest)
            .where(base_filter)
            .where(FriendRequest.status == "pending")
            .order_by(FriendRequest.created_at.desc())
        ).all()
        return self._map_with_usernames(db, requests)

    def send_friend_request(
        self,
        db: Session,
        sender: User,
        target_username: str,
        message: str | None = None,
    ) -> tuple[dict, Notification | None]:
        target_user = self._active_user_by_username(db, target_username)
        if not target_user:
            raise ValueError("User not found")
        if target_user.id == sender.id:
            raise ValueError("Cannot friend yourself")
        if self.is_blocked_between(db, sender.id, target_user.id):
            raise ValueError("Cannot send a friend request to this user")
        if _friendship_exists(db, sender.id, target_user.id):
            raise ValueError("Already friends")

        existing_pending = db.scalar(
            select(FriendRequest)
            .where(FriendRequest.status == "pending")
            .where(_pair_filter(FriendRequest, "sender_id", "recipient_id", sender.id, target_user.id))
        )
        if existing_pending:
            if existing_pending.sender_id == sender.id:
                raise ValueError("Friend request already sent")
            # they already asked us
            accepted, notification = self.respond_to_friend_request(
                db,
                existing_pending.id,
                actor_user_id=sender.id,
                accept=True,
            )
            return accepted, notification

        friend_request = FriendRequest(
            sender_id=sender.id,
            recipient_id=target_user.id,
            message=(message or "").strip()[:200] or None,
            status="pending",
        )
        db.add(friend_request)
        db.flush()
        notification = notification_service.add(
            db,
            recipient_id=target_user.id,
            type="friend_request",
            title="New friend request",
            message=f"{sender.username} sent you a friend request",
            data={"request_id": friend_request.id, "sender_id": sender.id, "sender_username": sender.username},
        )
        db.commit()
        db.refresh(friend_request)
        logger.info("Friend request %s -> %s", sender.username, target_user.username)
        return self._map_with_usernames(db, [friend_request])[0], notification

    def respond_to_friend_request(
        self,
        db: Session,
        request_id: str,
        actor_user_id: str,
        accept: bool,
    ) -> tuple[dict, Notification | None]:
        request = db.get(FriendRequest, request_id)
        if not request:
            raise ValueError("Friend request not found")
        if request.recipient_id != actor_user_id:
            raise PermissionError("Not authorized for this friend request")
        if request.status != "pending":
            raise ValueError("Friend request already resolved")

        request.status = "accepted" if accept else "rejected"
        request.resolved_at = _utc_now()
        notification = None
        if accept:
            _ensure_friendship_pair(db, request.sender_id, request.recipient_id)
            actor = db.get(User, actor_user_id)
            notification = notification_service.add(
                db,
                recipient_id=request.sender_id,
                type="friend_request",
                title="Friend request accepted",
                message=f"{actor.username if actor else 'A player'} accepted your friend request",
                data={"request_id": request.id, "friend_id": actor_user_id},
            )
        db.commit()
        db.refresh(request)
        return self._map_with_usernames(db, [request])[0], notification

    def cancel_friend_request(self, db: Session, request_id: str, actor_user_id: str) -> dict:
        request = db.get(FriendRequest, request_id)
        if not request:
            raise ValueError("Friend request not found")
        if request.sender_id != actor_user_id:
            raise PermissionError("Not authorized for this friend request")
        if request.status != "pending":
            raise ValueError("Friend request already resolved")
        request.status = "cancelled"
        request.resolved_at = _utc_now()
        db.commit()
        db.refresh(request)
        return self._map_with_usernames(db, [request])[0]

    def remove_friend(self, db: Session, user_id: str, friend_user_id: str) -> bool:
        friendships = db.scalars(
            select(Friendship).where(
                _pair_filter(Friendship, "user_id", "friend_id", user_id, friend_user_id)
            )
        ).all()
        for friendship in friendships:
            db.delete(friendship)
        db.commit()
        return bool(friendships)

    def search_users(self, db: Session, user_id: str, query: str, limit: int = SEARCH_LIMIT) -> list[dict]:
        normalized = query.strip()
        if len(normalized) < 2:
            raise ValueError("Search query must be at least 2 characters")
        blocked_ids = set(
            db.scalars(select(BlockedUser.blocked_user_id).where(BlockedUser.user_id == user_id)).all()
        ) | set(db.scalars(select(BlockedUser.user_id).where(BlockedUser.blocked_user_id == user_id)).all())
        users = db.scalars(
            select(User)
            .where(User.username.ilike(f"{normalized}%"))
            .where(User.id != user_id)
            .where(User.is_deleted.is_(False))
            .order_by(User.username.asc())
            .limit(max(1, min(limit, 50)) + len(blocked_ids))
        ).all()
        friend_ids = {friend.id for friend in self.list_friends(db, user_id)}
        results = []
        for user in users:
            if user.id in blocked_ids:
                continue
            results.append({**user_brief(user), "is_friend": user.id in friend_ids})
        return results[:limit]

    def block_user(self, db: Session, user_id: str, target_user_id: str) -> dict:
        if user_id == target_user_id:
            raise ValueError("Cannot block yourself")
        target = db.get(User, target_user_id)
        if target is None:
            raise ValueError("User not found")
        existing = db.scalar(
            select(BlockedUser)
            .where(BlockedUser.user_id == user_id)
            .where(BlockedUser.blocked_user_id == target_user_id)
        )
        if existing:
            raise ValueError("User already blocked")

        db.execute(delete(Friendship).where(_pair_filter(Friendship, "user_id", "friend_id", user_id, target_user_id)))
        pending = db.scalars(
            select(FriendRequest)
            .where(FriendRequest.status == "pending")
            .where(_pair_filter(FriendRequest, "sender_id", "recipient_id", user_id, target_user_id))
        ).all()
        for request in pending:
            request.status = "cancelled"
            request.resolved_at = _utc_now()
        block = BlockedUser(user_id=user_id, blocked_user_id=target_user_id)
        db.add(block)
        db.commit()
        return {**user_brief(target), "blocked_at": block.created_at}

    def unblock_user(self, db: Session, user_id: str, target_user_id: str) -> bool:
        block = db.scalar(
            select(BlockedUser)
            .where(BlockedUser.user_id == user_id)
            .where(BlockedUser.blocked_user_id == target_user_id)
        )
        if block is None:
            return False
        db.delete(block)
        db.commit()
        return True

    def list_blocked(self, db: Session, user_id: str) -> list[dict]:
        blocks = db.scalars(
            select(BlockedUser).where(BlockedUser.user_id == user_id).order_by(BlockedUser.created_at.desc())
        ).all()
        users = {
            user.id: user
            for user in db.scalars(select(User).where(User.id.in_([b.blocked_user_id for b in blocks]))).all()
        } if blocks else {}
        return [
            {**user_brief(users[block.blocked_user_id]), "blocked_at": block.created_at}
            for block in blocks
            if block.blocked_user_id in users
        ]

    def list_game_invites(self, db: Session, user_id: str, incoming: bool) -> list[dict]:
        base_filter = GameInvite.recipient_id == user_id if incoming else GameInvite.sender_id == user_id
        invites = db.scalars(
            select(GameInvite)
            .where(base_filter)
            .where(GameInvite.status == "pending")
            .order_by(GameInvite.created_at.desc())
        ).all()
        return self._map_with_usernames(db, invites)

    def send_game_invite(
        self,
        db: Session,
        sender: User,
        recipient_user_id: str,
        room_id: str,
    ) -> tuple[dict, Notification | None]:
        recipient = db.get(User, recipient_user_id)
        if not recipient or recipient.is_deleted:
            raise ValueError("Recipient user not found")
        if recipient.id == sender.id:
            raise ValueError("Cannot invite yourself")
        if not _friendship_exists(db, sender.id, recipient.id):
            raise ValueError("You can only invite friends")
        game = db.scalar(select(Game).where(Game.room_id == room_id))
        if game is None or game.player_x_id != sender.id:
            raise ValueError("Game room not found")
        if game.status != "waiting" or game.player_o_id:
            raise ValueError("Game room is not waiting for players")

        existing_pending = db.scalar(
            select(GameInvite)
            .where(GameInvite.sender_id == sender.id)
            .where(GameInvite.recipient_id == recipient.id)
            .where(GameInvite.room_id == room_id)
            .where(GameInvite.status == "pending")
        )
        if existing_pending:
            return self._map_with_usernames(db, [existing_pending])[0], None

        invite = GameInvite(sender_id=sender.id, recipient_id=recipient.id, room_id=room_id, status="pending")
        db.add(invite)
        db.flush()
        notification = notification_service.add(
            db,
            recipient_id=recipient.id,
            type="game_invite",
            title="Game invite",
            message=f"{sender.username} invited you to a game",
            data={"invite_id": invite.id, "room_id": room_id, "sender_username": sender.username},
        )
        db.commit()
        db.refresh(invite)
        return self._map_with_usernames(db, [invite])[0], notification

    def respond_to_game_invite(self, db: Session, invite_id: str, actor_user_id: str, accept: bool) -> dict:
        invite = db.get(GameInvite, invite_id)
        if not invite:
            raise ValueError("Game invite not found")
        if invite.recipient_id != actor_user_id:
            raise PermissionError("Not authorized for this game invite")
        if invite.status != "pending":
            raise ValueError("Game invite already resolved")

        invite.status = "accepted" if accept else "declined"
        invite.resolved_at = _utc_now()
        db.commit()
        db.refresh(invite)
        return self._map_with_usernames(db, [invite])[0]

    def _map_with_usernames(self, db: Session, rows: list) -> list[dict]:
        user_ids = {row.sender_id for row in rows} | {row.recipient_id for row in rows}
        users = db.scalars(select(User).where(User.id.in_(list(user_ids)))).all() if user_ids else []
        user_map = {user.id: user.username for user in users}

        mapped = []
        for row in rows:
            item = {
                "id": row.id,
                "sender_id": row.sender_id,
                "recipient_id": row.recipient_id,
                "sender_username": user_map.get(row.sender_id, row.sender_id),
                "recipient_username": user_map.get(row.recipient_id, row.recipient_id),
                "status": row.status,
                "created_at": row.created_at,
                "resolved_at": row.resolved_at,
            }
            if isinstance(row, GameInvite):
                item["room_id"] = row.room_id
            else:
                item["message"] = row.message
            mapped.append(item)
        return mapped


social_service = SocialService()
