from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_user
from tictactoe.db.models import User
from tictactoe.db.session import get_db
from tictactoe.realtime.socket_server import is_user_online, notify_notification
from tictactoe.schemas.social import (
    BlockedUserRead,
    FriendRequestCreateRequest,
    FriendRequestRead,
    FriendRequestsRead,
    GameInviteCreateRequest,
    GameInviteRead,
    GameInvitesRead,
    SocialUserRead,
    UserSearchResultRead,
)
from tictactoe.services.social_service import social_service, user_brief

router = APIRouter()


def _raise_for(exc: Exception) -> None:
    if isinstance(exc, PermissionError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("", response_model=list[SocialUserRead])
def list_friends(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[SocialUserRead]:
    friends = social_service.list_friends(db, current_user.id)
    payload = []
    for friend in friends:
        item = SocialUserRead.model_validate(user_brief(friend))
        item.is_online = item.is_online or is_user_online(friend.id)
        payload.append(item)
    return payload


@router.get("/search", response_model=list[UserSearchResultRead])
def search_users(
    q: str = Query(min_length=2, max_length=40),
    limit: int = Query(default=20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[UserSearchResultRead]:
    try:
        results = social_service.search_users(db, current_user.id, q, limit=limit)
    except ValueError as exc:
        _raise_for(exc)
    return [UserSearchResultRead.model_validate(item) for item in results]


@router.get("/requests", response_model=FriendRequestsRead)
def list_friend_requests(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> FriendRequestsRead:
    return FriendRequestsRead(
        incoming=social_service.list_friend_requests(db, current_user.id, incoming=True),
        outgoing=social_service.list_friend_requests(db, current_user.id, incoming=False),
    )


@router.post("/requests", response_model=FriendRequestRead, status_code=status.HTTP_201_CREATED)
async def send_friend_request(
    payload: FriendRequestCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> FriendRequestRead:
    try:
        request, notification = social_service.send_friend_request(
            db,
            current_user,
            payload.username,
            message=payload.message,
        )
    except (ValueError, PermissionError) as exc:
        _raise_for(exc)
    await notify_notification(notification)
    return FriendRequestRead.model_validate(request)


@router.post("/requests/{request_id}/accept", response_model=FriendRequestRead)
async def accept_friend_request(
    request_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> FriendRequestRead:
    try:
        request, notification = social_service.respond_to_friend_request(
            db,
            request_id=request_id,
            actor_user_id=current_user.id,
            accept=True,
        )
    except (ValueError, PermissionError) as exc:
        _raise_for(exc)
    await notify_notification(notification)
    return FriendRequestRead.model_validate(request)


@router.post("/requests/{request_id}/reject", response_model=FriendRequestRead)
def reject_friend_request(
    request_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> FriendRequestRead:
    try:
        request, _ = social_service.respond_to_friend_request(
            db,
            request_id=request_id,
            actor_user_id=current_user.id,
            accept=False,
        )
    except (ValueError, PermissionError) as exc:
        _raise_for(exc)
    return FriendRequestRead.model_validate(request)


@router.delete("/requests/{request_id}", response_model=FriendRequestRead)
def cancel_friend_request(
    request_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> FriendRequestRead:
    try:
        request = social_service.cancel_friend_request(db, request_id, current_user.id)
    except (ValueError, PermissionError) as exc:
        _raise_for(exc)
    return FriendRequestRead.model_validate(request)


@router.get("/blocked", response_model=list[BlockedUserRead])
def list_blocked(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[BlockedUserRead]:
    return [BlockedUserRead.model_validate(item) for item in social_service.list_blocked(db, current_user.id)]


@router.post("/blocked/{user_id}", response_model=BlockedUserRead, status_code=status.HTTP_201_CREATED)
def block_user(
    user_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> BlockedUserRead:
    try:
        blocked = social_service.block_user(db, current_user.id, user_id)
    except ValueError as exc:
        _raise_for(exc)
    return BlockedUserRead.model_validate(blocked)


@router.delete("/blocked/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def unblock_user(
    user_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> None:
    if not social_service.unblock_user(db, current_user.id, user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not blocked")


@router.get("/invites", response_model=GameInvitesRead)
def list_game_invites(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GameInvitesRead:
    return GameInvitesRead(
        incoming=social_service.list_game_invites(db, current_user.id, incoming=True),
        outgoing=social_service.list_game_invites(db, current_user.id, incoming=False),
    )


@router.post("/invites", response_model=GameInviteRead, status_code=status.HTTP_201_CREATED)
async def send_game_invite(
    payload: GameInviteCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GameInviteRead:
    try:
        invite, notification = social_service.send_game_invite(
            db,
            current_user,
            payload.recipient_id,
            payload.room_id,
        )
    except (ValueError, PermissionError) as exc:
        _raise_for(exc)
    await notify_notification(notification)
    return GameInviteRead.model_validate(invite)


@router.post("/invites/{invite_id}/accept", response_model=GameInviteRead)
def accept_game_invite(
    invite_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GameInviteRead:
    try:
        invite = social_service.respond_to_game_invite(db, invite_id, current_user.id, accept=True)
    except (ValueError, PermissionError) as exc:
        _raise_for(exc)
    return GameInviteRead.model_validate(invite)


@router.post("/invites/{invite_id}/decline", response_model=GameInviteRead)
def decline_game_invite(
    invite_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GameInviteRead:
    try:
        invite = social_service.respond_to_game_invite(db, invite_id, current_user.id, accept=False)
    except (ValueError, PermissionError) as exc:
        _raise_for(exc)
    return GameInviteRead.model_validate(invite)


@router.delete("/{friend_user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_friend(
    friend_user_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> None:
    if not social_service.remove_friend(db, current_user.id, friend_user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend not found")
