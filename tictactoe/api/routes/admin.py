from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_user, require_min_role
from tictactoe.db.models import User
from tictactoe.db.session import get_db
from tictactoe.realtime.socket_server import (
    notify_account_blocked,
    notify_game_updated,
    notify_notification,
    notify_role_updated,
)
from tictactoe.schemas.admin import (
    AdminAuditLogRead,
    AdminNotificationCreateRequest,
    AdminUserPage,
    AdminUserRead,
    AdminUserUpdateRequest,
    DashboardStatsRead,
    SystemSettingsRead,
    SystemSettingsUpdateRequest,
)
from tictactoe.schemas.auth import MessageRead
from tictactoe.schemas.game import GamePage, GameRead
from tictactoe.schemas.notifications import NotificationRead
from tictactoe.services import admin_service
from tictactoe.services.admin_service import (
    ROLE_LEVELS,
    list_audit_logs,
    normalize_role,
    write_audit_log,
)
from tictactoe.services.auth_service import soft_delete_user
from tictactoe.services.game_service import game_service
from tictactoe.services.matchmaking_service import matchmaking_service
from tictactoe.services.notification_service import notification_service, serialize_notification

router = APIRouter()


@router.get("/stats", response_model=DashboardStatsRead)
def get_dashboard_stats(
    _: User = Depends(require_min_role("mod")),
    db: Session = Depends(get_db),
) -> DashboardStatsRead:
    stats = admin_service.dashboard_stats(db, queue_size=matchmaking_service.stats()["total_players"])
    return DashboardStatsRead.model_validate(stats)


@router.get("/audits", response_model=list[AdminAuditLogRead])
def get_audit_logs(
    limit: int = Query(default=100, ge=1, le=200),
    _: User = Depends(require_min_role("mod")),
    db: Session = Depends(get_db),
) -> list[AdminAuditLogRead]:
    entries = list_audit_logs(db, limit=limit)
    return [AdminAuditLogRead.model_validate(entry) for entry in entries]


@router.get("/users", response_model=AdminUserPage)
def list_users(
    search: str = Query(default="", max_length=40),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    _: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> AdminUserPage:
    result = admin_service.list_users(db, search=search, page=page, limit=limit)
    return AdminUserPage(
        items=[AdminUserRead.model_validate(user) for user in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
    )


@router.patch("/users/{user_id}", response_model=AdminUserRead)
async def update_user(
    user_id: str,
    payload: AdminUserUpdateRequest,
    current_user: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> AdminUserRead:
    try:
        result = admin_service.update_user(
            db,
            current_user,
            user_id,
            role=payload.role,
            is_blocked=payload.is_blocked,
            energy=payload.energy,
            xp=payload.xp,
        )
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    user, changes = result
    write_audit_log(
        db,
        actor_user_id=current_user.id,
        actor_role=current_user.role,
        action="user.update",
        status="success",
        message=f"updated {', '.join(sorted(changes)) or 'nothing'}",
        target_user_id=user.id,
        metadata=changes,
    )
    if "role" in changes:
        await notify_role_updated(user.id, user.role)
    if changes.get("is_blocked"):
        matchmaking_service.leave(user.id)
        await notify_account_blocked(user.id)
    return AdminUserRead.model_validate(user)


@router.delete("/users/{user_id}", response_model=MessageRead)
async def delete_user(
    user_id: str,
    current_user: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> MessageRead:
    user = db.get(User, user_id)
    if not user or user.is_deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if user.id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot delete yourself")
    if ROLE_LEVELS[normalize_role(user.role)] >= ROLE_LEVELS[normalize_role(current_user.role)]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot delete a user with an equal or higher role",
        )

    matchmaking_service.leave(user.id)
    soft_delete_user(db, user)
    write_audit_log(
        db,
        actor_user_id=current_user.id,
        actor_role=current_user.role,
        action="user.delete",
        status="success",
        message="account soft deleted",
        target_user_id=user.id,
    )
    await notify_account_blocked(user.id)
    return MessageRead(message="User deleted")


@router.get("/games", response_model=GamePage)
def list_games(
    status_filter: str | None = Query(default=None, alias="status", max_length=20),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    _: User = Depends(require_min_role("mod")),
    db: Session = Depends(get_db),
) -> GamePage:
    return GamePage.model_validate(game_service.list_games(db, status=status_filter, page=page, limit=limit))


@router.post("/games/{room_id}/end", response_model=GameRead)
async def end_game(
    room_id: str,
    current_user: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> GameRead:
    try:
        game = game_service.end_game(db, room_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not game:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")

    write_audit_log(
        db,
        actor_user_id=current_user.id,
        actor_role=current_user.role,
        action="game.end",
        status="success",
        message=f"ended game {game.room_id}",
        target_game_id=game.id,
    )
    game_payload = game_service.serialize_game(db, game)
    await notify_game_updated(game_payload)
    return GameRead.model_validate(game_payload)


@router.get("/settings", response_model=SystemSettingsRead)
def get_settings_view(
    _: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> SystemSettingsRead:
    return SystemSettingsRead.model_validate(admin_service.get_system_settings(db))


@router.put("/settings", response_model=SystemSettingsRead)
def update_settings(
    payload: SystemSettingsUpdateRequest,
    current_user: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> SystemSettingsRead:
    updates = payload.model_dump(exclude_none=True)
    try:
        values = admin_service.update_system_settings(db, current_user.id, updates)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    write_audit_log(
        db,
        actor_user_id=current_user.id,
        actor_role=current_user.role,
        action="settings.update",
        status="success",
        message=f"updated {', '.join(sorted(updates)) or 'nothing'}",
        metadata=updates,
    )
    return SystemSettingsRead.model_validate(values)


@router.post("/notifications", response_model=NotificationRead, status_code=status.HTTP_201_CREATED)
async def send_system_notification(
    payload: AdminNotificationCreateRequest,
    current_user: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> NotificationRead:
    recipient = db.get(User, payload.recipient_id)
    if not recipient or recipient.is_deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    notification = notification_service.create(
        db,
        recipient_id=recipient.id,
        type="system",
        title=payload.title,
        message=payload.message,
        data={"sent_by": current_user.id},
    )
    write_audit_log(
        db,
        actor_user_id=current_user.id,
        actor_role=current_user.role,
        action="notification.send",
        status="success",
        message=payload.title,
        target_user_id=recipient.id,
    )
    await notify_notification(notification)
    return NotificationRead.model_validate(serialize_notification(notification))


@router.post("/notifications/cleanup", response_model=MessageRead)
def cleanup_notifications(
    _: User = Depends(require_min_role("admin")),
    db: Session = Depends(get_db),
) -> MessageRead:
    removed = notification_service.cleanup_expired(db)
    return MessageRead(message="Expired notifications removed", count=removed)


@router.get("/me", response_model=AdminUserRead)
def get_admin_me(current_user: User = Depends(get_current_user)) -> AdminUserRead:
    return AdminUserRead.model_validate(current_user)
