from datetime import datetime, timezone
import json
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from tictactoe.db.models import AdminAuditLog, Game, SystemSetting, User
from tictactoe.services.energy_service import set_energy
from tictactoe.services.leveling import level_for_xp

logger = logging.getLogger(__name__)

ROLE_LEVELS: dict[str, int] = {
    "player": 0,
    "mod": 1,
    "admin": 2,
    "super": 3,
}

ROLE_VALUES = set(ROLE_LEVELS.keys())

DEFAULT_SYSTEM_SETTINGS: dict[str, object] = {
    "maintenance_mode": False,
    "registration_enabled": True,
    "chat_enabled": True,
    "max_concurrent_games": 1000,
    "announcement": "",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _start_of_today() -> datetime:
    return _utc_now().replace(hour=0, minute=0, second=0, microsecond=0)


def normalize_role(role: str | None) -> str:
    normalized = (role or "").strip().lower()
    if normalized in ROLE_VALUES:
        return normalized
    return "player"


def has_role_at_least(role: str | None, minimum_role: str) -> bool:
    minimum = ROLE_LEVELS.get(normalize_role(minimum_role), 0)
    actual = ROLE_LEVELS.get(normalize_role(role), 0)
    return actual >= minimum


def dashboard_stats(db: Session, *, queue_size: int = 0) -> dict:
    today = _start_of_today()
    live_users = select(func.count(User.id)).where(User.is_deleted.is_(False))
    return {
        "total_users": db.scalar(live_users) or 0,
        "online_users": db.scalar(live_users.where(User.is_online.is_(True))) or 0,
        "new_users_today": db.scalar(live_users.where(User.created_at >= today)) or 0,
        "blocked_users": db.scalar(live_users.where(User.is_blocked.is_(True))) or 0,
        "total_games": db.scalar(select(func.count(Game.id))) or 0,
        "active_games": db.scalar(select(func.count(Game.id)).where(Game.status == "active")) or 0,
        "waiting_games": db.scalar(select(func.count(Game.id)).where(Game.status == "waiting")) or 0,
        "completed_today": db.scalar(
            select(func.count(Game.id))
            .where(Game.status == "completed")
            .where(Game.ended_at >= today)
        ) or 0,
        "queue_size": queue_size,
    }


def list_users(db: Session, *, search: str = "", page: int = 1, limit: int = 50) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 200))
    base = select(User).where(User.is_deleted.is_(False))
    normalized_search = search.strip()
    if normalized_search:
        pattern = f"%{normalized_search}%"
        base = base.where(or_(User.username.like(pattern), User.email.like(pattern)))
    total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
    users = db.scalars(
        base.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return {"items": users, "total": total, "page": page, "limit": limit}


def update_user(
    db: Session,
    actor: User,
    user_id: str,
    *,
    role: str | None = None,
    is_blocked: bool | None = None,
    energy: int | None = None,
    xp: int | None = None,
) -> tuple[User, dict] | None:
    """Returns (user, applied changes)."""
    user = db.get(User, user_id)
    if not user or user.is_deleted:
        return None
    changes: dict = {}

    if role is not None:
        if not has_role_at_least(actor.role, "super"):
            raise PermissionError("Requires super role")
        requested = role.strip().lower()
        if requested not in ROLE_VALUES:
            raise ValueError("Invalid role")
        if user.id == actor.id and requested != actor.role:
            raise ValueError("Cannot change your own role")
        user.role = requested
        changes["role"] = requested

    if is_blocked is not None:
        if user.id == actor.id:
            raise ValueError("Cannot block yourself")
        if ROLE_LEVELS[normalize_role(user.role)] >= ROLE_LEVELS[normalize_role(actor.role)]:
            raise PermissionError("Cannot block a user with an equal or higher role")
        user.is_blocked = is_blocked
        if is_blocked:
            user.is_online = False
        changes["is_blocked"] = is_blocked

    if energy is not None:
        if energy < 0:
            raise ValueError("Energy must be >= 0")
        set_energy(user, energy)
        changes["energy"] = user.energy

    if xp is not None:
        if xp < 0:
            raise ValueError("XP must be >= 0")
        user.xp = xp
        user.level = level_for_xp(xp)
        changes["xp"] = xp
        changes["level"] = user.level

    db.add(user)
    db.commit()
    db.refresh(user)
    return user, changes


def get_system_settings(db: Session) -> dict:
    values = dict(DEFAULT_SYSTEM_SETTINGS)
    for row in db.scalars(select(SystemSetting)).all():
        if row.key in values:
            values[row.key] = json.loads(row.value_json)
    return values


def get_system_setting(db: Session, key: str):
    if key not in DEFAULT_SYSTEM_SETTINGS:
        raise KeyError(key)
    row = db.get(SystemSetting, key)
    return json.loads(row.value_json) if row else DEFAULT_SYSTEM_SETTINGS[key]


def update_system_settings(db: Session, actor_user_id: str, updates: dict) -> dict:
    unknown = set(updates) - set(DEFAULT_SYSTEM_SETTINGS)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
    for key, value in updates.items():
        expected_type = type(DEFAULT_SYSTEM_SETTINGS[key])
        if expected_type is int and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValueError(f"{key} must be an integer")
        if expected_type is not int and not isinstance(value, expected_type):
            raise ValueError(f"{key} must be {expected_type.__name__}")
        row = db.get(SystemSetting, key)
        if row is None:
            row = SystemSetting(key=key)
        row.value_json = json.dumps(value)
        row.updated_by_user_id = actor_user_id
        row.updated_at = _utc_now()
        db.add(row)
    db.commit()
    if "maintenance_mode" in updates:
        logger.warning("Maintenance mode set to %s", updates["maintenance_mode"])
    return get_system_settings(db)


def is_maintenance_mode(db: Session) -> bool:
    return bool(get_system_setting(db, "maintenance_mode"))


def write_audit_log(
    db: Session,
    actor_user_id: str,
    actor_role: str,
    action: str,
    status: str,
    message: str,
    target_user_id: str | None = None,
    target_game_id: str | None = None,
    metadata: dict | None = None,
) -> AdminAuditLog:
    entry = AdminAuditLog(
        actor_user_id=actor_user_id,
        actor_role=normalize_role(actor_role),
        action=action[:100],
        status=status[:20],
        message=message[:500],
        target_user_id=target_user_id,
        target_game_id=target_game_id,
        metadata_json=json.dumps(metadata or {}, ensure_ascii=True),
        created_at=_utc_now(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def list_audit_logs(db: Session, limit: int = 100) -> list[AdminAuditLog]:
    clamped_limit = max(1, min(200, int(limit)))
    return db.scalars(
        select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc()).limit(clamped_limit)
    ).all()
