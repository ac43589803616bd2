from datetime import datetime, timedelta, timezone
import json
import logging

from sqlalchemy import desc, func, select, update
from sqlalchemy.orm import Session

from tictactoe.core.config import get_settings
from tictactoe.core.security import generate_random_token, hash_password, hash_token, verify_password
from tictactoe.db.models import AccountToken, SecurityEvent, User, UserSession
from tictactoe.schemas.auth import RegisterRequest
from tictactoe.schemas.profile import ProfileUpdateRequest

logger = logging.getLogger(__name__)

PURPOSE_EMAIL_VERIFICATION = "email_verify"
PURPOSE_PASSWORD_RESET = "password_reset"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_user_by_id(db: Session, user_id: str) -> User | None:
    return db.get(User, user_id)


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.scalar(select(User).where(User.email == email))


def get_user_by_username(db: Session, username: str) -> User | None:
    return db.scalar(select(User).where(User.username == username))


def create_user(db: Session, payload: RegisterRequest) -> User:
    settings = get_settings()
    existing_user_count = db.scalar(select(func.count(User.id))) or 0
    initial_role = "super" if existing_user_count == 0 else "player"
    now = _utc_now()

    user = User(
        email=payload.email.lower(),
        username=payload.username.strip(),
        hashed_password=hash_password(payload.password),
        role=initial_role,
        display_name=payload.username.strip(),
        energy=settings.energy_max,
        max_energy=settings.energy_max,
        energy_updated_at=now,
        email_verified=not settings.auth_require_email_verification,
        email_verified_at=now if not settings.auth_require_email_verification else None,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered user %s (%s)", user.username, user.role)
    return user


def is_login_locked(user: User) -> bool:
    locked_until = user.login_locked_until
    if not locked_until:
        return False
    return _utc_now() < _as_utc(locked_until)


def register_failed_login_attempt(db: Session, user: User) -> None:
    settings = get_settings()
    attempts = int(user.failed_login_attempts or 0) + 1
    user.failed_login_attempts = attempts
    if attempts >= max(1, settings.auth_max_failed_login_attempts):
        user.login_locked_until = _utc_now() + timedelta(
            minutes=max(1, settings.auth_login_lockout_minutes)
        )
        user.failed_login_attempts = 0
        logger.warning("Login locked for %s", user.username)
    db.add(user)
    db.commit()
    db.refresh(user)


def clear_failed_login_attempts(db: Session, user: User) -> None:
    if not user.failed_login_attempts and not user.login_locked_until:
        return
    user.failed_login_attempts = 0
    user.login_locked_until = None
    db.add(user)
    db.commit()
    db.refresh(user)


def create_user_session(
    db: Session,
    *,
    user_id: str,
    token_jti: str,
    ip_address: str,
    user_agent: str,
    expires_at: datetime,
    refresh_token: str | None = None,
) -> UserSession:
    session = UserSession(
        user_id=user_id,
        token_jti=token_jti,
        refresh_token_hash=hash_token(refresh_token) if refresh_token else None,
        ip_address=ip_address[:64],
        user_agent=user_agent[:500],
        expires_at=expires_at,
        last_seen_at=_utc_now(),
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def get_active_user_session_by_id(
    db: Session,
    *,
    user_id: str,
    session_id: str,
) -> UserSession | None:
    now = _utc_now()
    return db.scalar(
        select(UserSession).where(
            UserSession.id == session_id,
            UserSession.user_id == user_id,
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > now,
        )
    )


def touch_user_session(db: Session, session: UserSession) -> UserSession:
    session.last_seen_at = _utc_now()
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def list_user_sessions(db: Session, *, user_id: str, limit: int = 20) -> list[UserSession]:
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id)
        .order_by(desc(UserSession.last_seen_at))
        .limit(max(1, limit))
    )
    return db.scalars(stmt).all()


def revoke_user_session(db: Session, *, user_id: str, session_id: str) -> UserSession | None:
    session = db.scalar(
        select(UserSession).where(
            UserSession.id == session_id,
            UserSession.user_id == user_id,
            UserSession.revoked_at.is_(None),
        )
    )
    if not session:
        return None
    session.revoked_at = _utc_now()
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def revoke_all_user_sessions(db: Session, *, user_id: str, except_session_id: str | None = None) -> int:
    stmt = (
        update(UserSession)
        .where(UserSession.user_id == user_id)
        .where(UserSession.revoked_at.is_(None))
    )
    if except_session_id:
        stmt = stmt.where(UserSession.id != except_session_id)
    result = db.execute(stmt.values(revoked_at=_utc_now()))
    db.commit()
    return result.rowcount or 0


def refresh_user_session(db: Session, *, refresh_token: str, token_jti: str) -> tuple[User, UserSession, str]:
    """Rotate the refresh token of a live session.

    Returns the user, the session and the new raw refresh token. A refresh
    token works once; the old one stops matching after rotation.
    """
    now = _utc_now()
    session = db.scalar(
        select(UserSession).where(
            UserSession.refresh_token_hash == hash_token(refresh_token.strip()),
            UserSession.revoked_at.is_(None),
        )
    )
    if session is None or now >= _as_utc(session.expires_at):
        raise ValueError("Invalid or expired refresh token")
    user = db.get(User, session.user_id)
    if user is None or user.is_deleted:
        raise ValueError("Invalid or expired refresh token")
    if user.is_blocked:
        raise PermissionError("Account is blocked")

    new_refresh_token = generate_random_token()
    session.refresh_token_hash = hash_token(new_refresh_token)
    session.token_jti = token_jti
    session.expires_at = now + timedelta(days=max(1, get_settings().refresh_token_expire_days))
    session.last_seen_at = now
    user.last_seen_at = now
    db.add(session)
    db.add(user)
    db.commit()
    db.refresh(session)
    return user, session, new_refresh_token


def update_profile(db: Session, user: User, payload: ProfileUpdateRequest) -> User:
    changes = payload.model_dump(exclude_unset=True)
    for field in ("display_name", "avatar_url", "bio"):
        if field in changes:
            value = changes[field]
            setattr(user, field, value.strip() if isinstance(value, str) and value.strip() else None)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def change_password(
    db: Session,
    user: User,
    *,
    current_password: str,
    new_password: str,
    keep_session_id: str | None = None,
) -> int:
    """Returns the number of other sessions revoked."""
    if not verify_password(current_password, user.hashed_password):
        raise PermissionError("Current password is incorrect")
    if current_password == new_password:
        raise ValueError("New password must differ from the current one")
    user.hashed_password = hash_password(new_password)
    user.password_changed_at = _utc_now()
    db.add(user)
    db.commit()
    return revoke_all_user_sessions(db, user_id=user.id, except_session_id=keep_session_id)


def soft_delete_user(db: Session, user: User) -> User:
    """Anonymise the account and revoke every session; game history is kept."""
    now = _utc_now()
    suffix = user.id
    user.email = f"deleted-{suffix}@deleted.invalid"
    user.username = f"deleted_{suffix}"
    user.display_name = "Deleted user"
    user.avatar_url = None
    user.bio = None
    user.hashed_password = None
    user.is_deleted = True
    user.deleted_at = now
    user.is_online = False
    db.add(user)
    db.commit()
    revoke_all_user_sessions(db, user_id=user.id)
    db.refresh(user)
    logger.info("Account %s deleted", user.id)
    return user


def _latest_unused_token(db: Session, user_id: str, purpose: str) -> AccountToken | None:
    return db.scalar(
        select(AccountToken)
        .where(
            AccountToken.user_id == user_id,
            AccountToken.purpose == purpose,
            AccountToken.used_at.is_(None),
        )
        .order_by(desc(AccountToken.created_at))
        .limit(1)
    )


def _issue_account_token(
    db: Session,
    *,
    user: User,
    purpose: str,
    ttl_minutes: int,
    cooldown_seconds: int,
    cooldown_message: str,
) -> str:
    latest_token = _latest_unused_token(db, user.id, purpose)
    now = _utc_now()
    if latest_token and (now - _as_utc(latest_token.created_at)).total_seconds() < cooldown_seconds:
        raise ValueError(cooldown_message)

    raw_token = generate_random_token(24)
    db.add(
        AccountToken(
            user_id=user.id,
            purpose=purpose,
            token_hash=hash_token(raw_token),
            expires_at=now + timedelta(minutes=max(5, ttl_minutes)),
        )
    )
    db.commit()
    return raw_token


def _consume_account_token(db: Session, *, token: str, purpose: str, label: str) -> tuple[AccountToken, User]:
    now = _utc_now()
    row = db.scalar(
        select(AccountToken).where(
            AccountToken.token_hash == hash_token(token.strip()),
            AccountToken.purpose == purpose,
        )
    )
    if not row:
        raise ValueError(f"Invalid {label} token")
    if row.used_at is not None:
        raise ValueError(f"{label.capitalize()} token already used")
    if now >= _as_utc(row.expires_at):
        raise ValueError(f"{label.capitalize()} token expired")

    user = db.get(User, row.user_id)
    if not user or user.is_deleted:
        raise ValueError("User not found")
    row.used_at = now
    return row, user


def issue_email_verification_token(db: Session, *, user: User) -> str:
    settings = get_settings()
    return _issue_account_token(
        db,
        user=user,
        purpose=PURPOSE_EMAIL_VERIFICATION,
        ttl_minutes=settings.email_verification_token_ttl_minutes,
        cooldown_seconds=settings.email_verification_resend_cooldown_seconds,
        cooldown_message="Please wait before requesting another verification email",
    )


def verify_email_with_token(db: Session, *, token: str) -> User:
    row, user = _consume_account_token(db, token=token, purpose=PURPOSE_EMAIL_VERIFICATION, label="verification")
    user.email_verified = True
    user.email_verified_at = row.used_at
    db.add(user)
    db.add(row)
    db.commit()
    db.refresh(user)
    return user


def issue_password_reset_token(db: Session, *, user: User) -> str:
    settings = get_settings()
    return _issue_account_token(
        db,
        user=user,
        purpose=PURPOSE_PASSWORD_RESET,
        ttl_minutes=settings.password_reset_token_ttl_minutes,
        cooldown_seconds=settings.password_reset_cooldown_seconds,
        cooldown_message="Please wait before requesting another password reset",
    )


def reset_password_with_token(db: Session, *, token: str, new_password: str) -> User:
    row, user = _consume_account_token(db, token=token, purpose=PURPOSE_PASSWORD_RESET, label="reset")
    user.hashed_password = hash_password(new_password)
    user.password_changed_at = row.used_at
    user.failed_login_attempts = 0
    user.login_locked_until = None
    db.add(user)
    db.add(row)
    db.commit()
    revoke_all_user_sessions(db, user_id=user.id)
    db.refresh(user)
    return user


def list_security_events(db: Session, *, user_id: str, limit: int = 50) -> list[SecurityEvent]:
    stmt = (
        select(SecurityEvent)
        .where(SecurityEvent.user_id == user_id)
        .order_by(desc(SecurityEvent.created_at))
        .limit(max(1, limit))
    )
    return db.scalars(stmt).all()


def record_security_event(
    db: Session,
    *,
    event_type: str,
    severity: str = "info",
    user_id: str | None = None,
    ip_address: str = "",
    user_agent: str = "",
    metadata: dict | None = None,
) -> SecurityEvent:
    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type[:60],
        severity=severity[:20] if severity else "info",
        ip_address=ip_address[:64],
        user_agent=user_agent[:500],
        metadata_json=json.dumps(metadata or {}),
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event
