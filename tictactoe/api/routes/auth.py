from datetime import datetime, timedelta, timezone
import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_session_id, get_current_user
from tictactoe.core.config import get_settings
from tictactoe.core.request_meta import extract_client_ip, extract_user_agent
from tictactoe.core.security import create_access_token, generate_random_token, verify_password
from tictactoe.db.models import User
from tictactoe.db.session import get_db
from tictactoe.schemas.auth import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    EmailVerificationConfirmRequest,
    EmailVerificationRequest,
    EmailVerificationStatusRead,
    LoginRequest,
    MessageRead,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    RefreshTokenRequest,
    RegisterRequest,
    TokenResponse,
    UserRead,
)
from tictactoe.services.admin_service import get_system_setting
from tictactoe.services.auth_service import (
    change_password,
    clear_failed_login_attempts,
    create_user,
    create_user_session,
    get_user_by_email,
    get_user_by_username,
    is_login_locked,
    issue_email_verification_token,
    issue_password_reset_token,
    record_security_event,
    refresh_user_session,
    register_failed_login_attempt,
    reset_password_with_token,
    revoke_all_user_sessions,
    revoke_user_session,
    soft_delete_user,
    verify_email_with_token,
)
from tictactoe.services.energy_service import refresh_energy
from tictactoe.services.matchmaking_service import matchmaking_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> UserRead:
    if not get_system_setting(db, "registration_enabled"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Registration is closed")
    if get_user_by_email(db, payload.email.lower()):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already in use")
    if get_user_by_username(db, payload.username.strip()):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already in use")

    user = create_user(db, payload)

    if not user.email_verified:
        token = issue_email_verification_token(db, user=user)
        logger.info("Email verification token for %s: %s", user.email, token)

    record_security_event(
        db,
        event_type="register_success",
        severity="info",
        user_id=user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return UserRead.model_validate(user)


@router.post("/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> TokenResponse:
    settings = get_settings()
    user = get_user_by_email(db, payload.email.lower())
    client_ip = extract_client_ip(request)
    user_agent = extract_user_agent(request)

    if not user or user.is_deleted:
        record_security_event(
            db,
            event_type="login_failed_unknown_user",
            severity="warning",
            user_id=None,
            ip_address=client_ip,
            user_agent=user_agent,
            metadata={"email": payload.email.lower()},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    if is_login_locked(user):
        record_security_event(
            db,
            event_type="login_blocked_lockout",
            severity="warning",
            user_id=user.id,
            ip_address=client_ip,
            user_agent=user_agent,
        )
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="Too many failed logins. Try again later.",
        )

    if not verify_password(payload.password, user.hashed_password):
        register_failed_login_attempt(db, user)
        record_security_event(
            db,
            event_type="login_failed_bad_password",
            severity="warning",
            user_id=user.id,
            ip_address=client_ip,
            user_agent=user_agent,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    if user.is_blocked:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is blocked")

    if settings.auth_require_email_verification and not user.email_verified:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Email verification required",
        )

    clear_failed_login_attempts(db, user)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(days=max(1, settings.refresh_token_expire_days))
    token_jti = uuid4().hex
    refresh_token = generate_random_token()
    session = create_user_session(
        db,
        user_id=user.id,
        token_jti=token_jti,
        ip_address=client_ip,
        user_agent=user_agent,
        expires_at=expires_at,
        refresh_token=refresh_token,
    )
    user.last_login_at = now
    refresh_energy(user, now)
    db.add(user)
    db.commit()
    db.refresh(user)

    record_security_event(
        db,
        event_type="login_success",
        severity="info",
        user_id=user.id,
        ip_address=client_ip,
        user_agent=user_agent,
    )
    return TokenResponse(
        access_token=create_access_token(
            user.id,
            session_id=session.id,
            token_jti=token_jti,
        ),
        session_id=session.id,
        refresh_token=refresh_token,
        expires_in=settings.access_token_expire_minutes * 60,
    )


@router.post("/refresh-token", response_model=TokenResponse)
def refresh_token(
    payload: RefreshTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> TokenResponse:
    token_jti = uuid4().hex
    try:
        user, session, new_refresh_token = refresh_user_session(
            db,
            refresh_token=payload.refresh_token,
            token_jti=token_jti,
        )
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        logger.info("Refresh token rejected from %s", extract_client_ip(request))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    return TokenResponse(
        access_token=create_access_token(
            user.id,
            session_id=session.id,
            token_jti=token_jti,
        ),
        session_id=session.id,
        refresh_token=new_refresh_token,
        expires_in=get_settings().access_token_expire_minutes * 60,
    )


@router.get("/me", response_model=UserRead)
def me(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserRead:
    refresh_energy(current_user)
    db.add(current_user)
    db.commit()
    db.refresh(current_user)
    return UserRead.model_validate(current_user)


@router.post("/logout", response_model=MessageRead)
def logout(
    current_user: User = Depends(get_current_user),
    current_session_id: str | None = Depends(get_current_session_id),
    db: Session = Depends(get_db),
) -> MessageRead:
    if current_session_id:
        revoke_user_session(db, user_id=current_user.id, session_id=current_session_id)
    matchmaking_service.leave(current_user.id)
    return MessageRead(message="Logged out")


@router.post("/logout-all", response_model=MessageRead)
def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MessageRead:
    revoked = revoke_all_user_sessions(db, user_id=current_user.id)
    matchmaking_service.leave(current_user.id)
    record_security_event(
        db,
        event_type="logout_all",
        severity="info",
        user_id=current_user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return MessageRead(message="All sessions revoked", count=revoked)


@router.post("/change-password", response_model=MessageRead)
def update_password(
    payload: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    current_session_id: str | None = Depends(get_current_session_id),
    db: Session = Depends(get_db),
) -> MessageRead:
    try:
        revoked = change_password(
            db,
            current_user,
            current_password=payload.current_password,
            new_password=payload.new_password,
            keep_session_id=current_session_id,
        )
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    record_security_event(
        db,
        event_type="password_changed",
        severity="info",
        user_id=current_user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
        metadata={"revoked_sessions": revoked},
    )
    return MessageRead(message="Password changed", count=revoked)


@router.delete("/me", response_model=MessageRead)
def delete_account(
    payload: DeleteAccountRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MessageRead:
    if not verify_password(payload.password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Password is incorrect")
    user_id = current_user.id
    matchmaking_service.leave(user_id)
    soft_delete_user(db, current_user)
    record_security_event(
        db,
        event_type="account_deleted",
        severity="info",
        user_id=user_id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return MessageRead(message="Account deleted")


@router.post("/email/verify/request", response_model=EmailVerificationStatusRead)
def request_email_verification(
    payload: EmailVerificationRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> EmailVerificationStatusRead:
    user = get_user_by_email(db, payload.email.lower())
    if not user or user.is_deleted:
        return EmailVerificationStatusRead(
            verified=False,
            message="If this account exists, a verification email has been sent",
        )
    if user.email_verified:
        return EmailVerificationStatusRead(verified=True, message="Email already verified")

    try:
        token = issue_email_verification_token(db, user=user)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc

    logger.info("Email verification token for %s: %s", user.email, token)
    record_security_event(
        db,
        event_type="email_verification_sent",
        severity="info",
        user_id=user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return EmailVerificationStatusRead(verified=False, message="Verification email sent")


@router.post("/email/verify/confirm", response_model=EmailVerificationStatusRead)
def confirm_email_verification(
    payload: EmailVerificationConfirmRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> EmailVerificationStatusRead:
    try:
        user = verify_email_with_token(db, token=payload.token)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    record_security_event(
        db,
        event_type="email_verified",
        severity="info",
        user_id=user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return EmailVerificationStatusRead(verified=True, message="Email verified successfully")


@router.post("/password/reset/request", response_model=MessageRead)
def request_password_reset(
    payload: PasswordResetRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> MessageRead:
    generic = MessageRead(message="If this account exists, a reset link has been sent")
    user = get_user_by_email(db, payload.email.lower())
    if not user or user.is_deleted:
        return generic

    try:
        token = issue_password_reset_token(db, user=user)
    except ValueError as exc:
        logger.info("Password reset for %s not sent: %s", user.id, exc)
        return generic

    logger.info("Password reset token for %s: %s", user.email, token)
    record_security_event(
        db,
        event_type="password_reset_requested",
        severity="info",
        user_id=user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return generic


@router.post("/password/reset/confirm", response_model=MessageRead)
def confirm_password_reset(
    payload: PasswordResetConfirmRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> MessageRead:
    try:
        user = reset_password_with_token(db, token=payload.token, new_password=payload.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    record_security_event(
        db,
        event_type="password_reset_completed",
        severity="warning",
        user_id=user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return MessageRead(message="Password has been reset")
