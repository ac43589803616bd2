from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from tictactoe.api.deps import get_current_session_id, get_current_user
from tictactoe.db.models import User
from tictactoe.db.session import get_db
from tictactoe.schemas.profile import (
    EnergyRead,
    ProfileRead,
    ProfileUpdateRequest,
    SecurityEventRead,
    UserSessionRead,
)
from tictactoe.services.auth_service import (
    list_security_events,
    list_user_sessions,
    revoke_user_session,
    update_profile,
)
from tictactoe.services.energy_service import refresh_energy
from tictactoe.services.leveling import xp_progress

router = APIRouter()


def _profile_payload(db: Session, user: User) -> ProfileRead:
    energy_status = refresh_energy(user)
    db.add(user)
    db.commit()
    db.refresh(user)
    progress = xp_progress(user.xp)
    profile = ProfileRead.model_validate(user)
    profile.energy_status = EnergyRead(**vars(energy_status))
    profile.xp_into_level = progress["xp_into_level"]
    profile.xp_for_next_level = progress["xp_for_next_level"]
    return profile


@router.get("/me", response_model=ProfileRead)
def get_my_profile(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProfileRead:
    return _profile_payload(db, current_user)


@router.patch("/me", response_model=ProfileRead)
def update_my_profile(
    payload: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProfileRead:
    user = update_profile(db, current_user, payload)
    return _profile_payload(db, user)


@router.get("/security/sessions", response_model=list[UserSessionRead])
def list_my_sessions(
    current_user: User = Depends(get_current_user),
    current_session_id: str | None = Depends(get_current_session_id),
    db: Session = Depends(get_db),
) -> list[UserSessionRead]:
    sessions = list_user_sessions(db, user_id=current_user.id, limit=50)
    payload: list[UserSessionRead] = []
    for session in sessions:
        item = UserSessionRead.model_validate(session)
        item.is_current = bool(current_session_id and session.id == current_session_id)
        payload.append(item)
    return payload


@router.post("/security/sessions/{session_id}/revoke", response_model=UserSessionRead)
def revoke_my_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserSessionRead:
    session = revoke_user_session(db, user_id=current_user.id, session_id=session_id)
    if not session:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return UserSessionRead.model_validate(session)


@router.get("/security/events", response_model=list[SecurityEventRead])
def list_my_security_events(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[SecurityEventRead]:
    rows = list_security_events(db, user_id=current_user.id, limit=100)
    return [SecurityEventRead.model_validate(entry) for entry in rows]
