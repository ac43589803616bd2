from sqlalchemy.orm import Session

from tictactoe.db import models  # noqa: F401
from tictactoe.db.base import Base
from tictactoe.db.models import User
from tictactoe.db.session import engine
from tictactoe.schemas.auth import RegisterRequest
from tictactoe.services.auth_service import create_user
from tictactoe.services.chat_service import chat_service
from tictactoe.services.matchmaking_service import matchmaking_service
from tictactoe.services.rate_limit_service import rate_limit_service

PASSWORD = "Password123"


def reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    matchmaking_service.reset()
    chat_service.reset()
    rate_limit_service.reset()


def create_player(db: Session, username: str, *, role: str | None = None) -> User:
    user = create_user(
        db,
        RegisterRequest(email=f"{username}@example.com", username=username, password=PASSWORD),
    )
    if role:
        user.role = role
        db.commit()
        db.refresh(user)
    return user
