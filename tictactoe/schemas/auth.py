from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

USERNAME_PATTERN = r"^[A-Za-z0-9_]+$"


class RegisterRequest(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=128)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_id: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(min_length=10, max_length=255)


class UserRead(BaseModel):
    id: str
    email: str
    username: str
    role: str
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    level: int = 1
    xp: int = 0
    energy: int = 0
    max_energy: int = 0
    games_played: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    win_rate: float = 0.0
    is_online: bool = False
    email_verified: bool = False
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class EmailVerificationRequest(BaseModel):
    email: EmailStr


class EmailVerificationConfirmRequest(BaseModel):
    token: str = Field(min_length=12, max_length=255)


class EmailVerificationStatusRead(BaseModel):
    verified: bool
    message: str


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirmRequest(BaseModel):
    token: str = Field(min_length=12, max_length=255)
    new_password: str = Field(min_length=8, max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


class DeleteAccountRequest(BaseModel):
    password: str = Field(min_length=1, max_length=128)


class MessageRead(BaseModel):
    message: str
    count: int | None = None
