from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Tic-Tac-Toe Arena API"
    debug: bool = True
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    database_url: str = "sqlite:///./tictactoe.db"
    redis_url: str = "redis://localhost:6379/0"

    secret_key: str = "change-this-secret-key"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    auth_require_email_verification: bool = False
    auth_max_failed_login_attempts: int = 5
    auth_login_lockout_minutes: int = 15
    email_verification_token_ttl_minutes: int = 60 * 24
    email_verification_resend_cooldown_seconds: int = 60
    password_reset_token_ttl_minutes: int = 60
    password_reset_cooldown_seconds: int = 60
    security_track_sessions: bool = True
    session_touch_interval_seconds: int = 60

    rate_limit_enabled: bool = True
    rate_limit_global_limit: int = 100
    rate_limit_global_window_seconds: int = 60 * 15
    rate_limit_auth_limit: int = 20
    rate_limit_auth_window_seconds: int = 60 * 15
    rate_limit_game_limit: int = 120
    rate_limit_game_window_seconds: int = 60
    rate_limit_chat_limit: int = 30
    rate_limit_chat_window_seconds: int = 60
    rate_limit_sensitive_limit: int = 60
    rate_limit_sensitive_window_seconds: int = 60
    websocket_connect_limit: int = 20
    websocket_connect_window_seconds: int = 60
    websocket_event_limit: int = 120
    websocket_event_window_seconds: int = 60
    websocket_allow_query_token: bool = False

    energy_max: int = 5
    energy_regen_minutes: int = 90
    energy_per_game: int = 1

    leveling_base_xp: int = 100
    leveling_multiplier: float = 1.5
    leveling_max_level: int = 100
    xp_per_win: int = 50
    xp_per_draw: int = 20
    xp_per_loss: int = 10

    matchmaking_level_tolerance: int = 2
    matchmaking_max_wait_seconds: int = 30
    matchmaking_entry_max_age_seconds: int = 300
    matchmaking_actions_per_minute: int = 10
    matchmaking_tick_seconds: float = 2.0
    housekeeping_interval_seconds: int = 300

    game_reconnect_grace_seconds: int = 30

    chat_max_message_length: int = 500
    chat_history_page_size: int = 50
    chat_global_room_id: str = "global"

    notification_default_ttl_days: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
