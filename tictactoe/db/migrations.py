import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

# columns added after the first release; name -> DDL fragment
_USER_COLUMNS: dict[str, str] = {
    "level": "INTEGER NOT NULL DEFAULT 1",
    "xp": "INTEGER NOT NULL DEFAULT 0",
    "energy": "INTEGER NOT NULL DEFAULT 5",
    "max_energy": "INTEGER NOT NULL DEFAULT 5",
    "energy_updated_at": "DATETIME",
    "games_played": "INTEGER NOT NULL DEFAULT 0",
    "wins": "INTEGER NOT NULL DEFAULT 0",
    "losses": "INTEGER NOT NULL DEFAULT 0",
    "draws": "INTEGER NOT NULL DEFAULT 0",
    "win_rate": "FLOAT NOT NULL DEFAULT 0.0",
    "is_online": "BOOLEAN NOT NULL DEFAULT 0",
    "last_seen_at": "DATETIME",
    "is_blocked": "BOOLEAN NOT NULL DEFAULT 0",
    "is_deleted": "BOOLEAN NOT NULL DEFAULT 0",
    "deleted_at": "DATETIME",
    "password_changed_at": "DATETIME",
}

_GAME_COLUMNS: dict[str, str] = {
    "winning_line_json": "VARCHAR(40)",
    "stats_applied": "BOOLEAN NOT NULL DEFAULT 0",
}

_SESSION_COLUMNS: dict[str, str] = {
    "refresh_token_hash": "VARCHAR(64)",
}


def _add_missing_columns(connection, table: str, columns: dict[str, str], existing: set[str]) -> None:
    for name, ddl in columns.items():
        if name in existing:
            continue
        logger.info("Adding column %s.%s", table, name)
        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))


def ensure_runtime_schema(engine: Engine) -> None:
    # Lightweight runtime migration for local dev SQLite databases.
    with engine.begin() as connection:
        inspector = inspect(connection)
        tables = set(inspector.get_table_names())

        if "users" in tables:
            user_columns = {column["name"] for column in inspector.get_columns("users")}
            _add_missing_columns(connection, "users", _USER_COLUMNS, user_columns)
            connection.execute(text("CREATE INDEX IF NOT EXISTS ix_users_level ON users(level)"))
            connection.execute(text("CREATE INDEX IF NOT EXISTS ix_users_wins ON users(wins)"))

        if "games" in tables:
            game_columns = {column["name"] for column in inspector.get_columns("games")}
            _add_missing_columns(connection, "games", _GAME_COLUMNS, game_columns)

        if "user_sessions" in tables:
            session_columns = {column["name"] for column in inspector.get_columns("user_sessions")}
            _add_missing_columns(connection, "user_sessions", _SESSION_COLUMNS, session_columns)
