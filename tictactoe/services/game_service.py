from datetime import datetime, timezone
import json
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from tictactoe.core.security import hash_password, verify_password
from tictactoe.db.models import Game, User
from tictactoe.services import board as board_rules
from tictactoe.services.energy_service import consume_energy, ensure_can_play
from tictactoe.services.leveling import add_xp, xp_for_outcome, xp_progress
from tictactoe.services.matchmaking_service import GAME_MODES, MatchResult, generate_room_id, matchmaking_service
from tictactoe.services.notification_service import notification_service

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("waiting", "active")
FINISHED_STATUSES = ("completed", "abandoned")
LEADERBOARD_SORTS = {
    "wins": User.wins,
    "win_rate": User.win_rate,
    "level": User.level,
    "games": User.games_played,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _player_brief(user: User | None) -> dict | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "level": user.level,
        "is_online": user.is_online,
    }


def game_board(game: Game) -> list[str]:
    return json.loads(game.board_json or "[]") or board_rules.empty_board()


def game_moves(game: Game) -> list[dict]:
    return json.loads(game.moves_json or "[]")


def player_symbol(game: Game, user_id: str) -> str | None:
    if game.player_x_id == user_id:
        return "X"
    if game.player_o_id == user_id:
        return "O"
    return None


def opponent_id(game: Game, user_id: str) -> str | None:
    if game.player_x_id == user_id:
        return game.player_o_id
    if game.player_o_id == user_id:
        return game.player_x_id
    return None


class GameService:
    def serialize_game(self, db: Session, game: Game) -> dict:
        player_ids = [pid for pid in (game.player_x_id, game.player_o_id) if pid]
        users = {user.id: user for user in db.scalars(select(User).where(User.id.in_(player_ids))).all()}
        winning_line = json.loads(game.winning_line_json) if game.winning_line_json else None
        return {
            "id": game.id,
            "room_id": game.room_id,
            "game_mode": game.game_mode,
            "is_private": game.is_private,
            "has_password": bool(game.password_hash),
            "creator_id": game.creator_id,
            "player_x": _player_brief(users.get(game.player_x_id)),
            "player_o": _player_brief(users.get(game.player_o_id)) if game.player_o_id else None,
            "board": game_board(game),
            "current_symbol": game.current_symbol,
            "current_player_id": self._current_player_id(game),
            "status": game.status,
            "result": game.result,
            "winner_id": game.winner_id,
            "winning_line": winning_line,
            "moves": game_moves(game),
            "created_at": _iso(game.created_at),
            "started_at": _iso(game.started_at),
            "ended_at": _iso(game.ended_at),
        }

    def _current_player_id(self, game: Game) -> str | None:
        if game.status != "active":
            return None
        return game.player_x_id if game.current_symbol == "X" else game.player_o_id

    def get_game(self, db: Session, room_id: str) -> Game | None:
        return db.scalar(select(Game).where(or_(Game.room_id == room_id, Game.id == room_id)))

    def open_game_for_user(self, db: Session, user_id: str) -> Game | None:
        return db.scalar(
            select(Game)
            .where(Game.status.in_(OPEN_STATUSES))
            .where(or_(Game.player_x_id == user_id, Game.player_o_id == user_id))
            .order_by(Game.created_at.desc())
        )

    def active_game_for_user(self, db: Session, user_id: str) -> Game | None:
        return db.scalar(
            select(Game)
            .where(Game.status == "active")
            .where(or_(Game.player_x_id == user_id, Game.player_o_id == user_id))
            .order_by(Game.started_at.desc())
        )

    def create_game(
        self,
        db: Session,
        creator: User,
        *,
        game_mode: str = "classic",
        is_private: bool = False,
        password: str | None = None,
    ) -> tuple[Game, bool]:
        """Returns (game, created); an open game of the creator is returned as is."""
        existing = self.open_game_for_user(db, creator.id)
        if existing:
            return existing, False
        if game_mode not in GAME_MODES:
            raise ValueError(f"Unknown game mode: {game_mode}")
        ensure_can_play(creator)

        game = Game(
            room_id=generate_room_id(),
            game_mode=game_mode,
            is_private=is_private,
            password_hash=hash_password(password) if password else None,
            creator_id=creator.id,
            player_x_id=creator.id,
            board_json=json.dumps(board_rules.empty_board()),
            current_symbol="X",
            status="waiting",
        )
        db.add(game)
        db.commit()
        db.refresh(game)
        if matchmaking_service.leave(creator.id):
            logger.info("%s left the matchmaking queue to host %s", creator.username, game.room_id)
        logger.info("Game %s created by %s", game.room_id, creator.username)
        return game, True

    def list_available(
        self,
        db: Session,
        *,
        exclude_user_id: str | None = None,
        game_mode: str | None = None,
        limit: int = 20,
    ) -> list[Game]:
        stmt = (
            select(Game)
            .where(Game.status == "waiting")
            .where(Game.is_private.is_(False))
            .where(Game.player_o_id.is_(None))
        )
        if exclude_user_id:
            stmt = stmt.where(Game.player_x_id != exclude_user_id)
        if game_mode:
            stmt = stmt.where(Game.game_mode == game_mode)
        return db.scalars(stmt.order_by(Game.created_at.desc()).limit(max(1, min(limit, 100)))).all()

    def _start(self, db: Session, game: Game, player_x: User, player_o: User) -> None:
        now = _utc_now()
        for player in (player_x, player_o):
            ensure_can_play(player, now)
        for player in (player_x, player_o):
            consume_energy(player, now=now)
        game.player_o_id = player_o.id
        game.status = "active"
        game.current_symbol = "X"
        game.started_at = now
        game.updated_at = now

    def join_game(self, db: Session, room_id: str, user: User, password: str | None = None) -> Game | None:
        game = self.get_game(db, room_id)
        if game is None:
            return None
        if player_symbol(game, user.id):
            raise ValueError("Already joined this game")
        if game.status != "waiting" or game.player_o_id:
            raise ValueError("Game is full")
        if game.password_hash and not verify_password(password or "", game.password_hash):
            raise PermissionError("Invalid room password")
        current = self.open_game_for_user(db, user.id)
        if current is not None:
            raise ValueError("Leave your current game first")

        creator = db.get(User, game.player_x_id)
        if creator is None:
            raise ValueError("Game creator no longer exists")
        try:
            ensure_can_play(creator)
        except ValueError:
            raise ValueError("Opponent has insufficient energy") from None
        self._start(db, game, creator, user)
        db.commit()
        db.refresh(game)
        matchmaking_service.leave(user.id)
        logger.info("%s joined game %s", user.username, game.room_id)
        return game

    def create_matched_game(self, db: Session, match: MatchResult) -> Game:
        player_x = db.get(User, match.player1.user_id)
        player_o = db.get(User, match.player2.user_id)
        if player_x is None or player_o is None:
            raise ValueError("Matched player no longer exists")
        for player in (player_x, player_o):
            if self.open_game_for_user(db, player.id) is not None:
                raise ValueError(f"{player.username} is already in a game")
        game = Game(
            room_id=match.room_id,
            game_mode=match.player1.game_mode,
            is_private=False,
            creator_id=player_x.id,
            player_x_id=player_x.id,
            board_json=json.dumps(board_rules.empty_board()),
            current_symbol="X",
            status="waiting",
        )
        self._start(db, game, player_x, player_o)
        db.add(game)
        db.commit()
        db.refresh(game)
        logger.info("Matched game %s: %s vs %s", game.room_id, player_x.username, player_o.username)
        return game

    def make_move(self, db: Session, room_id: str, user: User, position: int) -> dict | None:
        game = self.get_game(db, room_id)
        if game is None:
            return None
        if game.status != "active":
            raise ValueError("Game is not active")
        symbol = player_symbol(game, user.id)
        if symbol is None:
            raise PermissionError("Not a player in this game")

        current_board = game_board(game)
        moves = game_moves(game)
        problems = board_rules.check_consistency(current_board, moves, game.current_symbol, game.status)
        if problems:
            logger.error("Game %s is inconsistent: %s", game.room_id, "; ".join(problems))
            raise ValueError("Game state is inconsistent")
        board_rules.validate_move(current_board, position, symbol, game.current_symbol)
        updated_board, outcome = board_rules.apply_move(current_board, position, symbol)

        now = _utc_now()
        moves.append({"user_id": user.id, "position": position, "symbol": symbol, "timestamp": now.isoformat()})
        game.board_json = json.dumps(updated_board)
        game.moves_json = json.dumps(moves)
        game.updated_at = now

        rewards: dict[str, dict] = {}
        if outcome.result == "win":
            game.winning_line_json = json.dumps(list(outcome.winning_line))
            rewards = self._complete(db, game, result="win", winner_id=user.id)
        elif outcome.result == "draw":
            rewards = self._complete(db, game, result="draw", winner_id=None)
        else:
            game.current_symbol = board_rules.next_symbol(symbol)
        db.commit()
        db.refresh(game)
        return {
            "game": game,
            "position": position,
            "symbol": symbol,
            "outcome": outcome,
            "rewards": rewards,
        }

    def forfeit(self, db: Session, room_id: str, user: User) -> tuple[Game, dict] | None:
        game = self.get_game(db, room_id)
        if game is None:
            return None
        if player_symbol(game, user.id) is None:
            raise PermissionError("Not a player in this game")
        if game.status != "active":
            raise ValueError("Game is not active")
        rewards = self._complete(
            db,
            game,
            result="forfeit",
            winner_id=opponent_id(game, user.id),
            forfeiter_id=user.id,
        )
        db.commit()
        db.refresh(game)
        logger.info("%s forfeited game %s", user.username, game.room_id)
        return game, rewards

    def leave_game(self, db: Session, room_id: str, user: User) -> tuple[Game, dict] | None:
        game = self.get_game(db, room_id)
        if game is None:
            return None
        if player_symbol(game, user.id) is None:
            raise PermissionError("Not a player in this game")
        if game.status == "active":
            return self.forfeit(db, room_id, user)
        if game.status == "waiting":
            self._abandon(game)
            db.commit()
            db.refresh(game)
        return game, {}

    def end_game(self, db: Session, room_id: str) -> Game | None:
        """Administrative stop: the game is abandoned without stats."""
        game = self.get_game(db, room_id)
        if game is None:
            return None
        if game.status in FINISHED_STATUSES:
            raise ValueError("Game already finished")
        self._abandon(game)
        db.commit()
        db.refresh(game)
        return game

    def _abandon(self, game: Game) -> None:
        now = _utc_now()
        game.status = "abandoned"
        game.result = "abandoned"
        game.ended_at = now
        game.updated_at = now
        game.stats_applied = True

    def _complete(
        self,
        db: Session,
        game: Game,
        *,
        result: str,
        winner_id: str | None,
        forfeiter_id: str | None = None,
    ) -> dict[str, dict]:
        now = _utc_now()
        game.status = "completed"
        game.result = result
        game.winner_id = winner_id
        game.ended_at = now
        game.updated_at = now
        if game.stats_applied:
            return {}
        game.stats_applied = True

        rewards: dict[str, dict] = {}
        for user_id in (game.player_x_id, game.player_o_id):
            user = db.get(User, user_id) if user_id else None
            if user is None:
                continue
            if result == "draw":
                outcome = "draw"
            elif user_id == winner_id:
                outcome = "win"
            elif user_id == forfeiter_id:
                outcome = "forfeit"
            else:
                outcome = "loss"
            rewards[user_id] = self._apply_stats(user, outcome)
            notification_service.add(
                db,
                recipient_id=user_id,
                type="game_result",
                title=self._result_title(outcome),
                message=f"Game {game.room_id} finished: {result}",
                data={"room_id": game.room_id, "outcome": outcome, **rewards[user_id]},
            )
        return rewards

    def _result_title(self, outcome: str) -> str:
        return {
            "win": "Victory!",
            "draw": "Draw",
            "loss": "Defeat",
            "forfeit": "Game forfeited",
        }[outcome]

    def _apply_stats(self, user: User, outcome: str) -> dict:
        previous_level = user.level
        user.games_played = (user.games_played or 0) + 1
        if outcome == "win":
            user.wins = (user.wins or 0) + 1
        elif outcome == "draw":
            user.draws = (user.draws or 0) + 1
        else:
            user.losses = (user.losses or 0) + 1
        user.win_rate = float(round(user.wins / user.games_played * 100)) if user.games_played else 0.0

        gained = xp_for_outcome(outcome)
        if gained:
            add_xp(user, gained)
        return {
            "outcome": outcome,
            "xp_gained": gained,
            "level": user.level,
            "leveled_up": user.level > previous_level,
        }

    def active_games_for_user(self, db: Session, user_id: str) -> list[Game]:
        return db.scalars(
            select(Game)
            .where(Game.status.in_(OPEN_STATUSES))
            .where(or_(Game.player_x_id == user_id, Game.player_o_id == user_id))
            .order_by(Game.created_at.desc())
        ).all()

    def history(self, db: Session, user_id: str, *, page: int = 1, limit: int = 20) -> dict:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        base = (
            select(Game)
            .where(Game.status.in_(FINISHED_STATUSES))
            .where(or_(Game.player_x_id == user_id, Game.player_o_id == user_id))
        )
        total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
        games = db.scalars(
            base.order_by(Game.ended_at.desc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return {
            "items": [self.serialize_game(db, game) for game in games],
            "total": total,
            "page": page,
            "limit": limit,
            "has_more": page * limit < total,
        }

    def list_games(self, db: Session, *, status: str | None = None, page: int = 1, limit: int = 50) -> dict:
        page = max(1, page)
        limit = max(1, min(limit, 200))
        base = select(Game)
        if status:
            base = base.where(Game.status == status)
        total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
        games = db.scalars(
            base.order_by(Game.created_at.desc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return {
            "items": [self.serialize_game(db, game) for game in games],
            "total": total,
            "page": page,
            "limit": limit,
            "has_more": page * limit < total,
        }

    def user_stats(self, db: Session, user: User) -> dict:
        active = len(self.active_games_for_user(db, user.id))
        return {
            "user_id": user.id,
            "username": user.username,
            "games_played": user.games_played,
            "wins": user.wins,
            "losses": user.losses,
            "draws": user.draws,
            "win_rate": user.win_rate,
            "active_games": active,
            **xp_progress(user.xp),
        }

    def leaderboard(
        self,
        db: Session,
        *,
        sort_by: str = "wins",
        min_games: int = 0,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        column = LEADERBOARD_SORTS.get(sort_by.strip().lower(), User.wins)
        page = max(1, page)
        limit = max(1, min(limit, 100))
        base = (
            select(User)
            .where(User.is_deleted.is_(False))
            .where(User.is_blocked.is_(False))
            .where(User.games_played >= max(0, min_games))
        )
        total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
        users = db.scalars(
            base.order_by(column.desc(), User.wins.desc(), User.username.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        offset = (page - 1) * limit
        return {
            "items": [
                {
                    "rank": offset + index,
                    "user_id": user.id,
                    "username": user.username,
                    "display_name": user.display_name,
                    "avatar_url": user.avatar_url,
                    "level": user.level,
                    "games_played": user.games_played,
                    "wins": user.wins,
                    "losses": user.losses,
                    "draws": user.draws,
                    "win_rate": user.win_rate,
                }
                for index, user in enumerate(users, start=1)
            ],
            "total": total,
            "page": page,
            "limit": limit,
            "sort_by": sort_by if sort_by in LEADERBOARD_SORTS else "wins",
        }


game_service = GameService()
