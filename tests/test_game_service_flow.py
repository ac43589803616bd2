import unittest

from sqlalchemy import func, select

from tests.support import create_player, reset_state
from tictactoe.db.models import Notification
from tictactoe.db.session import SessionLocal
from tictactoe.services.energy_service import set_energy
from tictactoe.services.game_service import game_service
from tictactoe.services.matchmaking_service import MatchResult, QueueEntry, matchmaking_service


class GameServiceFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_state()
        self.db = SessionLocal()
        self.alice = create_player(self.db, "alice")
        self.bob = create_player(self.db, "bob")

    def tearDown(self) -> None:
        self.db.close()

    def _start_game(self):
        game, created = game_service.create_game(self.db, self.alice)
        self.assertTrue(created)
        joined = game_service.join_game(self.db, game.room_id, self.bob)
        return joined

    def _play(self, room_id: str, positions: list[int]) -> dict:
        players = [self.alice, self.bob]
        result = None
        for index, position in enumerate(positions):
            result = game_service.make_move(self.db, room_id, players[index % 2], position)
        return result

    def test_create_reuses_open_game(self) -> None:
        game, created = game_service.create_game(self.db, self.alice)
        again, created_again = game_service.create_game(self.db, self.alice)
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(game.id, again.id)
        self.assertEqual(game.status, "waiting")

    def test_join_starts_game_and_spends_energy(self) -> None:
        game = self._start_game()
        self.assertEqual(game.status, "active")
        self.assertEqual(game.player_o_id, self.bob.id)
        self.assertEqual(self.alice.energy, 4)
        self.assertEqual(self.bob.energy, 4)

        payload = game_service.serialize_game(self.db, game)
        self.assertEqual(payload["board"], [""] * 9)
        self.assertEqual(payload["current_player_id"], self.alice.id)
        self.assertEqual(payload["player_o"]["username"], "bob")

    def test_join_errors(self) -> None:
        game = self._start_game()
        carol = create_player(self.db, "carol")
        with self.assertRaisesRegex(ValueError, "Already joined"):
            game_service.join_game(self.db, game.room_id, self.bob)
        with self.assertRaisesRegex(ValueError, "Game is full"):
            game_service.join_game(self.db, game.room_id, carol)
        self.assertIsNone(game_service.join_game(self.db, "room_missing", carol))

    def test_private_game_password(self) -> None:
        carol = create_player(self.db, "carol")
        game, _ = game_service.create_game(self.db, carol, is_private=True, password="secret")
        with self.assertRaises(PermissionError):
            game_service.join_game(self.db, game.room_id, self.bob, password="wrong")
        joined = game_service.join_game(self.db, game.room_id, self.bob, password="secret")
        self.assertEqual(joined.status, "active")

    def test_move_order_is_enforced(self) -> None:
        game = self._start_game()
        with self.assertRaisesRegex(ValueError, "Not your turn"):
            game_service.make_move(self.db, game.room_id, self.bob, 0)
        game_service.make_move(self.db, game.room_id, self.alice, 4)
        with self.assertRaisesRegex(ValueError, "already occupied"):
            game_service.make_move(self.db, game.room_id, self.bob, 4)

        outsider = create_player(self.db, "carol")
        with self.assertRaises(PermissionError):
            game_service.make_move(self.db, game.room_id, outsider, 0)

    def test_win_awards_xp_and_notifies(self) -> None:
        game = self._start_game()
        result = self._play(game.room_id, [0, 3, 1, 4, 2])

        finished = result["game"]
        self.assertEqual(finished.status, "completed")
        self.assertEqual(finished.result, "win")
        self.assertEqual(finished.winner_id, self.alice.id)
        self.assertEqual(game_service.serialize_game(self.db, finished)["winning_line"], [0, 1, 2])

        self.assertEqual(result["rewards"][self.alice.id]["xp_gained"], 50)
        self.assertEqual(result["rewards"][self.bob.id]["outcome"], "loss")
        self.db.refresh(self.alice)
        self.db.refresh(self.bob)
        self.assertEqual(self.alice.xp, 50)
        self.assertEqual(self.alice.wins, 1)
        self.assertEqual(self.alice.win_rate, 100.0)
        self.assertEqual(self.bob.xp, 10)
        self.assertEqual(self.bob.losses, 1)

        notifications = self.db.scalar(
            select(func.count(Notification.id)).where(Notification.type == "game_result")
        )
        self.assertEqual(notifications, 2)

        with self.assertRaisesRegex(ValueError, "not active"):
            game_service.make_move(self.db, game.room_id, self.bob, 8)

    def test_draw_gives_both_players_draw_xp(self) -> None:
        game = self._start_game()
        result = self._play(game.room_id, [0, 1, 2, 4, 3, 5, 7, 6, 8])
        self.assertEqual(result["game"].result, "draw")
        self.assertIsNone(result["game"].winner_id)
        self.db.refresh(self.alice)
        self.db.refresh(self.bob)
        self.assertEqual((self.alice.xp, self.bob.xp), (20, 20))
        self.assertEqual((self.alice.draws, self.bob.draws), (1, 1))

    def test_forfeit(self) -> None:
        game = self._start_game()
        game_service.make_move(self.db, game.room_id, self.alice, 0)
        finished, rewards = game_service.forfeit(self.db, game.room_id, self.alice)
        self.assertEqual(finished.result, "forfeit")
        self.assertEqual(finished.winner_id, self.bob.id)
        self.assertEqual(rewards[self.alice.id]["xp_gained"], 0)
        self.assertEqual(rewards[self.bob.id]["xp_gained"], 50)
        with self.assertRaisesRegex(ValueError, "not active"):
            game_service.forfeit(self.db, game.room_id, self.alice)

    def test_leaving_waiting_game_abandons_it(self) -> None:
        game, _ = game_service.create_game(self.db, self.alice)
        left, rewards = game_service.leave_game(self.db, game.room_id, self.alice)
        self.assertEqual(left.status, "abandoned")
        self.assertEqual(rewards, {})
        self.assertIsNone(game_service.open_game_for_user(self.db, self.alice.id))

    def test_admin_end_skips_stats(self) -> None:
        game = self._start_game()
        ended = game_service.end_game(self.db, game.room_id)
        self.assertEqual(ended.status, "abandoned")
        self.db.refresh(self.alice)
        self.assertEqual(self.alice.games_played, 0)
        with self.assertRaisesRegex(ValueError, "already finished"):
            game_service.end_game(self.db, game.room_id)

    def test_creating_without_energy_fails(self) -> None:
        set_energy(self.alice, 0)
        self.db.commit()
        with self.assertRaisesRegex(ValueError, "Insufficient energy"):
            game_service.create_game(self.db, self.alice)

    def test_matched_game_starts_immediately(self) -> None:
        match = MatchResult(
            player1=QueueEntry(user_id=self.alice.id, username="alice", level=1),
            player2=QueueEntry(user_id=self.bob.id, username="bob", level=1),
            room_id="room_matched",
            quality=0.8,
        )
        game = game_service.create_matched_game(self.db, match)
        self.assertEqual(game.room_id, "room_matched")
        self.assertEqual(game.status, "active")
        self.assertEqual(game.player_x_id, self.alice.id)
        self.assertEqual(game.player_o_id, self.bob.id)

    def test_matched_game_refuses_player_with_open_game(self) -> None:
        game_service.create_game(self.db, self.alice)
        match = MatchResult(
            player1=QueueEntry(user_id=self.bob.id, username="bob", level=1),
            player2=QueueEntry(user_id=self.alice.id, username="alice", level=1),
            room_id="room_second",
            quality=0.8,
        )
        with self.assertRaisesRegex(ValueError, "alice is already in a game"):
            game_service.create_matched_game(self.db, match)
        self.db.rollback()
        self.assertIsNone(game_service.get_game(self.db, "room_second"))
        self.assertEqual(self.bob.energy, 5)

    def test_hosting_or_joining_leaves_the_queue(self) -> None:
        matchmaking_service.join(self.alice.id, "alice", 1)
        matchmaking_service.join(self.bob.id, "bob", 1)
        game, _ = game_service.create_game(self.db, self.alice)
        self.assertFalse(matchmaking_service.is_queued(self.alice.id))
        self.assertTrue(matchmaking_service.is_queued(self.bob.id))

        game_service.join_game(self.db, game.room_id, self.bob)
        self.assertFalse(matchmaking_service.is_queued(self.bob.id))
        self.assertEqual(matchmaking_service.run_pairing(), [])

    def test_leaderboard_and_history(self) -> None:
        game = self._start_game()
        self._play(game.room_id, [0, 3, 1, 4, 2])

        board = game_service.leaderboard(self.db)
        self.assertEqual(board["items"][0]["username"], "alice")
        self.assertEqual(board["items"][0]["rank"], 1)

        history = game_service.history(self.db, self.bob.id)
        self.assertEqual(history["total"], 1)
        self.assertFalse(history["has_more"])
        self.assertEqual(history["items"][0]["room_id"], game.room_id)

        stats = game_service.user_stats(self.db, self.alice)
        self.assertEqual(stats["wins"], 1)
        self.assertEqual(stats["level"], 1)
        self.assertEqual(stats["active_games"], 0)


if __name__ == "__main__":
    unittest.main()
