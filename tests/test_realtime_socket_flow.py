from datetime import datetime, timedelta, timezone
import unittest
from unittest.mock import patch

from tests.support import create_player, reset_state
from tictactoe.db.models import Game, User
from tictactoe.db.session import SessionLocal
from tictactoe.realtime import chat_events, game_events, matchmaking_events
from tictactoe.realtime import socket_server as ws
from tictactoe.services import admin_service
from tictactoe.services.game_service import game_service
from tictactoe.services.notification_service import notification_service


class RealtimeSocketFlowTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        reset_state()
        self._clear_runtime_state()
        self.db = SessionLocal()
        self.alice = create_player(self.db, "alice")
        self.bob = create_player(self.db, "bob")
        self.emitted: list[tuple[str, object, str | None]] = []
        self.sessions: dict[str, dict] = {}
        self.disconnected: list[str] = []
        self.patches = []

        async def fake_emit(event, payload=None, room=None, **_kwargs):
            self.emitted.append((event, payload, room))

        async def fake_get_session(sid):
            return self.sessions[sid]

        async def fake_save_session(sid, session):
            self.sessions[sid] = session

        async def fake_enter_room(_sid, _room):
            return None

        async def fake_leave_room(_sid, _room):
            return None

        async def fake_disconnect(sid):
            self.disconnected.append(sid)

        self.patches.append(patch.object(ws.sio, "emit", new=fake_emit))
        self.patches.append(patch.object(ws.sio, "get_session", new=fake_get_session))
        self.patches.append(patch.object(ws.sio, "save_session", new=fake_save_session))
        self.patches.append(patch.object(ws.sio, "enter_room", new=fake_enter_room))
        self.patches.append(patch.object(ws.sio, "leave_room", new=fake_leave_room))
        self.patches.append(patch.object(ws.sio, "disconnect", new=fake_disconnect))
        self.patches.append(patch.object(ws, "_ensure_tick_task", new=lambda: None))
        for patcher in self.patches:
            patcher.start()

    async def asyncTearDown(self) -> None:
        for patcher in reversed(self.patches):
            patcher.stop()
        self._clear_runtime_state()
        self.db.close()

    def _clear_runtime_state(self) -> None:
        ws._sid_to_identity.clear()
        ws._user_to_sids.clear()
        ws._reconnect_deadlines.clear()
        ws._sid_spectating.clear()
        ws._sid_client_ip.clear()
        ws._last_housekeeping_at = None

    def _attach(self, sid: str, user: User) -> None:
        ws._register_presence(sid, ws.ConnectionIdentity(user.id, user.username, user.role))
        self.sessions[sid] = {"user_id": user.id, "username": user.username, "room_id": None}

    def _events(self, name: str) -> list[tuple[str, object, str | None]]:
        return [item for item in self.emitted if item[0] == name]

    def _start_active_game(self) -> Game:
        game, _ = game_service.create_game(self.db, self.alice)
        return game_service.join_game(self.db, game.room_id, self.bob)

    async def test_join_and_play_until_game_over(self) -> None:
        game, _ = game_service.create_game(self.db, self.alice)
        self._attach("sid-a", self.alice)
        self._attach("sid-b", self.bob)

        joined = await game_events.join_game("sid-b", {"room_id": game.room_id})
        self.assertTrue(joined["ok"])
        self.assertEqual(joined["symbol"], "O")
        self.assertEqual(joined["game"]["status"], "active")
        self.assertEqual(self.sessions["sid-b"]["room_id"], game.room_id)
        player_joined = self._events("player_joined")
        self.assertEqual(player_joined[0][1]["symbol"], "O")
        self.assertEqual(player_joined[0][2], f"game:{game.room_id}")

        wrong_turn = await game_events.make_move("sid-b", {"room_id": game.room_id, "position": 0})
        self.assertEqual(wrong_turn, {"ok": False, "error": "Not your turn"})
        self.assertEqual(self._events("game_error")[-1][2], "sid-b")

        moves = [("sid-a", 0), ("sid-b", 3), ("sid-a", 1), ("sid-b", 4), ("sid-a", 2)]
        for sid, position in moves:
            result = await game_events.make_move(sid, {"room_id": game.room_id, "position": position})
            self.assertTrue(result["ok"], result)

        self.assertEqual(len(self._events("move_made")), 5)
        game_over = self._events("game_over")
        self.assertEqual(len(game_over), 1)
        payload = game_over[0][1]
        self.assertEqual(payload["reason"], "win")
        self.assertEqual(payload["winner_id"], self.alice.id)
        self.assertEqual(payload["winning_line"], [0, 1, 2])
        self.assertEqual(payload["rewards"][self.alice.id]["xp_gained"], 50)

        event, system_message, room = self._events("chat_message")[0]
        self.assertEqual(room, f"chat:{game.room_id}")
        self.assertEqual(system_message["message_type"], "system")
        self.assertEqual(system_message["message"], "alice won the game")

        pushed = {room: data["type"] for event, data, room in self._events("notification")}
        self.assertEqual(pushed, {"sid-a": "game_result", "sid-b": "game_result"})

    async def test_move_by_row_and_col(self) -> None:
        game = self._start_active_game()
        self._attach("sid-a", self.alice)
        result = await game_events.make_move("sid-a", {"room_id": game.room_id, "row": 1, "col": 2})
        self.assertTrue(result["ok"])
        self.assertEqual(result["game"]["board"][5], "X")

        bad = await game_events.make_move("sid-a", {"room_id": game.room_id, "position": "centre"})
        self.assertEqual(bad["error"], "Position must be an integer")

    async def test_disconnect_grace_then_forfeit(self) -> None:
        game = self._start_active_game()
        self._attach("sid-a", self.alice)
        self._attach("sid-b", self.bob)

        await ws.disconnect("sid-a")
        self.assertFalse(ws.is_user_online(self.alice.id))
        self.assertIn(self.alice.id, ws._reconnect_deadlines)
        notice = self._events("player_disconnected")[0][1]
        self.assertEqual(notice["grace_seconds"], ws.RECONNECT_GRACE_SECONDS)

        # still inside the grace window
        await ws._process_reconnect_deadlines()
        self.assertEqual(self._events("game_over"), [])

        ws._reconnect_deadlines[self.alice.id] = datetime.now(timezone.utc) - timedelta(seconds=1)
        await ws._process_reconnect_deadlines()
        game_over = self._events("game_over")
        self.assertEqual(len(game_over), 1)
        self.assertEqual(game_over[0][1]["reason"], "disconnect")
        self.assertEqual(game_over[0][1]["winner_id"], self.bob.id)
        self.assertNotIn(self.alice.id, ws._reconnect_deadlines)

        self.db.expire_all()
        finished = self.db.get(Game, game.id)
        self.assertEqual(finished.result, "forfeit")

    async def test_reconnect_restores_game_room(self) -> None:
        game = self._start_active_game()
        ws._reconnect_deadlines[self.alice.id] = datetime.now(timezone.utc) + timedelta(seconds=30)
        identity = ws.ConnectionIdentity(self.alice.id, "alice", "player")

        with patch.object(ws, "_load_identity_from_token", return_value=(identity, None)):
            accepted = await ws.connect("sid-a2", {"REMOTE_ADDR": "10.0.0.1"}, {"token": "token"})

        self.assertTrue(accepted)
        self.assertNotIn(self.alice.id, ws._reconnect_deadlines)
        self.assertEqual(self.sessions["sid-a2"]["room_id"], game.room_id)
        restored = self._events("session_restored")[0][1]
        self.assertEqual(restored, {"room_id": game.room_id, "recovered": True})
        self.assertEqual(self._events("player_reconnected")[0][2], f"game:{game.room_id}")
        self.db.expire_all()
        self.assertTrue(self.db.get(User, self.alice.id).is_online)

    async def test_connect_rejects_bad_token(self) -> None:
        self.assertFalse(await ws.connect("sid-x", {}, {"token": "not-a-jwt"}))
        self.assertFalse(await ws.connect("sid-y", {}, None))
        self.assertEqual(ws._sid_to_identity, {})

    async def test_find_match_pairs_two_sockets(self) -> None:
        self._attach("sid-a", self.alice)
        self._attach("sid-b", self.bob)

        first = await matchmaking_events.find_match("sid-a", {})
        self.assertTrue(first["ok"])
        self.assertFalse(first["matched"])
        self.assertEqual(first["position"], 1)
        self.assertEqual(self._events("matchmaking_queued")[0][2], "sid-a")

        second = await matchmaking_events.find_match("sid-b", {})
        self.assertTrue(second["matched"])
        room_id = second["room_id"]

        found = {room: data for event, data, room in self._events("match_found")}
        self.assertEqual(found["sid-b"]["symbol"], "X")
        self.assertEqual(found["sid-a"]["symbol"], "O")
        self.assertEqual(found["sid-a"]["opponent"]["username"], "bob")
        self.assertEqual(self.sessions["sid-a"]["room_id"], room_id)
        self.assertEqual(self.sessions["sid-b"]["room_id"], room_id)

        again = await matchmaking_events.find_match("sid-a", {})
        self.assertEqual(again["error"], "Leave your current game first")

    async def test_cancel_matchmaking(self) -> None:
        self._attach("sid-a", self.alice)
        missing = await matchmaking_events.cancel_matchmaking("sid-a")
        self.assertEqual(missing["error"], "Not in queue")

        await matchmaking_events.find_match("sid-a", {"game_mode": "blitz"})
        cancelled = await matchmaking_events.cancel_matchmaking("sid-a")
        self.assertTrue(cancelled["ok"])
        status = await matchmaking_events.matchmaking_status("sid-a")
        self.assertFalse(status["in_queue"])

    async def test_private_game_cannot_be_spectated(self) -> None:
        game, _ = game_service.create_game(self.db, self.alice, is_private=True, password="secret")
        self._attach("sid-b", self.bob)
        result = await game_events.spectate_game("sid-b", {"room_id": game.room_id})
        self.assertEqual(result["error"], "This game is private")

        public, _ = game_service.create_game(self.db, self.bob)
        watched = await game_events.spectate_game("sid-b", {"room_id": public.room_id})
        self.assertTrue(watched["ok"])
        stopped = await game_events.stop_spectating("sid-b")
        self.assertEqual(stopped["room_id"], public.room_id)

    async def test_chat_join_and_send(self) -> None:
        self._attach("sid-a", self.alice)
        joined = await chat_events.join_chat("sid-a", {})
        self.assertEqual(joined["room_id"], "global")
        self.assertEqual(joined["history"]["messages"], [])

        sent = await chat_events.send_chat_message("sid-a", {"message": "good luck"})
        self.assertTrue(sent["ok"])
        event, payload, room = self._events("chat_message")[0]
        self.assertEqual(room, "chat:global")
        self.assertEqual(payload["message"], "good luck")

        admin_service.update_system_settings(self.db, self.alice.id, {"chat_enabled": False})
        blocked = await chat_events.send_chat_message("sid-a", {"message": "anyone?"})
        self.assertEqual(blocked["error"], "Chat is disabled")

    async def test_chat_rejects_malformed_message_type(self) -> None:
        self._attach("sid-a", self.alice)
        result = await chat_events.send_chat_message("sid-a", {"message": "hi", "message_type": ["text"]})
        self.assertEqual(result, {"ok": False, "error": "Invalid message type"})
        self.assertEqual(self._events("chat_message"), [])

    async def test_typing_requires_room_access(self) -> None:
        game, _ = game_service.create_game(self.db, self.alice, is_private=True, password="secret")
        self._attach("sid-b", self.bob)

        refused = await chat_events.typing("sid-b", {"room_id": game.room_id})
        self.assertFalse(refused["ok"])
        dm_room = f"dm:{self.alice.id}:someone"
        self.assertFalse((await chat_events.stop_typing("sid-b", {"room_id": dm_room}))["ok"])
        self.assertEqual(self._events("user_typing"), [])
        self.assertEqual(self._events("user_stopped_typing"), [])

        allowed = await chat_events.typing("sid-b", {})
        self.assertTrue(allowed["ok"])
        self.assertEqual(self._events("user_typing")[0][2], "chat:global")

    async def test_housekeeping_drops_expired_notifications(self) -> None:
        notification_service.create(
            self.db,
            recipient_id=self.alice.id,
            type="system",
            title="stale",
            message="stale body",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        notification_service.create(
            self.db,
            recipient_id=self.alice.id,
            type="system",
            title="fresh",
            message="fresh body",
        )

        self.assertEqual(await ws._process_housekeeping(), 1)
        self.assertEqual(notification_service.list_for_user(self.db, self.alice.id)["total"], 1)

        notification_service.create(
            self.db,
            recipient_id=self.alice.id,
            type="system",
            title="stale again",
            message="stale body",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        # next pass waits for the interval
        self.assertEqual(await ws._process_housekeeping(), 0)

    async def test_blocking_disconnects_sockets(self) -> None:
        self._attach("sid-b", self.bob)
        await ws.notify_account_blocked(self.bob.id)
        self.assertEqual(self.disconnected, ["sid-b"])
        self.assertEqual(self._events("account_blocked")[0][2], "sid-b")


if __name__ == "__main__":
    unittest.main()
