import unittest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from tests.support import PASSWORD, reset_state
from tictactoe.core.config import get_settings
from tictactoe.db.models import User
from tictactoe.db.session import SessionLocal
from tictactoe.main import api_app
from tictactoe.realtime import socket_server as ws

API = "/api/v1"


class ApiFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_state()
        self.emit_patch = patch.object(ws.sio, "emit", new=AsyncMock())
        self.emit_patch.start()
        self.client = TestClient(api_app)

    def tearDown(self) -> None:
        self.emit_patch.stop()

    def _register(self, username: str) -> dict:
        response = self.client.post(
            f"{API}/auth/register",
            json={"email": f"{username}@example.com", "username": username, "password": PASSWORD},
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def _login(self, username: str, password: str = PASSWORD) -> dict:
        response = self.client.post(
            f"{API}/auth/login",
            json={"email": f"{username}@example.com", "password": password},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    def _player(self, username: str) -> tuple[dict, dict]:
        user = self._register(username)
        return user, self._login(username)

    def test_health(self) -> None:
        response = self.client.get(f"{API}/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_register_login_and_logout(self) -> None:
        first = self._register("alice")
        self.assertEqual(first["role"], "super")
        self.assertEqual(first["energy"], 5)
        second = self._register("bob")
        self.assertEqual(second["role"], "player")

        duplicate = self.client.post(
            f"{API}/auth/register",
            json={"email": "alice@example.com", "username": "alice2", "password": PASSWORD},
        )
        self.assertEqual(duplicate.status_code, 409)

        headers = self._login("alice")
        me = self.client.get(f"{API}/auth/me", headers=headers)
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["username"], "alice")

        self.assertEqual(self.client.post(f"{API}/auth/logout", headers=headers).status_code, 200)
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=headers).status_code, 401)

    def test_login_lockout(self) -> None:
        self._register("alice")
        for _ in range(5):
            response = self.client.post(
                f"{API}/auth/login",
                json={"email": "alice@example.com", "password": "wrong-password"},
            )
            self.assertEqual(response.status_code, 401)
        locked = self.client.post(
            f"{API}/auth/login",
            json={"email": "alice@example.com", "password": PASSWORD},
        )
        self.assertEqual(locked.status_code, 423)

    def test_room_game_to_win(self) -> None:
        alice, alice_headers = self._player("alice")
        bob, bob_headers = self._player("bob")

        created = self.client.post(f"{API}/game/rooms", json={}, headers=alice_headers)
        self.assertEqual(created.status_code, 201, created.text)
        room_id = created.json()["game"]["room_id"]

        rooms = self.client.get(f"{API}/game/rooms", headers=bob_headers).json()
        self.assertEqual([room["room_id"] for room in rooms], [room_id])

        joined = self.client.post(f"{API}/game/rooms/{room_id}/join", headers=bob_headers)
        self.assertEqual(joined.status_code, 200, joined.text)
        self.assertEqual(joined.json()["status"], "active")

        wrong_turn = self.client.post(f"{API}/game/rooms/{room_id}/move", json={"position": 0}, headers=bob_headers)
        self.assertEqual(wrong_turn.status_code, 400)
        missing_cell = self.client.post(f"{API}/game/rooms/{room_id}/move", json={}, headers=alice_headers)
        self.assertEqual(missing_cell.status_code, 422)

        moves = [
            (alice_headers, {"position": 0}),
            (bob_headers, {"row": 1, "col": 0}),
            (alice_headers, {"position": 1}),
            (bob_headers, {"position": 4}),
            (alice_headers, {"row": 0, "col": 2}),
        ]
        for headers, body in moves:
            response = self.client.post(f"{API}/game/rooms/{room_id}/move", json=body, headers=headers)
            self.assertEqual(response.status_code, 200, response.text)
        final = response.json()
        self.assertEqual(final["result"], "win")
        self.assertEqual(final["winner_symbol"], "X")
        self.assertEqual(final["rewards"][alice["id"]]["xp_gained"], 50)

        stats = self.client.get(f"{API}/game/stats", headers=alice_headers).json()
        self.assertEqual((stats["wins"], stats["xp"]), (1, 50))
        history = self.client.get(f"{API}/game/history", headers=bob_headers).json()
        self.assertEqual(history["total"], 1)

        notifications = self.client.get(f"{API}/notifications", headers=bob_headers).json()
        self.assertEqual([item["type"] for item in notifications["items"]], ["game_result"])
        self.assertEqual(notifications["unread_count"], 1)
        self.client.post(f"{API}/notifications/read-all", headers=bob_headers)
        unread = self.client.get(f"{API}/notifications/unread-count", headers=bob_headers).json()
        self.assertEqual(unread["unread_count"], 0)

        board = self.client.get(f"{API}/game/leaderboard", headers=bob_headers).json()
        self.assertEqual(board["items"][0]["user_id"], alice["id"])
        self.assertEqual(bob["role"], "player")

    def test_matchmaking_pairs_queued_players(self) -> None:
        _, alice_headers = self._player("alice")
        _, bob_headers = self._player("bob")

        first = self.client.post(f"{API}/game/matchmaking/join", json={}, headers=alice_headers)
        self.assertEqual(first.status_code, 200, first.text)
        self.assertTrue(first.json()["in_queue"])
        self.assertEqual(first.json()["position"], 1)

        again = self.client.post(f"{API}/game/matchmaking/join", json={}, headers=alice_headers)
        self.assertEqual(again.status_code, 409)

        second = self.client.post(f"{API}/game/matchmaking/join", json={}, headers=bob_headers)
        self.assertEqual(second.status_code, 200, second.text)
        self.assertFalse(second.json()["in_queue"])
        room_id = second.json()["room_id"]
        self.assertIsNotNone(room_id)

        active = self.client.get(f"{API}/game/active", headers=alice_headers).json()
        self.assertEqual([game["room_id"] for game in active], [room_id])
        self.assertEqual(self.client.post(f"{API}/game/matchmaking/leave", headers=alice_headers).status_code, 404)

    def test_friend_request_flow(self) -> None:
        _, alice_headers = self._player("alice")
        _, bob_headers = self._player("bob")

        sent = self.client.post(f"{API}/friends/requests", json={"username": "bob"}, headers=alice_headers)
        self.assertEqual(sent.status_code, 201, sent.text)
        incoming = self.client.get(f"{API}/friends/requests", headers=bob_headers).json()["incoming"]
        self.assertEqual(len(incoming), 1)

        accepted = self.client.post(f"{API}/friends/requests/{incoming[0]['id']}/accept", headers=bob_headers)
        self.assertEqual(accepted.json()["status"], "accepted")
        friends = self.client.get(f"{API}/friends", headers=alice_headers).json()
        self.assertEqual([friend["username"] for friend in friends], ["bob"])

    def test_admin_controls(self) -> None:
        _, admin_headers = self._player("alice")
        bob, bob_headers = self._player("bob")

        self.assertEqual(self.client.get(f"{API}/admin/stats", headers=bob_headers).status_code, 403)
        stats = self.client.get(f"{API}/admin/stats", headers=admin_headers)
        self.assertEqual(stats.status_code, 200, stats.text)

        maintenance = self.client.put(f"{API}/admin/settings", json={"maintenance_mode": True}, headers=admin_headers)
        self.assertTrue(maintenance.json()["maintenance_mode"])
        blocked_create = self.client.post(f"{API}/game/rooms", json={}, headers=bob_headers)
        self.assertEqual(blocked_create.status_code, 503)
        admin_create = self.client.post(f"{API}/game/rooms", json={}, headers=admin_headers)
        self.assertEqual(admin_create.status_code, 201)

        self.client.put(f"{API}/admin/settings", json={"registration_enabled": False}, headers=admin_headers)
        closed = self.client.post(
            f"{API}/auth/register",
            json={"email": "carol@example.com", "username": "carol", "password": PASSWORD},
        )
        self.assertEqual(closed.status_code, 403)

        block = self.client.patch(f"{API}/admin/users/{bob['id']}", json={"is_blocked": True}, headers=admin_headers)
        self.assertEqual(block.status_code, 200, block.text)
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=bob_headers).status_code, 403)

        audits = self.client.get(f"{API}/admin/audits", headers=admin_headers).json()
        self.assertIn("user.update", [entry["action"] for entry in audits])

    def _logged_token(self, logs) -> str:
        records = [record for record in logs.records if " token for " in record.msg]
        return records[-1].args[1]

    def test_refresh_token_rotates(self) -> None:
        self._register("alice")
        login = self.client.post(
            f"{API}/auth/login",
            json={"email": "alice@example.com", "password": PASSWORD},
        ).json()
        self.assertTrue(login["refresh_token"])
        self.assertEqual(login["expires_in"], 3600)

        refreshed = self.client.post(f"{API}/auth/refresh-token", json={"refresh_token": login["refresh_token"]})
        self.assertEqual(refreshed.status_code, 200, refreshed.text)
        body = refreshed.json()
        self.assertEqual(body["session_id"], login["session_id"])
        self.assertNotEqual(body["refresh_token"], login["refresh_token"])
        headers = {"Authorization": f"Bearer {body['access_token']}"}
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=headers).status_code, 200)

        reused = self.client.post(f"{API}/auth/refresh-token", json={"refresh_token": login["refresh_token"]})
        self.assertEqual(reused.status_code, 401)

        self.client.post(f"{API}/auth/logout", headers=headers)
        after_logout = self.client.post(f"{API}/auth/refresh-token", json={"refresh_token": body["refresh_token"]})
        self.assertEqual(after_logout.status_code, 401)

    def test_email_verification(self) -> None:
        with patch.object(get_settings(), "auth_require_email_verification", True):
            with self.assertLogs("tictactoe.api.routes.auth", level="INFO") as logs:
                self.assertFalse(self._register("alice")["email_verified"])
            token = self._logged_token(logs)
            blocked = self.client.post(
                f"{API}/auth/login",
                json={"email": "alice@example.com", "password": PASSWORD},
            )
            self.assertEqual(blocked.status_code, 403)

            bad = self.client.post(f"{API}/auth/email/verify/confirm", json={"token": "not-a-real-token"})
            self.assertEqual(bad.status_code, 400)
            confirmed = self.client.post(f"{API}/auth/email/verify/confirm", json={"token": token})
            self.assertEqual(confirmed.status_code, 200, confirmed.text)
            self.assertTrue(confirmed.json()["verified"])

            headers = self._login("alice")
            self.assertTrue(self.client.get(f"{API}/auth/me", headers=headers).json()["email_verified"])
            again = self.client.post(f"{API}/auth/email/verify/request", json={"email": "alice@example.com"})
            self.assertEqual(again.json()["message"], "Email already verified")

    def test_password_reset(self) -> None:
        self._register("alice")
        old_headers = self._login("alice")
        with self.assertLogs("tictactoe.api.routes.auth", level="INFO") as logs:
            first = self.client.post(f"{API}/auth/password/reset/request", json={"email": "alice@example.com"})
        token = self._logged_token(logs)

        # a second request inside the cooldown looks the same as an unknown email
        cooldown = self.client.post(f"{API}/auth/password/reset/request", json={"email": "alice@example.com"})
        unknown = self.client.post(f"{API}/auth/password/reset/request", json={"email": "nobody@example.com"})
        self.assertEqual([first.status_code, cooldown.status_code, unknown.status_code], [200, 200, 200])
        self.assertEqual(cooldown.json(), unknown.json())

        reset = self.client.post(
            f"{API}/auth/password/reset/confirm",
            json={"token": token, "new_password": "NewPassword456"},
        )
        self.assertEqual(reset.status_code, 200, reset.text)
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=old_headers).status_code, 401)
        reused = self.client.post(
            f"{API}/auth/password/reset/confirm",
            json={"token": token, "new_password": "OtherPassword789"},
        )
        self.assertEqual(reused.status_code, 400)

        stale = self.client.post(f"{API}/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        self.assertEqual(stale.status_code, 401)
        self._login("alice", "NewPassword456")

    def test_change_password_revokes_other_sessions(self) -> None:
        self._register("alice")
        current = self._login("alice")
        other = self._login("alice")

        wrong = self.client.post(
            f"{API}/auth/change-password",
            json={"current_password": "not-my-password", "new_password": "NewPassword456"},
            headers=current,
        )
        self.assertEqual(wrong.status_code, 403)

        changed = self.client.post(
            f"{API}/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "NewPassword456"},
            headers=current,
        )
        self.assertEqual(changed.status_code, 200, changed.text)
        self.assertEqual(changed.json()["count"], 1)
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=current).status_code, 200)
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=other).status_code, 401)

    def test_delete_account_anonymises(self) -> None:
        alice = self._register("alice")
        headers = self._login("alice")
        refused = self.client.request("DELETE", f"{API}/auth/me", json={"password": "wrong"}, headers=headers)
        self.assertEqual(refused.status_code, 403)

        deleted = self.client.request("DELETE", f"{API}/auth/me", json={"password": PASSWORD}, headers=headers)
        self.assertEqual(deleted.status_code, 200, deleted.text)
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=headers).status_code, 401)
        login = self.client.post(f"{API}/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        self.assertEqual(login.status_code, 401)

        db = SessionLocal()
        try:
            user = db.get(User, alice["id"])
            self.assertTrue(user.is_deleted)
            self.assertEqual(user.username, f"deleted_{alice['id']}")
            self.assertTrue(user.email.endswith("@deleted.invalid"))
            self.assertIsNone(user.hashed_password)
        finally:
            db.close()

        # the old email and username are free again
        self._register("alice")

    def test_rate_limit_middleware(self) -> None:
        settings = get_settings()
        with patch.object(settings, "rate_limit_enabled", True), patch.object(settings, "rate_limit_global_limit", 2):
            first = self.client.get(f"{API}/notifications")
            second = self.client.get(f"{API}/notifications")
            blocked = self.client.get(f"{API}/notifications")
            health = self.client.get(f"{API}/health")

        self.assertEqual(first.headers["X-RateLimit-Limit"], "2")
        self.assertEqual(first.headers["X-RateLimit-Remaining"], "1")
        self.assertEqual(second.headers["X-RateLimit-Remaining"], "0")
        self.assertEqual(blocked.status_code, 429)
        self.assertEqual(blocked.json()["detail"], "Rate limit exceeded")
        self.assertGreaterEqual(int(blocked.headers["Retry-After"]), 1)
        self.assertEqual(health.status_code, 200)
        self.assertNotIn("X-RateLimit-Limit", health.headers)

    def test_hosting_a_room_takes_player_out_of_queue(self) -> None:
        _, alice_headers = self._player("alice")
        _, bob_headers = self._player("bob")

        queued = self.client.post(f"{API}/game/matchmaking/join", json={}, headers=alice_headers)
        self.assertTrue(queued.json()["in_queue"])
        created = self.client.post(f"{API}/game/rooms", json={}, headers=alice_headers)
        self.assertEqual(created.status_code, 201, created.text)
        room_id = created.json()["game"]["room_id"]

        status_after = self.client.get(f"{API}/game/matchmaking/status", headers=alice_headers).json()
        self.assertFalse(status_after["in_queue"])
        bob_queued = self.client.post(f"{API}/game/matchmaking/join", json={}, headers=bob_headers)
        self.assertTrue(bob_queued.json()["in_queue"])

        active = self.client.get(f"{API}/game/active", headers=alice_headers).json()
        self.assertEqual([game["room_id"] for game in active], [room_id])

    def test_game_cap_still_returns_existing_room(self) -> None:
        _, alice_headers = self._player("alice")
        _, bob_headers = self._player("bob")
        room_id = self.client.post(f"{API}/game/rooms", json={}, headers=alice_headers).json()["game"]["room_id"]
        self.client.put(f"{API}/admin/settings", json={"max_concurrent_games": 1}, headers=alice_headers)

        again = self.client.post(f"{API}/game/rooms", json={}, headers=alice_headers)
        self.assertEqual(again.status_code, 201, again.text)
        self.assertFalse(again.json()["created"])
        self.assertEqual(again.json()["game"]["room_id"], room_id)

        capped = self.client.post(f"{API}/game/rooms", json={}, headers=bob_headers)
        self.assertEqual(capped.status_code, 503)


if __name__ == "__main__":
    unittest.main()
