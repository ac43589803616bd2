from datetime import datetime, timedelta, timezone
import unittest

from tests.support import create_player, reset_state
from tictactoe.db.session import SessionLocal
from tictactoe.services.game_service import game_service
from tictactoe.services.notification_service import notification_service
from tictactoe.services.social_service import social_service


class FriendRequestTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_state()
        self.db = SessionLocal()
        self.alice = create_player(self.db, "alice")
        self.bob = create_player(self.db, "bob")
        self.carol = create_player(self.db, "carol")

    def tearDown(self) -> None:
        self.db.close()

    def test_request_accept_and_remove(self) -> None:
        request, notification = social_service.send_friend_request(self.db, self.alice, "bob", "gg?")
        self.assertEqual(request["status"], "pending")
        self.assertEqual(request["recipient_username"], "bob")
        self.assertEqual(notification.recipient_id, self.bob.id)
        self.assertEqual(notification.type, "friend_request")

        with self.assertRaisesRegex(ValueError, "already sent"):
            social_service.send_friend_request(self.db, self.alice, "bob")
        with self.assertRaises(PermissionError):
            social_service.respond_to_friend_request(self.db, request["id"], self.alice.id, accept=True)

        accepted, accepted_note = social_service.respond_to_friend_request(
            self.db, request["id"], self.bob.id, accept=True
        )
        self.assertEqual(accepted["status"], "accepted")
        self.assertEqual(accepted_note.recipient_id, self.alice.id)
        self.assertTrue(social_service.are_friends(self.db, self.alice.id, self.bob.id))
        self.assertTrue(social_service.are_friends(self.db, self.bob.id, self.alice.id))
        self.assertEqual([user.username for user in social_service.list_friends(self.db, self.alice.id)], ["bob"])

        with self.assertRaisesRegex(ValueError, "Already friends"):
            social_service.send_friend_request(self.db, self.bob, "alice")

        self.assertTrue(social_service.remove_friend(self.db, self.bob.id, self.alice.id))
        self.assertFalse(social_service.are_friends(self.db, self.alice.id, self.bob.id))

    def test_crossed_requests_become_friendship(self) -> None:
        social_service.send_friend_request(self.db, self.alice, "carol")
        result, _ = social_service.send_friend_request(self.db, self.carol, "alice")
        self.assertEqual(result["status"], "accepted")
        self.assertTrue(social_service.are_friends(self.db, self.alice.id, self.carol.id))

    def test_reject_and_cancel(self) -> None:
        request, _ = social_service.send_friend_request(self.db, self.alice, "bob")
        rejected, note = social_service.respond_to_friend_request(self.db, request["id"], self.bob.id, accept=False)
        self.assertEqual(rejected["status"], "rejected")
        self.assertIsNone(note)
        with self.assertRaisesRegex(ValueError, "already resolved"):
            social_service.respond_to_friend_request(self.db, request["id"], self.bob.id, accept=True)

        second, _ = social_service.send_friend_request(self.db, self.alice, "carol")
        cancelled = social_service.cancel_friend_request(self.db, second["id"], self.alice.id)
        self.assertEqual(cancelled["status"], "cancelled")
        self.assertEqual(social_service.list_friend_requests(self.db, self.carol.id, incoming=True), [])

    def test_self_and_unknown_targets(self) -> None:
        with self.assertRaisesRegex(ValueError, "yourself"):
            social_service.send_friend_request(self.db, self.alice, "alice")
        with self.assertRaisesRegex(ValueError, "User not found"):
            social_service.send_friend_request(self.db, self.alice, "nobody")

    def test_blocking_cuts_friendship_and_requests(self) -> None:
        request, _ = social_service.send_friend_request(self.db, self.alice, "bob")
        social_service.respond_to_friend_request(self.db, request["id"], self.bob.id, accept=True)

        blocked = social_service.block_user(self.db, self.alice.id, self.bob.id)
        self.assertEqual(blocked["username"], "bob")
        self.assertFalse(social_service.are_friends(self.db, self.alice.id, self.bob.id))
        self.assertTrue(social_service.is_blocked_between(self.db, self.bob.id, self.alice.id))
        with self.assertRaisesRegex(ValueError, "Cannot send"):
            social_service.send_friend_request(self.db, self.bob, "alice")
        with self.assertRaisesRegex(ValueError, "already blocked"):
            social_service.block_user(self.db, self.alice.id, self.bob.id)

        self.assertEqual([item["username"] for item in social_service.list_blocked(self.db, self.alice.id)], ["bob"])
        self.assertTrue(social_service.unblock_user(self.db, self.alice.id, self.bob.id))
        self.assertFalse(social_service.unblock_user(self.db, self.alice.id, self.bob.id))

    def test_search_hides_blocked_users(self) -> None:
        create_player(self.db, "bobby")
        social_service.block_user(self.db, self.bob.id, self.alice.id)
        found = social_service.search_users(self.db, self.alice.id, "bo")
        self.assertEqual([item["username"] for item in found], ["bobby"])
        with self.assertRaises(ValueError):
            social_service.search_users(self.db, self.alice.id, "b")

    def test_game_invites_require_friendship(self) -> None:
        game, _ = game_service.create_game(self.db, self.alice)
        with self.assertRaisesRegex(ValueError, "only invite friends"):
            social_service.send_game_invite(self.db, self.alice, self.bob.id, game.room_id)

        request, _ = social_service.send_friend_request(self.db, self.alice, "bob")
        social_service.respond_to_friend_request(self.db, request["id"], self.bob.id, accept=True)
        invite, notification = social_service.send_game_invite(self.db, self.alice, self.bob.id, game.room_id)
        self.assertEqual(invite["room_id"], game.room_id)
        self.assertEqual(notification.type, "game_invite")

        repeat, repeat_note = social_service.send_game_invite(self.db, self.alice, self.bob.id, game.room_id)
        self.assertEqual(repeat["id"], invite["id"])
        self.assertIsNone(repeat_note)

        declined = social_service.respond_to_game_invite(self.db, invite["id"], self.bob.id, accept=False)
        self.assertEqual(declined["status"], "declined")


class NotificationTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_state()
        self.db = SessionLocal()
        self.alice = create_player(self.db, "alice")

    def tearDown(self) -> None:
        self.db.close()

    def _notify(self, title: str, **kwargs):
        return notification_service.create(
            self.db,
            recipient_id=self.alice.id,
            type=kwargs.pop("type", "system"),
            title=title,
            message=f"{title} body",
            **kwargs,
        )

    def test_unknown_type_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self._notify("hello", type="spam")

    def test_read_flow(self) -> None:
        first = self._notify("first")
        self._notify("second", type="achievement")
        self.assertEqual(notification_service.unread_count(self.db, self.alice.id), 2)

        read = notification_service.mark_read(self.db, self.alice.id, first.id)
        self.assertTrue(read.is_read)
        self.assertIsNotNone(read.read_at)
        self.assertIsNone(notification_service.mark_read(self.db, "someone-else", first.id))

        page = notification_service.list_for_user(self.db, self.alice.id, unread_only=True)
        self.assertEqual([item["title"] for item in page["items"]], ["second"])
        self.assertEqual(page["unread_count"], 1)

        self.assertEqual(notification_service.mark_all_read(self.db, self.alice.id), 1)
        self.assertEqual(notification_service.unread_count(self.db, self.alice.id), 0)
        self.assertEqual(notification_service.delete_read(self.db, self.alice.id), 2)

    def test_type_filter_and_paging(self) -> None:
        for index in range(3):
            self._notify(f"system {index}")
        self._notify("badge", type="achievement")
        page = notification_service.list_for_user(self.db, self.alice.id, type="system", limit=2)
        self.assertEqual(page["total"], 3)
        self.assertEqual(len(page["items"]), 2)
        self.assertTrue(page["has_more"])

    def test_expired_notifications_are_hidden_and_cleaned(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        self._notify("old", expires_at=past)
        self._notify("fresh")
        page = notification_service.list_for_user(self.db, self.alice.id)
        self.assertEqual([item["title"] for item in page["items"]], ["fresh"])
        self.assertEqual(notification_service.cleanup_expired(self.db), 1)

    def test_delete_checks_owner(self) -> None:
        note = self._notify("mine")
        self.assertFalse(notification_service.delete(self.db, "other", note.id))
        self.assertTrue(notification_service.delete(self.db, self.alice.id, note.id))


if __name__ == "__main__":
    unittest.main()
