import os
import unittest
import tempfile
from unittest import mock

from chatflow.server.auth import TokenService
from chatflow.server.errors import (AlreadyDeleted, Forbidden, NotFound, RecipientNotFound,
                                    StorageUnavailable, ValidationFailure)
from chatflow.server.hub import Connection
from chatflow.server.models import TOMBSTONE, User
from chatflow.server.repo import Store
from chatflow.server.service import ChatService


def _events(conn, name):
    return [env["data"] for env in conn.drain() if env["event"] == name]


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.store = Store(tmp.name)
        self.service = ChatService(self.store, TokenService("test-secret"))
        self.pipeline = self.service.pipeline
        self.alice = self.store.create_user(User(id="u1", username="alice", email="alice@example.com"))
        self.bob = self.store.create_user(User(id="u2", username="bob", email="bob@example.com"))

    def connect(self, user):
        conn = Connection(peer="ipv4:8.8.8.8:1")
        self.service.connect(conn, self.service.tokens.issue(user.id))
        return conn

    def drain_all(self, *conns):
        for conn in conns:
            conn.drain()


class TestPrivateMessages(PipelineTestCase):
    def test_online_recipient_gets_message_and_sender_gets_receipts(self):
        a, b = self.connect(self.alice), self.connect(self.bob)
        self.drain_all(a, b)
        self.service.dispatch(a.id, "send-private-message", {"to": "BOB@example.com", "content": "hey"})

        incoming = _events(b, "new-private-message")
        self.assertEqual(len(incoming), 1)
        self.assertEqual(incoming[0]["fromEmail"], "alice@example.com")
        self.assertEqual(incoming[0]["message"], "hey")

        out = a.drain()
        names = [env["event"] for env in out]
        self.assertEqual(names, ["message-delivered-receipt", "private-message-sent"])
        receipt, confirm = out[0]["data"], out[1]["data"]
        self.assertEqual(receipt["to"], "bob@example.com")
        self.assertEqual(receipt["messageId"], confirm["id"])
        self.assertEqual(confirm["status"], "delivered")
        self.assertEqual(self.store.find_message(confirm["id"]).status, "delivered")

    def test_sender_is_confirmed_when_delivery_status_cannot_be_saved(self):
        a, b = self.connect(self.alice), self.connect(self.bob)
        self.drain_all(a, b)
        with mock.patch.object(self.store, "update_message", side_effect=StorageUnavailable("disk full")):
            self.service.dispatch(a.id, "send-private-message", {"to": "bob@example.com", "content": "hey"})

        self.assertEqual(len(_events(b, "new-private-message")), 1)
        out = a.drain()
        self.assertEqual([env["event"] for env in out], ["message-delivered-receipt", "private-message-sent"])
        self.assertEqual(out[1]["data"]["status"], "delivered")

    def test_every_recipient_device_gets_the_message(self):
        a = self.connect(self.alice)
        b1, b2 = self.connect(self.bob), self.connect(self.bob)
        self.drain_all(a, b1, b2)
        self.service.dispatch(a.id, "send-private-message", {"to": "bob@example.com", "content": "both?"})
        self.assertEqual(len(_events(b1, "new-private-message")), 1)
        self.assertEqual(len(_events(b2, "new-private-message")), 1)

    def test_offline_recipient_is_stored_without_receipt(self):
        a = self.connect(self.alice)
        a.drain()
        self.service.dispatch(a.id, "send-private-message", {"to": "bob@example.com", "content": "later"})
        out = a.drain()
        self.assertEqual([env["event"] for env in out], ["private-message-sent"])
        self.assertEqual(out[0]["data"]["status"], "sent")
        self.assertEqual(self.pipeline.unread_count(self.bob), 1)

    def test_unknown_recipient(self):
        a = self.connect(self.alice)
        a.drain()
        self.service.dispatch(a.id, "send-private-message", {"to": "nobody@example.com", "content": "hi"})
        errors = _events(a, "user-not-found")
        self.assertEqual(errors[0]["email"], "nobody@example.com")
        self.assertEqual(self.store.messages.count(lambda m: True), 0)

    def test_empty_content_is_rejected(self):
        a = self.connect(self.alice)
        a.drain()
        self.service.dispatch(a.id, "send-private-message", {"to": "bob@example.com", "content": "   "})
        errors = _events(a, "error")
        self.assertEqual(errors[0]["code"], "ValidationFailure")

    def test_file_message_uses_file_name(self):
        a, b = self.connect(self.alice), self.connect(self.bob)
        self.drain_all(a, b)
        self.service.dispatch(a.id, "send-file-message", {
            "to": "bob@example.com",
            "fileData": {"data": "aGVsbG8=", "type": "text/plain", "name": "notes.txt", "size": 5},
        })
        msg = _events(b, "new-private-message")[0]
        self.assertEqual(msg["message"], "notes.txt")
        self.assertEqual(msg["fileName"], "notes.txt")
        self.assertEqual(msg["fileData"]["data"], "aGVsbG8=")

    def test_read_receipt_reaches_sender_and_clears_unread(self):
        a, b = self.connect(self.alice), self.connect(self.bob)
        self.drain_all(a, b)
        self.service.dispatch(a.id, "send-private-message", {"to": "bob@example.com", "content": "read me"})
        self.drain_all(a, b)
        self.assertEqual(self.pipeline.unread_count(self.bob), 1)

        self.service.dispatch(b.id, "message-read", {"from": "alice@example.com", "to": "mallory@example.com"})
        receipts = _events(a, "message-read-receipt")
        self.assertEqual(receipts, [{"from": "bob@example.com"}])
        self.assertEqual(self.pipeline.unread_count(self.bob), 0)

    def test_read_receipt_is_relayed_on_every_open(self):
        a, b = self.connect(self.alice), self.connect(self.bob)
        self.drain_all(a, b)
        for _ in range(2):
            self.service.dispatch(b.id, "message-read", {"from": "alice@example.com"})
        self.assertEqual(len(_events(a, "message-read-receipt")), 2)


class TestMutations(PipelineTestCase):
    def setUp(self):
        super().setUp()
        self.message = self.pipeline.create_message(self.alice, {"type": "general", "content": "hello world"})

    def test_edit_own_message(self):
        edited = self.pipeline.edit(self.message.id, self.alice, "  hello there ")
        self.assertEqual(edited.content, "hello there")
        self.assertTrue(edited.is_edited)
        self.assertIsNotNone(edited.edited_at)

    def test_edit_someone_elses_message(self):
        with self.assertRaises(Forbidden):
            self.pipeline.edit(self.message.id, self.bob, "mine now")

    def test_edit_missing_message(self):
        with self.assertRaises(NotFound):
            self.pipeline.edit("missing", self.alice, "text")

    def test_delete_then_edit(self):
        deleted = self.pipeline.delete(self.message.id, self.alice)
        self.assertTrue(deleted.is_deleted)
        self.assertEqual(deleted.content, TOMBSTONE)
        self.assertEqual(self.store.find_message(self.message.id).content, TOMBSTONE)
        with self.assertRaises(AlreadyDeleted):
            self.pipeline.edit(self.message.id, self.alice, "back again")
        with self.assertRaises(AlreadyDeleted):
            self.pipeline.react(self.message.id, self.bob, "👍")

    def test_delete_someone_elses_message(self):
        with self.assertRaises(Forbidden):
            self.pipeline.delete(self.message.id, self.bob)

    def test_reaction_toggles(self):
        reactions = self.pipeline.react(self.message.id, self.bob, "👍")
        self.assertEqual([(r.username, r.emoji) for r in reactions], [("bob", "👍")])
        self.pipeline.react(self.message.id, self.alice, "👍")
        reactions = self.pipeline.react(self.message.id, self.bob, "👍")
        self.assertEqual([r.username for r in reactions], ["alice"])

    def test_unreact(self):
        self.pipeline.react(self.message.id, self.bob, "🎉")
        self.assertEqual(self.pipeline.unreact(self.message.id, self.bob, "🎉"), [])

    def test_empty_emoji(self):
        with self.assertRaises(ValidationFailure):
            self.pipeline.react(self.message.id, self.bob, " ")

    def test_mutations_survive_reload(self):
        self.pipeline.react(self.message.id, self.bob, "👍")
        self.pipeline.edit(self.message.id, self.alice, "edited")
        reloaded = Store(os.path.dirname(self.store.messages.path))
        msg = reloaded.find_message(self.message.id)
        self.assertEqual(msg.content, "edited")
        self.assertEqual(msg.reactions[0].emoji, "👍")


class TestCreateMessage(PipelineTestCase):
    def test_private_requires_existing_recipient(self):
        with self.assertRaises(RecipientNotFound):
            self.pipeline.create_message(self.alice, {"type": "private", "content": "x",
                                                      "recipientEmail": "ghost@example.com"})

    def test_group_requires_target_fields(self):
        with self.assertRaises(ValidationFailure):
            self.pipeline.create_message(self.alice, {"type": "group", "content": "x", "groupId": "g1"})
        msg = self.pipeline.create_message(self.alice, {"type": "group", "content": "x",
                                                        "groupId": "g1", "groupName": "Team"})
        self.assertEqual(msg.to_client()["groupName"], "Team")

    def test_hotspot_record(self):
        msg = self.pipeline.create_message(self.alice, {"type": "hotspot", "content": "x",
                                                        "hotspotColor": "Red", "networkId": "10.0.0"})
        self.assertEqual(msg.to_client()["hotspotColor"], "Red")

    def test_bad_type(self):
        with self.assertRaises(ValidationFailure):
            self.pipeline.create_message(self.alice, {"type": "broadcast", "content": "x"})

    def test_content_length_bounds(self):
        with self.assertRaises(ValidationFailure):
            self.pipeline.create_message(self.alice, {"content": "x" * 1001})
        self.assertEqual(len(self.pipeline.create_message(self.alice, {"content": "x" * 1000}).content), 1000)


class TestReads(PipelineTestCase):
    def test_general_history_pages(self):
        for i in range(3):
            self.pipeline.create_message(self.alice, {"content": f"msg {i}"})
        first = self.pipeline.general_history(page=1, limit=2)
        self.assertEqual([m["message"] for m in first["messages"]], ["msg 1", "msg 2"])
        self.assertTrue(first["hasMore"])
        second = self.pipeline.general_history(page=2, limit=2)
        self.assertEqual([m["message"] for m in second["messages"]], ["msg 0"])
        self.assertFalse(second["hasMore"])

    def test_private_history_only_has_the_pair(self):
        carol = self.store.create_user(User(id="u3", username="carol", email="carol@example.com"))
        a = self.connect(self.alice)
        self.service.dispatch(a.id, "send-private-message", {"to": "bob@example.com", "content": "to bob"})
        self.service.dispatch(a.id, "send-private-message", {"to": "carol@example.com", "content": "to carol"})
        page = self.pipeline.private_history(self.bob, "alice@example.com")
        self.assertEqual([m["message"] for m in page["messages"]], ["to bob"])
        self.assertEqual(self.pipeline.unread_count(self.bob), 0)
        self.assertEqual(self.pipeline.unread_count(carol), 1)

    def test_private_history_unknown_user(self):
        with self.assertRaises(RecipientNotFound):
            self.pipeline.private_history(self.alice, "ghost@example.com")

    def test_search_ranks_by_matched_words(self):
        self.pipeline.create_message(self.alice, {"content": "deploy today"})
        both = self.pipeline.create_message(self.alice, {"content": "deploy the release today"})
        self.pipeline.create_message(self.alice, {"content": "unrelated"})
        gone = self.pipeline.create_message(self.alice, {"content": "deploy release"})
        self.pipeline.delete(gone.id, self.alice)

        results = self.pipeline.search(self.alice, "deploy release")
        self.assertEqual(results[0].id, both.id)
        self.assertEqual(len(results), 2)
        self.assertNotIn(gone.id, [m.id for m in results])

    def test_private_search_scoped_to_participant(self):
        carol = self.store.create_user(User(id="u3", username="carol", email="carol@example.com"))
        self.pipeline.create_message(self.alice, {"type": "private", "content": "secret plan",
                                                  "recipientEmail": "bob@example.com"})
        self.assertEqual(len(self.pipeline.search(self.bob, "secret", "private")), 1)
        self.assertEqual(self.pipeline.search(carol, "secret", "private"), [])

    def test_search_query_too_short(self):
        with self.assertRaises(ValidationFailure):
            self.pipeline.search(self.alice, "a")

    def test_search_limit_must_be_a_positive_number(self):
        for i in range(3):
            self.pipeline.create_message(self.alice, {"content": f"standup notes {i}"})
        self.assertEqual(len(self.pipeline.search(self.alice, "standup", limit=2)), 2)
        with self.assertRaises(ValidationFailure):
            self.pipeline.search(self.alice, "standup", limit="many")
        with self.assertRaises(ValidationFailure):
            self.pipeline.search(self.alice, "standup", limit=-1)


if __name__ == '__main__':
    unittest.main()
