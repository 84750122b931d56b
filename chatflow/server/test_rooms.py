import unittest
import tempfile

from chatflow.server.auth import TokenService
from chatflow.server.hub import Connection
from chatflow.server.models import User
from chatflow.server.repo import Store
from chatflow.server.service import ChatService


def _events(conn, name):
    return [env["data"] for env in conn.drain() if env["event"] == name]


class TestGeneralRoom(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.store = Store(tmp.name)
        self.service = ChatService(self.store, TokenService("test-secret"))

    def connect(self, uid, name):
        user = self.store.create_user(User(id=uid, username=name, email=f"{name}@example.com"))
        conn = Connection(peer="ipv4:8.8.8.8:1")
        self.service.connect(conn, self.service.tokens.issue(user.id))
        conn.drain()
        return conn

    def test_join_announces_to_others_only(self):
        alice = self.connect("u1", "alice")
        bob = self.connect("u2", "bob")
        self.service.dispatch(alice.id, "join-general-chat")
        alice.drain()
        self.service.dispatch(bob.id, "join-general-chat")

        out = bob.drain()
        self.assertEqual([env["event"] for env in out], ["joined-general-chat"])
        notices = _events(alice, "user-joined")
        self.assertEqual(notices, [{"username": "bob", "message": "bob joined the chat"}])

    def test_general_message_reaches_room_including_sender(self):
        alice = self.connect("u1", "alice")
        bob = self.connect("u2", "bob")
        outsider = self.connect("u3", "carol")
        for conn in (alice, bob):
            self.service.dispatch(conn.id, "join-general-chat")
            conn.drain()
        self.service.dispatch(alice.id, "send-message", {"message": "hello"})
        for conn in (alice, bob):
            msgs = _events(conn, "new-message")
            self.assertEqual(msgs[0]["message"], "hello")
            self.assertEqual(msgs[0]["username"], "alice")
        self.assertEqual(_events(outsider, "new-message"), [])

    def test_leaving_announces_to_room(self):
        alice = self.connect("u1", "alice")
        bob = self.connect("u2", "bob")
        for conn in (alice, bob):
            self.service.dispatch(conn.id, "join-general-chat")
        alice.drain()
        self.service.disconnect(bob.id)
        self.assertEqual(_events(alice, "user-left")[0]["username"], "bob")


class TestNamedGroups(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.store = Store(tmp.name)
        self.service = ChatService(self.store, TokenService("test-secret"))
        self.alice = self.connect("u1", "alice")
        self.bob = self.connect("u2", "bob")
        self.carol = self.connect("u3", "carol")
        for conn in (self.alice, self.bob):
            conn.drain()

    def connect(self, uid, name):
        user = self.store.create_user(User(id=uid, username=name, email=f"{name}@example.com"))
        conn = Connection(peer="ipv4:8.8.8.8:1")
        self.service.connect(conn, self.service.tokens.issue(user.id))
        conn.drain()
        return conn

    def create_team(self):
        self.service.dispatch(self.alice.id, "create-group", {
            "name": "Team", "members": ["Bob@example.com"], "createdBy": "alice@example.com"})
        created = _events(self.alice, "group-created")
        self.assertEqual(len(created), 1)
        return created[0]

    def test_create_adds_creator_and_online_members(self):
        group = self.create_team()
        self.assertEqual(group["name"], "Team")
        self.assertEqual(group["members"], ["bob@example.com", "alice@example.com"])
        room = f"group-{group['id']}"
        self.assertTrue(self.service.hub.in_room(room, self.alice.id))
        self.assertTrue(self.service.hub.in_room(room, self.bob.id))
        self.assertFalse(self.service.hub.in_room(room, self.carol.id))
        self.assertEqual(self.bob.drain(), [])

    def test_create_persists_system_message(self):
        group = self.create_team()
        stream = self.store.find_group_messages(group["id"])
        self.assertEqual(len(stream), 1)
        self.assertEqual(stream[0].type, "system")
        self.assertEqual(stream[0].message, 'Group "Team" created by alice')

    def test_create_without_members_fails(self):
        self.service.dispatch(self.alice.id, "create-group", {"name": "Solo", "members": []})
        errors = _events(self.alice, "group-creation-error")
        self.assertEqual(errors, [{"message": "Missing required fields"}])
        self.assertEqual(self.store.find_groups_by_member_email("alice@example.com"), [])

    def test_create_with_long_name_fails(self):
        self.service.dispatch(self.alice.id, "create-group", {"name": "x" * 51, "members": ["bob@example.com"]})
        self.assertEqual(len(_events(self.alice, "group-creation-error")), 1)

    def test_member_message_fans_out(self):
        group = self.create_team()
        self.bob.drain()
        self.service.dispatch(self.alice.id, "send-group-message", {"groupId": group["id"], "content": "standup?"})
        for conn in (self.alice, self.bob):
            msgs = _events(conn, "group-message")
            self.assertEqual(len(msgs), 1)
            self.assertEqual(msgs[0]["message"], "standup?")
            self.assertEqual(msgs[0]["type"], "group")
            self.assertEqual(msgs[0]["senderName"], "alice")
        self.assertEqual(self.store.count_group_messages(group["id"]), 2)

    def test_non_member_send_is_silently_dropped(self):
        group = self.create_team()
        before = self.store.count_group_messages(group["id"])
        self.service.dispatch(self.carol.id, "send-group-message", {"groupId": group["id"], "content": "let me in"})
        self.assertEqual(self.store.count_group_messages(group["id"]), before)
        self.assertEqual(self.carol.drain(), [])
        self.assertEqual(_events(self.alice, "group-message"), [])

    def test_non_member_join_is_silently_dropped(self):
        group = self.create_team()
        self.service.dispatch(self.carol.id, "join-group", {"groupId": group["id"]})
        self.assertEqual(self.carol.drain(), [])
        self.assertFalse(self.service.hub.in_room(f"group-{group['id']}", self.carol.id))

    def test_join_replays_recent_messages_oldest_first(self):
        group = self.create_team()
        self.service.dispatch(self.bob.id, "send-group-message", {"groupId": group["id"], "content": "first"})
        self.service.dispatch(self.alice.id, "send-group-message", {"groupId": group["id"], "content": "second"})
        # second device of an existing member
        late_bob = Connection(peer="ipv4:8.8.8.8:2")
        self.service.connect(late_bob, self.service.tokens.issue("u2"))
        late_bob.drain()
        self.service.dispatch(late_bob.id, "join-group", {"groupId": group["id"]})
        replay = _events(late_bob, "group-messages")[0]
        self.assertEqual([m["message"] for m in replay], ['Group "Team" created by alice', "first", "second"])
        self.assertEqual(replay[0]["type"], "system")

    def test_groups_list_ordered_by_activity(self):
        first = self.create_team()
        self.service.dispatch(self.alice.id, "create-group", {"name": "Other", "members": ["carol@example.com"]})
        _events(self.alice, "group-created")
        self.store.touch_group_activity(first["id"], 10 ** 13)
        self.service.dispatch(self.alice.id, "get-groups")
        names = [g["name"] for g in _events(self.alice, "groups-list")[0]]
        self.assertEqual(names, ["Team", "Other"])

    def test_empty_groups_list(self):
        self.service.dispatch(self.carol.id, "get-groups", {})
        self.assertEqual(_events(self.carol, "groups-list"), [[]])


if __name__ == '__main__':
    unittest.main()
