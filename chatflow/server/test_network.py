import random
import unittest
import tempfile

from chatflow.server.auth import TokenService
from chatflow.server.hub import Connection
from chatflow.server.models import User
from chatflow.server.network import (PALETTE, allocate_color, client_ipv4, is_private_ipv4,
                                     network_id_from_ip)
from chatflow.server.repo import Store
from chatflow.server.service import ChatService


def _events(conn, name):
    return [env["data"] for env in conn.drain() if env["event"] == name]


class TestAddressClassification(unittest.TestCase):
    def test_private_ranges(self):
        self.assertTrue(is_private_ipv4("10.1.2.3"))
        self.assertTrue(is_private_ipv4("172.16.0.1"))
        self.assertTrue(is_private_ipv4("172.31.255.254"))
        self.assertTrue(is_private_ipv4("192.168.1.7"))
        self.assertFalse(is_private_ipv4("172.32.0.1"))
        self.assertFalse(is_private_ipv4("8.8.8.8"))
        self.assertFalse(is_private_ipv4("not-an-ip"))
        self.assertFalse(is_private_ipv4(None))

    def test_network_id_is_first_three_octets(self):
        self.assertEqual(network_id_from_ip("192.168.1.7"), "192.168.1")
        self.assertEqual(network_id_from_ip("10.0.0.5"), "10.0.0")
        self.assertIsNone(network_id_from_ip("203.0.113.9"))

    def test_client_address_sources(self):
        self.assertEqual(client_ipv4("ipv4:10.0.0.5:4242"), "10.0.0.5")
        self.assertEqual(client_ipv4("ipv6:[::ffff:192.168.0.9]:4242"), "192.168.0.9")
        self.assertEqual(client_ipv4("ipv4:8.8.8.8:1", "192.168.1.20, 10.0.0.1"), "192.168.1.20")
        self.assertIsNone(client_ipv4("ipv6:[::1]:4242"))


class TestColorAllocation(unittest.TestCase):
    def test_unused_color_is_guaranteed(self):
        color, unique = allocate_color({"Red", "Blue"}, random.Random(1))
        self.assertTrue(unique)
        self.assertIn(color, PALETTE)
        self.assertNotIn(color, {"Red", "Blue"})

    def test_exhausted_palette_falls_back(self):
        color, unique = allocate_color(set(PALETTE), random.Random(1))
        self.assertFalse(unique)
        base = color.rstrip("0123456789")
        self.assertIn(base, PALETTE)
        self.assertLess(int(color[len(base):]), 100)


class TestHotspotGroups(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.store = Store(tmp.name)
        self.service = ChatService(self.store, TokenService("test-secret"))
        self.network = self.service.network
        self._n = 0

    def connect(self, peer):
        self._n += 1
        user = self.store.create_user(User(id=f"u{self._n}", username=f"user{self._n}",
                                           email=f"user{self._n}@example.com"))
        conn = Connection(peer=peer)
        self.service.connect(conn, self.service.tokens.issue(user.id))
        return conn

    def test_private_address_gets_offer_on_connect(self):
        conn = self.connect("ipv4:192.168.1.10:5000")
        offers = _events(conn, "hotspot-group-available")
        self.assertEqual(len(offers), 1)
        self.assertEqual(offers[0]["networkId"], "192.168.1")
        self.assertIn(offers[0]["assignedColor"], PALETTE)
        self.assertEqual(offers[0]["userCount"], 0)

    def test_public_address_gets_no_offer(self):
        conn = self.connect("ipv4:8.8.8.8:5000")
        self.assertEqual(_events(conn, "hotspot-group-available"), [])
        self.assertEqual(self.network.groups, {})

    def test_same_network_distinct_colors(self):
        a = self.connect("ipv4:192.168.1.10:5000")
        b = self.connect("ipv4:192.168.1.11:5000")
        color_a = _events(a, "hotspot-group-available")[0]["assignedColor"]
        color_b = _events(b, "hotspot-group-available")[0]["assignedColor"]
        self.assertNotEqual(color_a, color_b)
        self.assertEqual(len(self.network.groups), 1)

    def test_manual_detect_network(self):
        conn = self.connect("ipv4:8.8.8.8:5000")
        conn.drain()
        self.service.dispatch(conn.id, "detect-network", {"networkId": "home"})
        offers = _events(conn, "hotspot-group-available")
        self.assertEqual(offers[0]["networkId"], "home")

    def test_detect_onto_other_network_releases_old_group(self):
        conn = self.connect("ipv4:192.168.1.10:5000")
        self.service.dispatch(conn.id, "detect-network", {"networkId": "office"})
        self.assertNotIn("192.168.1", self.network.groups)
        self.assertIn("office", self.network.groups)

    def test_join_and_announce(self):
        a = self.connect("ipv4:192.168.1.10:5000")
        b = self.connect("ipv4:192.168.1.11:5000")
        self.service.dispatch(a.id, "join-hotspot-group", {})
        joined = _events(a, "joined-hotspot-group")
        self.assertEqual(joined[0]["userCount"], 1)

        self.service.dispatch(b.id, "join-hotspot-group", {})
        self.assertEqual(_events(b, "joined-hotspot-group")[0]["userCount"], 2)
        notices = _events(a, "user-joined-hotspot")
        self.assertEqual(len(notices), 1)
        self.assertTrue(notices[0]["message"].endswith("User joined the hotspot group"))

    def test_hotspot_message_reaches_sender_and_is_not_persisted(self):
        a = self.connect("ipv4:10.0.0.2:5000")
        b = self.connect("ipv4:10.0.0.3:5000")
        for conn in (a, b):
            self.service.dispatch(conn.id, "join-hotspot-group", {})
            conn.drain()

        self.service.dispatch(a.id, "send-hotspot-message", {"content": " hi all "})
        for conn in (a, b):
            msgs = _events(conn, "new-hotspot-message")
            self.assertEqual(len(msgs), 1)
            self.assertEqual(msgs[0]["message"], "hi all")
            self.assertEqual(msgs[0]["networkId"], "10.0.0")
            self.assertNotIn("username", msgs[0])
        self.assertEqual(self.store.messages.count(lambda m: True), 0)

    def test_leave_announces_and_empty_group_is_removed(self):
        a = self.connect("ipv4:10.0.0.2:5000")
        b = self.connect("ipv4:10.0.0.3:5000")
        for conn in (a, b):
            self.service.dispatch(conn.id, "join-hotspot-group", {})
        a.drain()

        self.service.disconnect(b.id)
        left = _events(a, "user-left-hotspot")
        self.assertEqual(len(left), 1)
        self.assertEqual(self.network.snapshot()["10.0.0"]["joined"], 1)

        self.service.disconnect(a.id)
        self.assertEqual(self.network.groups, {})

    def test_released_color_can_be_reused(self):
        a = self.connect("ipv4:10.0.0.2:5000")
        color = _events(a, "hotspot-group-available")[0]["assignedColor"]
        b = self.connect("ipv4:10.0.0.3:5000")
        self.service.disconnect(a.id)
        self.assertNotIn(color, self.network.groups["10.0.0"].used_colors)
        self.assertEqual(self.network.groups["10.0.0"].members, {b.id})

    def test_ten_members_get_every_color_and_eleventh_still_joins(self):
        conns = [self.connect(f"ipv4:192.168.5.{i}:5000") for i in range(1, 12)]
        colors = [self.service.registry.get(c.id).assigned_color for c in conns]
        self.assertEqual(sorted(colors[:10]), sorted(PALETTE))
        self.assertTrue(colors[10])
        self.assertNotIn(colors[10], PALETTE)

        for conn in conns:
            self.service.dispatch(conn.id, "join-hotspot-group", {})
        self.assertEqual(self.network.snapshot()["192.168.5"]["joined"], 11)

    def test_hotspot_send_without_group_is_ignored(self):
        conn = self.connect("ipv4:8.8.8.8:5000")
        conn.drain()
        self.service.dispatch(conn.id, "send-hotspot-message", {"content": "anyone?"})
        self.assertEqual(conn.drain(), [])


if __name__ == '__main__':
    unittest.main()
