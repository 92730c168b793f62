import unittest

from chatgate.hub import Connection
from chatgate.presence import PresenceRegistry

from tests.core_util import attach, of_type


class PresenceRegistryTests(unittest.TestCase):
    def setUp(self):
        self.presence = PresenceRegistry()

    def test_set_online_broadcasts_to_every_connected_session(self):
        _, alice_frames = attach(self.presence, "alice")
        _, bob_frames = attach(self.presence, "bob")

        self.assertEqual(
            [f["body"] for f in of_type(alice_frames, "user_status")],
            [{"user_id": "alice", "online": True}, {"user_id": "bob", "online": True}],
        )
        self.assertEqual(of_type(bob_frames, "user_status")[-1]["body"], {"user_id": "bob", "online": True})

    def test_reconnect_replaces_previous_session(self):
        first, first_frames = attach(self.presence, "alice")
        second, second_frames = attach(self.presence, "alice")

        self.assertIs(self.presence.resolve("alice"), second)
        self.assertEqual(self.presence.connections(["alice"]), [second])
        attach(self.presence, "bob")
        self.assertEqual(of_type(second_frames, "user_status")[-1]["body"]["user_id"], "bob")
        self.assertNotIn("bob", [f["body"]["user_id"] for f in of_type(first_frames, "user_status")])
        self.assertIsNot(first, second)

    def test_stale_disconnect_does_not_clear_newer_session(self):
        first, _ = attach(self.presence, "alice")
        second, _ = attach(self.presence, "alice")
        _, bob_frames = attach(self.presence, "bob")

        self.assertIsNone(self.presence.clear(first))
        self.assertIs(self.presence.resolve("alice"), second)
        self.assertFalse(any(f["body"] == {"user_id": "alice", "online": False} for f in bob_frames))

    def test_clear_broadcasts_offline(self):
        alice, _ = attach(self.presence, "alice")
        _, bob_frames = attach(self.presence, "bob")

        self.assertEqual(self.presence.clear(alice), "alice")
        self.assertIsNone(self.presence.resolve("alice"))
        self.assertFalse(self.presence.is_online("alice"))
        self.assertEqual(of_type(bob_frames, "user_status")[-1]["body"], {"user_id": "alice", "online": False})
        self.assertIsNone(self.presence.clear(alice))

    def test_unknown_connection_clear_is_noop(self):
        stray = Connection(user_id="ghost", callback=lambda frame: None)
        self.assertIsNone(self.presence.clear(stray))

    def test_connections_skip_absent_and_duplicates(self):
        alice, _ = attach(self.presence, "alice")
        self.assertEqual(self.presence.connections(["alice", "nobody", "alice"]), [alice])
        self.assertEqual(self.presence.online_users(), ["alice"])


if __name__ == "__main__":
    unittest.main()
