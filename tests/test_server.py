import io
import json
import os
import tempfile
import unittest

from chatgate.server import _load_frames, main, simulate


def _lines(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


class TestChatgateServer(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "ping"}]))
        ndjson_buffer = io.StringIO("\n".join(["{\"t\": \"one\"}", "{\"t\": \"two\"}"]))
        single_buffer = io.StringIO(json.dumps({"t": "solo"}))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "ping"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(single_buffer)), [{"t": "solo"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_simulate_routes_direct_message(self):
        frames = [
            {"t": "connect", "user_id": "alice"},
            {"t": "connect", "user_id": "bob"},
            {"t": "send_message", "user_id": "alice", "body": {"conv_id": "alice:bob", "text": "hi"}},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        messages = [line for line in _lines(buffer) if line["t"] == "new_message"]
        self.assertEqual(sorted(line["to"] for line in messages), ["alice", "bob"])
        self.assertEqual(messages[0]["body"]["message"]["text"], "hi")
        self.assertEqual(messages[0]["body"]["message"]["seq"], 1)

    def test_simulate_replies_and_errors_go_to_sender(self):
        frames = [
            {"t": "connect", "user_id": "alice"},
            {"t": "send_message", "user_id": "alice", "body": {"conv_id": "alice:bob", "text": "stored"}},
            {"t": "get_messages", "id": "r1", "user_id": "alice", "body": {"conv_id": "alice:bob"}},
            {"t": "teleport", "id": "r2", "user_id": "alice"},
            {"t": "get_messages", "id": "r3", "user_id": "alice", "body": {"conv_id": "alice:bob", "user_id": "bob"}},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        replies = {line["id"]: line for line in _lines(buffer) if line.get("id")}
        self.assertEqual(replies["r1"]["t"], "messages_history")
        self.assertEqual([m["text"] for m in replies["r1"]["body"]["messages"]], ["stored"])
        self.assertEqual(replies["r2"]["body"]["code"], "invalid_request")
        self.assertEqual(replies["r3"]["body"]["code"], "forbidden")
        self.assertTrue(all(line["to"] == "alice" for line in replies.values()))

    def test_simulate_disconnect_ends_call_and_reports_offline(self):
        frames = [
            {"t": "connect", "user_id": "alice"},
            {"t": "connect", "user_id": "bob"},
            {"t": "start_call", "user_id": "alice", "body": {"conv_id": "alice:bob", "call_type": "video"}},
            {"t": "disconnect", "user_id": "alice"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        to_bob = [line for line in _lines(buffer) if line["to"] == "bob"]
        self.assertEqual(
            [line["t"] for line in to_bob], ["user_status", "incoming_call", "user_status", "call_ended"]
        )
        self.assertEqual(to_bob[2]["body"], {"user_id": "alice", "online": False})
        self.assertEqual(to_bob[3]["body"]["reason"], "disconnected")

    def test_simulate_requires_user_id(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "connect"}], io.StringIO())

    def test_main_simulate_reads_file(self):
        frames = [
            {"t": "connect", "user_id": "bob"},
            {"t": "send_message", "user_id": "alice", "body": {"conv_id": "alice:bob", "text": "hey"}},
        ]
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "frames.json")
            with open(path, "w", encoding="utf-8") as handle:
                json.dump(frames, handle)
            buffer = io.StringIO()
            exit_code = main(["simulate", "-f", path], output=buffer)

        self.assertEqual(exit_code, 0)
        [line] = [line for line in _lines(buffer) if line["t"] == "new_message"]
        self.assertEqual(line["to"], "bob")


if __name__ == "__main__":
    unittest.main()
