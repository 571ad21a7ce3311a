import asyncio
import io
import json
import unittest
from unittest import mock

from chatsync.server import _load_frames, main, simulate


def _run(frames):
    buffer = io.StringIO()
    asyncio.run(simulate(frames, buffer))
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


class SimulateTests(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "ping"}]))
        ndjson_buffer = io.StringIO("\n".join(["{\"t\": \"one\"}", "{\"t\": \"two\"}"]))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "ping"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_send_reaches_subscriber(self):
        lines = _run(
            [
                {"t": "user.create", "uid": "alice", "name": "Alice"},
                {"t": "user.create", "uid": "bob", "name": "Bob"},
                {"t": "conv.subscribe", "uid": "bob", "conv_id": "alice_bob"},
                {"t": "chat.send", "from": "alice", "to": "bob", "text": "hi", "msg_id": "m1"},
                {"t": "chat.send", "from": "alice", "to": "bob", "text": "hi", "msg_id": "m1"},
            ]
        )

        delivered = [line for line in lines if line["t"] == "conv.message"]
        self.assertEqual(len(delivered), 1)
        self.assertEqual(delivered[0]["uid"], "bob")
        self.assertEqual(delivered[0]["seq"], 1)
        self.assertEqual(delivered[0]["sender"], {"id": "alice", "displayName": "Alice"})
        self.assertEqual([line["seq"] for line in lines if line["t"] == "conv.sent"], [1, 1])

    def test_errors_are_reported_as_events(self):
        lines = _run([{"t": "chat.send", "from": "alice", "to": "alice", "text": "hi"}])

        self.assertEqual(len(lines), 1)
        self.assertEqual((lines[0]["t"], lines[0]["frame"], lines[0]["code"]), ("error", "chat.send", "invalid_request"))

    def test_presence_and_friends(self):
        lines = _run(
            [
                {"t": "user.create", "uid": "alice"},
                {"t": "user.create", "uid": "bob"},
                {"t": "friend.add", "uid": "alice", "friend": "bob"},
                {"t": "presence.online", "uid": "alice", "connection_id": "c1"},
                {"t": "presence.disconnect", "connection_id": "c1"},
            ]
        )

        self.assertEqual(lines[0]["name"], "Unnamed User")
        self.assertEqual([line["t"] for line in lines[2:]], ["friend.added", "presence.update", "presence.update"])
        self.assertEqual(lines[2]["uid"], "bob")
        self.assertEqual([line["state"] for line in lines[3:]], ["online", "offline"])

    def test_unknown_frame_raises(self):
        with self.assertRaises(ValueError):
            _run([{"t": "bogus"}])

    def test_main_simulate_reads_file(self):
        output = io.StringIO()
        source = io.StringIO(json.dumps([{"t": "user.create", "uid": "alice", "name": "Alice"}]))
        with mock.patch("sys.stdin", source):
            exit_code = main(["simulate"], output=output)

        self.assertEqual(exit_code, 0)
        self.assertEqual(json.loads(output.getvalue())["uid"], "alice")


if __name__ == "__main__":
    unittest.main()
