import asyncio
import unittest

from chatsync.errors import ReadError, ValidationError, WriteError
from chatsync.hub import SubscriptionHub
from chatsync.messages import MAX_TEXT_LENGTH, MessageStore, conversation_topic
from chatsync.models import Sender
from chatsync.sqlite_backend import SQLiteBackend

from .support import FakeClock

ALICE = Sender(id="alice", display_name="Alice")
BOB = Sender(id="bob", display_name="Bob")
CONV = "alice_bob"


class MessageStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.backend = SQLiteBackend()
        self.hub = SubscriptionHub()
        self.store = MessageStore(self.backend, self.hub, now_func=self.clock.now)

    def tearDown(self) -> None:
        self.backend.close()

    def test_append_assigns_increasing_seq(self):
        first, created_first = self.store.append(CONV, ALICE, "hi")
        self.clock.advance(1)
        second, created_second = self.store.append(CONV, BOB, "  hello  ")

        self.assertEqual((first.seq, created_first), (1, True))
        self.assertEqual((second.seq, created_second), (2, True))
        self.assertEqual(second.text, "hello")
        self.assertEqual([m.seq for m in self.store.list(CONV)], [1, 2])
        self.assertEqual(self.store.list(CONV)[1].sender, BOB)

    def test_seq_is_per_conversation(self):
        self.store.append(CONV, ALICE, "one")
        other, _ = self.store.append("alice_carol", ALICE, "two")

        self.assertEqual(other.seq, 1)
        self.assertEqual(self.store.count(CONV), 1)

    def test_retry_with_same_msg_id_is_idempotent(self):
        published = []
        self.hub.subscribe(conversation_topic(CONV), published.append)

        first, created = self.store.append(CONV, ALICE, "hi", msg_id="m1")
        again, created_again = self.store.append(CONV, ALICE, "different text", msg_id="m1")

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first, again)
        self.assertEqual(self.store.count(CONV), 1)
        self.assertEqual(len(published), 1)

    def test_timestamps_never_go_backwards(self):
        first, _ = self.store.append(CONV, ALICE, "first")
        self.clock.now_ms -= 500
        second, _ = self.store.append(CONV, BOB, "second")

        self.assertEqual(second.created_at_ms, first.created_at_ms)
        self.assertEqual([m.text for m in self.store.list(CONV)], ["first", "second"])

    def test_rejects_empty_and_oversized_text(self):
        for text in ["", "   ", None, "x" * (MAX_TEXT_LENGTH + 1)]:
            with self.subTest(text=text if text is None else len(text)):
                with self.assertRaises(ValidationError):
                    self.store.append(CONV, ALICE, text)
        self.assertEqual(self.store.count(CONV), 0)

    def test_list_after_seq_and_limit(self):
        for i in range(5):
            self.store.append(CONV, ALICE, f"m{i}")

        self.assertEqual([m.seq for m in self.store.list(CONV, after_seq=2)], [3, 4, 5])
        self.assertEqual([m.seq for m in self.store.list(CONV, after_seq=1, limit=2)], [2, 3])
        with self.assertRaises(ValidationError):
            self.store.list(CONV, after_seq=-1)

    def test_subscribe_replays_backlog_then_live(self):
        self.store.append(CONV, ALICE, "old")
        received = []
        sub = self.store.subscribe(CONV, received.append)
        self.store.append(CONV, BOB, "new")
        sub.cancel()
        self.store.append(CONV, BOB, "after cancel")

        self.assertEqual([m.text for m in received], ["old", "new"])

    def test_resubscribe_resumes_after_last_seq(self):
        for text in ["a", "b", "c"]:
            self.store.append(CONV, ALICE, text)
        received = []
        self.store.subscribe(CONV, received.append, after_seq=2)

        self.assertEqual([m.text for m in received], ["c"])

    def test_append_during_backlog_read_is_delivered_once_in_order(self):
        self.store.append(CONV, ALICE, "one")
        self.store.append(CONV, ALICE, "two")
        original_list = self.store.list

        def list_with_concurrent_append(conv_id, *, after_seq=0, limit=None):
            self.store.list = original_list
            self.store.append(CONV, BOB, "three")
            return original_list(conv_id, after_seq=after_seq, limit=limit)

        self.store.list = list_with_concurrent_append
        received = []
        self.store.subscribe(CONV, received.append)

        self.assertEqual([m.seq for m in received], [1, 2, 3])

    def test_cancel_inside_callback_stops_delivery(self):
        holder: dict = {}
        received = []

        def callback(message):
            received.append(message.seq)
            holder["sub"].cancel()

        holder["sub"] = self.store.subscribe(CONV, callback)
        self.store.append(CONV, ALICE, "one")
        self.store.append(CONV, ALICE, "two")

        self.assertEqual(received, [1])

    def test_closed_backend_surfaces_read_and_write_errors(self):
        self.backend.close()
        with self.assertRaises(WriteError):
            self.store.append(CONV, ALICE, "hi")
        with self.assertRaises(ReadError):
            self.store.list(CONV)
        with self.assertRaises(ReadError):
            self.store.subscribe(CONV, lambda _: None)
        self.assertEqual(self.hub.subscriber_count(), 0)


class MessageFeedTests(unittest.IsolatedAsyncioTestCase):
    async def test_feed_yields_backlog_and_live_messages(self):
        backend = SQLiteBackend()
        self.addCleanup(backend.close)
        store = MessageStore(backend, SubscriptionHub(), now_func=FakeClock().now)
        store.append(CONV, ALICE, "backlog")
        feed = store.feed(CONV)

        async def consume():
            texts = []
            async for message in feed:
                texts.append(message.text)
                if len(texts) == 2:
                    feed.cancel()
            return texts

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        store.append(CONV, BOB, "live")

        self.assertEqual(await asyncio.wait_for(task, timeout=1), ["backlog", "live"])


if __name__ == "__main__":
    unittest.main()
