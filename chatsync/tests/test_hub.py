import asyncio
import unittest

from chatsync.hub import LiveFeed, SubscriptionGroup, SubscriptionHub


class SubscriptionHubTests(unittest.TestCase):
    def setUp(self) -> None:
        self.hub = SubscriptionHub()

    def test_publish_reaches_topic_subscribers_only(self):
        received: list[tuple[str, int]] = []
        self.hub.subscribe("a", lambda payload: received.append(("a", payload)))
        self.hub.subscribe("b", lambda payload: received.append(("b", payload)))

        self.hub.publish("a", 1)

        self.assertEqual(received, [("a", 1)])

    def test_cancel_is_idempotent_and_stops_delivery(self):
        received: list[int] = []
        sub = self.hub.subscribe("a", received.append)
        hook_calls: list[str] = []
        sub.add_cancel_hook(lambda: hook_calls.append("hook"))

        sub.cancel()
        sub.cancel()
        self.hub.publish("a", 1)

        self.assertEqual(received, [])
        self.assertEqual(hook_calls, ["hook"])
        self.assertEqual(self.hub.subscriber_count("a"), 0)

    def test_cancel_during_publish_suppresses_later_delivery(self):
        received: list[str] = []
        holder: dict = {}

        def first(_):
            received.append("first")
            holder["second"].cancel()

        self.hub.subscribe("a", first)
        holder["second"] = self.hub.subscribe("a", lambda _: received.append("second"))

        self.hub.publish("a", None)

        self.assertEqual(received, ["first"])

    def test_cancel_inside_own_callback(self):
        received: list[int] = []
        holder: dict = {}

        def callback(payload):
            received.append(payload)
            holder["sub"].cancel()

        holder["sub"] = self.hub.subscribe("a", callback)
        self.hub.publish("a", 1)
        self.hub.publish("a", 2)

        self.assertEqual(received, [1])

    def test_failing_callback_does_not_stop_other_subscribers(self):
        received: list[int] = []

        def broken(_):
            raise RuntimeError("boom")

        self.hub.subscribe("room", broken)
        self.hub.subscribe("room", received.append)

        with self.assertLogs("chatsync.hub", level="ERROR") as logs:
            self.hub.publish("room", 1)

        self.assertEqual(received, [1])
        self.assertIn("subscriber for room failed", logs.output[0])


class SubscriptionGroupTests(unittest.TestCase):
    def test_replace_retain_and_cancel_all(self):
        hub = SubscriptionHub()
        group = SubscriptionGroup()
        first = hub.subscribe("x", lambda _: None)
        group.replace("x", first)
        second = hub.subscribe("x", lambda _: None)
        group.replace("x", second)
        group.replace("y", hub.subscribe("y", lambda _: None))

        self.assertFalse(first.active)
        self.assertEqual(sorted(group.keys()), ["x", "y"])

        group.retain(["y"])
        self.assertNotIn("x", group)
        self.assertFalse(second.active)

        group.cancel_all()
        self.assertEqual(len(group), 0)
        self.assertEqual(hub.subscriber_count(), 0)


class LiveFeedTests(unittest.IsolatedAsyncioTestCase):
    async def test_iterates_pushed_items_until_cancelled(self):
        hub = SubscriptionHub()
        feed = LiveFeed()
        feed.attach(hub.subscribe("t", feed.push))

        hub.publish("t", 1)
        hub.publish("t", 2)

        received = []
        async for item in feed:
            received.append(item)
            if len(received) == 2:
                feed.cancel()

        self.assertEqual(received, [1, 2])
        self.assertTrue(feed.closed)
        self.assertEqual(hub.subscriber_count("t"), 0)

    async def test_cancel_wakes_waiting_consumer(self):
        feed = LiveFeed()

        async def consume():
            return [item async for item in feed]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        feed.cancel()

        self.assertEqual(await asyncio.wait_for(task, timeout=1), [])

    async def test_no_items_after_cancel(self):
        feed = LiveFeed()
        feed.push("queued")
        feed.cancel()
        feed.push("late")

        self.assertEqual([item async for item in feed], [])


if __name__ == "__main__":
    unittest.main()
