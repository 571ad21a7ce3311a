import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from chatsync.hub import SubscriptionHub
from chatsync.notifications import NotificationDispatcher, build_push_payload
from chatsync.sqlite_backend import SQLiteBackend
from chatsync.users import UserDirectory


class PushPayloadTests(unittest.TestCase):
    def test_payload_shape(self):
        payload = build_push_payload(
            "tok", sender_name="Alice", message_text="hi", conv_id="alice_bob", sender_uid="alice"
        )

        self.assertEqual(payload["to"], "tok")
        self.assertEqual(payload["notification"], {"title": "Alice", "body": "hi", "sound": "default"})
        self.assertEqual(payload["data"], {"chatId": "alice_bob", "senderId": "alice", "message": "hi"})


class NotificationDispatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.requests: list[tuple[str | None, dict]] = []
        self.reply_status = 200

        async def handle_push(request: web.Request) -> web.Response:
            self.requests.append((request.headers.get("Authorization"), await request.json()))
            return web.json_response({"success": 1}, status=self.reply_status)

        gateway = web.Application()
        gateway.router.add_post("/fcm/send", handle_push)
        self.gateway = TestServer(gateway)
        await self.gateway.start_server()

        self.backend = SQLiteBackend()
        self.users = UserDirectory(self.backend, SubscriptionHub())
        self.users.ensure_profile("alice", name="Alice")
        self.users.ensure_profile("bob", name="Bob")
        self.dispatcher = NotificationDispatcher(
            self.users, push_url=str(self.gateway.make_url("/fcm/send")), server_key="secret"
        )

    async def asyncTearDown(self):
        await self.dispatcher.close()
        await self.gateway.close()
        self.backend.close()

    async def test_sends_push_to_registered_device(self):
        self.users.register_device_token("bob", "bob-device")

        accepted = await self.dispatcher.notify("bob", "Alice", "hi", "alice_bob", "alice")

        self.assertTrue(accepted)
        self.assertEqual(len(self.requests), 1)
        auth, body = self.requests[0]
        self.assertEqual(auth, "key=secret")
        self.assertEqual(body["to"], "bob-device")
        self.assertEqual(body["data"]["chatId"], "alice_bob")

    async def test_missing_token_is_skipped(self):
        accepted = await self.dispatcher.notify("bob", "Alice", "hi", "alice_bob")

        self.assertFalse(accepted)
        self.assertEqual(self.requests, [])

    async def test_gateway_rejection_is_logged_not_raised(self):
        self.users.register_device_token("bob", "bob-device")
        self.reply_status = 500

        with self.assertLogs("chatsync.notifications", level="WARNING"):
            accepted = await self.dispatcher.notify("bob", "Alice", "hi", "alice_bob")

        self.assertFalse(accepted)

    async def test_unreachable_gateway_is_dropped(self):
        self.users.register_device_token("bob", "bob-device")
        await self.gateway.close()

        accepted = await self.dispatcher.notify("bob", "Alice", "hi", "alice_bob")

        self.assertFalse(accepted)

    async def test_dispatch_is_tracked_and_drained(self):
        self.users.register_device_token("bob", "bob-device")

        task = self.dispatcher.dispatch("bob", "Alice", "hi", "alice_bob")
        self.assertIsNotNone(task)
        await self.dispatcher.drain()

        self.assertEqual(self.dispatcher.pending, 0)
        self.assertEqual(len(self.requests), 1)

    async def test_disabled_without_server_key(self):
        dispatcher = NotificationDispatcher(self.users, push_url=str(self.gateway.make_url("/fcm/send")))

        self.assertFalse(dispatcher.enabled)
        self.assertIsNone(dispatcher.dispatch("bob", "Alice", "hi", "alice_bob"))
        self.assertFalse(await dispatcher.notify("bob", "Alice", "hi", "alice_bob"))
        await dispatcher.close()


if __name__ == "__main__":
    unittest.main()
