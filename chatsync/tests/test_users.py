import tempfile
import unittest

from chatsync.blobs import LocalBlobStore
from chatsync.errors import NotFoundError, ReadError, ValidationError, WriteError
from chatsync.hub import SubscriptionHub
from chatsync.sqlite_backend import SQLiteBackend
from chatsync.users import DEFAULT_NAME, MAX_IN_QUERY, UserDirectory, chunked, prefix_upper_bound

from .support import FakeClock


class HelperTests(unittest.TestCase):
    def test_prefix_upper_bound(self):
        self.assertEqual(prefix_upper_bound("abc"), "abd")
        self.assertEqual(prefix_upper_bound("a\U0010ffff"), "b")
        self.assertIsNone(prefix_upper_bound(""))

    def test_chunked_respects_query_bound(self):
        batches = list(chunked([str(i) for i in range(23)]))

        self.assertEqual([len(batch) for batch in batches], [MAX_IN_QUERY, MAX_IN_QUERY, 3])


class UserDirectoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.backend = SQLiteBackend()
        self.hub = SubscriptionHub()
        self.blobs = LocalBlobStore(self.tmpdir.name, "http://files.test")
        self.users = UserDirectory(self.backend, self.hub, blobs=self.blobs, now_func=FakeClock().now)

    def tearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    def test_ensure_profile_creates_once(self):
        user, created = self.users.ensure_profile("alice", email="a@example.com")
        again, created_again = self.users.ensure_profile("alice", name="Other")

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(user.name, DEFAULT_NAME)
        self.assertEqual(again, user)

    def test_get_missing_raises(self):
        with self.assertRaises(NotFoundError):
            self.users.get("nobody")
        self.assertIsNone(self.users.find("nobody"))

    def test_get_many_spans_query_batches(self):
        uids = [f"user{i:02d}" for i in range(25)]
        for uid in uids:
            self.users.ensure_profile(uid, name=uid)

        found = self.users.get_many(uids + ["missing"])

        self.assertEqual(sorted(found), uids)

    def test_update_profile_merges_and_publishes(self):
        self.users.ensure_profile("alice", name="Alice", email="a@example.com")
        updates = []
        self.users.subscribe("alice", updates.append)

        updated = self.users.update_profile("alice", description="hello")

        self.assertEqual(updated.name, "Alice")
        self.assertEqual(updated.email, "a@example.com")
        self.assertEqual(updated.description, "hello")
        self.assertEqual([u.description for u in updates], [None, "hello"])

    def test_update_profile_validation(self):
        self.users.ensure_profile("alice", name="Alice")
        with self.assertRaises(ValidationError):
            self.users.update_profile("alice", name="   ")
        with self.assertRaises(NotFoundError):
            self.users.update_profile("nobody", description="x")

    def test_subscribe_to_unknown_user_delivers_none(self):
        updates = []
        self.users.subscribe("later", updates.append)
        self.users.ensure_profile("later", name="Later")

        self.assertIsNone(updates[0])
        self.assertEqual(updates[1].name, "Later")

    def test_subscribe_failing_read_leaves_no_subscription(self):
        self.backend.close()

        with self.assertRaises(ReadError):
            self.users.subscribe("alice", lambda _: None)
        self.assertEqual(self.hub.subscriber_count(), 0)

    def test_set_photo_stores_blob_and_url(self):
        self.users.ensure_profile("alice", name="Alice")

        user = self.users.set_photo("alice", b"\xff\xd8jpeg")

        self.assertEqual(user.photo_url, "http://files.test/blobs/profilePictures/alice/profile.jpg")
        self.assertEqual(self.blobs.read("profilePictures/alice/profile.jpg"), b"\xff\xd8jpeg")

    def test_set_photo_without_blob_store_fails(self):
        users = UserDirectory(self.backend, self.hub)
        users.ensure_profile("alice", name="Alice")

        with self.assertRaises(WriteError):
            users.set_photo("alice", b"data")

    def test_device_token_round_trip(self):
        self.users.ensure_profile("alice", name="Alice")
        with self.assertRaises(NotFoundError):
            self.users.device_token("alice")

        self.users.register_device_token("alice", " tok-1 ")

        self.assertEqual(self.users.device_token("alice"), "tok-1")
        with self.assertRaises(NotFoundError):
            self.users.register_device_token("nobody", "tok")


if __name__ == "__main__":
    unittest.main()
