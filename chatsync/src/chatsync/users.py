from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Iterable, List

from .blobs import LocalBlobStore
from .clock import NowFunc, now_ms
from .errors import NotFoundError, ReadError, ValidationError, WriteError
from .hub import Subscription, SubscriptionHub
from .identity import validate_uid
from .models import User
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)

# Membership queries are bounded to this many identifiers per call.
MAX_IN_QUERY = 10
DEFAULT_NAME = "Unnamed User"
PROFILE_PHOTO_PATH = "profilePictures/{uid}/profile.jpg"

_USER_COLUMNS = "uid, name, email, phone_number, photo_url, description"


def user_topic(uid: str) -> str:
    return f"user:{uid}"


def prefix_upper_bound(prefix: str) -> str | None:
    """Smallest string greater than every string starting with ``prefix``."""

    for idx in range(len(prefix) - 1, -1, -1):
        code = ord(prefix[idx])
        if code < 0x10FFFF:
            return prefix[:idx] + chr(code + 1)
    return None


def chunked(items: List[str], size: int = MAX_IN_QUERY) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class UserDirectory:
    """Profile documents keyed by uid, with live per-user subscriptions."""

    def __init__(
        self,
        backend: SQLiteBackend,
        hub: SubscriptionHub,
        *,
        blobs: LocalBlobStore | None = None,
        now_func: NowFunc = now_ms,
    ) -> None:
        self._backend = backend
        self._hub = hub
        self._blobs = blobs
        self._now = now_func

    def ensure_profile(
        self,
        uid: str,
        *,
        name: str | None = None,
        email: str | None = None,
        phone_number: str | None = None,
        photo_url: str | None = None,
    ) -> tuple[User, bool]:
        """Create the profile on first authentication; return ``(user, created)``."""

        validate_uid(uid)
        clean_name = (name or "").strip() or DEFAULT_NAME
        try:
            with self._backend.transaction() as cursor:
                row = cursor.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE uid=?", (uid,)).fetchone()
                if row is not None:
                    return User.from_row(row), False
                cursor.execute(
                    """
                    INSERT INTO users (uid, name, email, phone_number, photo_url, description, created_at_ms)
                    VALUES (?, ?, ?, ?, ?, NULL, ?)
                    """,
                    (uid, clean_name, email, phone_number, photo_url, self._now()),
                )
        except sqlite3.Error as exc:
            raise WriteError(f"profile create failed: {exc}") from exc
        user = User(uid=uid, name=clean_name, email=email, phone_number=phone_number, photo_url=photo_url)
        logger.debug("created profile for %s", uid)
        self._hub.publish(user_topic(uid), user)
        return user, True

    def get(self, uid: str) -> User:
        user = self.find(uid)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def find(self, uid: str) -> User | None:
        row = self._fetchone(f"SELECT {_USER_COLUMNS} FROM users WHERE uid=?", (uid,))
        return User.from_row(row) if row is not None else None

    def get_many(self, uids: Iterable[str]) -> dict[str, User]:
        wanted = list(dict.fromkeys(uids))
        found: dict[str, User] = {}
        for batch in chunked(wanted):
            placeholders = ",".join("?" for _ in batch)
            rows = self._fetchall(f"SELECT {_USER_COLUMNS} FROM users WHERE uid IN ({placeholders})", batch)
            for row in rows:
                user = User.from_row(row)
                found[user.uid] = user
        return found

    def update_profile(self, uid: str, *, name: str | None = None, description: str | None = None) -> User:
        updates: dict[str, str] = {}
        if name is not None:
            clean_name = name.strip()
            if not clean_name:
                raise ValidationError("name must not be empty")
            updates["name"] = clean_name
        if description is not None:
            updates["description"] = description
        return self._merge(uid, updates)

    def set_photo(self, uid: str, data: bytes) -> User:
        if self._blobs is None:
            raise WriteError("blob storage is not configured")
        if not data:
            raise ValidationError("photo must not be empty")
        self.get(uid)
        path = PROFILE_PHOTO_PATH.format(uid=uid)
        self._blobs.upload(path, data)
        return self._merge(uid, {"photo_url": self._blobs.download_url(path)})

    def register_device_token(self, uid: str, token: str) -> None:
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("device token must not be empty")
        try:
            with self._backend.transaction() as cursor:
                updated = cursor.execute("UPDATE users SET fcm_token=? WHERE uid=?", (token.strip(), uid)).rowcount
        except sqlite3.Error as exc:
            raise WriteError(f"device token update failed: {exc}") from exc
        if not updated:
            raise NotFoundError("user not found")

    def device_token(self, uid: str) -> str:
        row = self._fetchone("SELECT fcm_token FROM users WHERE uid=?", (uid,))
        if row is None or not row["fcm_token"]:
            raise NotFoundError("no device token registered")
        return str(row["fcm_token"])

    def find_by_name_prefix(self, prefix: str) -> List[User]:
        upper = prefix_upper_bound(prefix)
        if upper is None:
            rows = self._fetchall(f"SELECT {_USER_COLUMNS} FROM users WHERE name >= ? ORDER BY name", (prefix,))
        else:
            rows = self._fetchall(
                f"SELECT {_USER_COLUMNS} FROM users WHERE name >= ? AND name < ? ORDER BY name",
                (prefix, upper),
            )
        return [User.from_row(row) for row in rows]

    def find_by_email(self, email: str) -> List[User]:
        rows = self._fetchall(f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,))
        return [User.from_row(row) for row in rows]

    def find_by_phone(self, phone_number: str) -> List[User]:
        rows = self._fetchall(f"SELECT {_USER_COLUMNS} FROM users WHERE phone_number = ?", (phone_number,))
        return [User.from_row(row) for row in rows]

    def subscribe(self, uid: str, callback: Callable[[User | None], None]) -> Subscription:
        """Deliver the current profile (or ``None``) and then every update."""

        subscription = self._hub.subscribe(user_topic(uid), callback)
        try:
            profile = self.find(uid)
        except ReadError:
            subscription.cancel()
            raise
        subscription.deliver(profile)
        return subscription

    def _merge(self, uid: str, updates: dict[str, str]) -> User:
        try:
            with self._backend.transaction() as cursor:
                if updates:
                    assignments = ", ".join(f"{column}=?" for column in updates)
                    cursor.execute(f"UPDATE users SET {assignments} WHERE uid=?", (*updates.values(), uid))
                row = cursor.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE uid=?", (uid,)).fetchone()
        except sqlite3.Error as exc:
            raise WriteError(f"profile update failed: {exc}") from exc
        if row is None:
            raise NotFoundError("user not found")
        user = User.from_row(row)
        self._hub.publish(user_topic(uid), user)
        return user

    def _fetchone(self, query: str, params: Iterable[object]) -> sqlite3.Row | None:
        try:
            with self._backend.lock:
                return self._backend.connection.execute(query, tuple(params)).fetchone()
        except sqlite3.Error as exc:
            raise ReadError(f"user read failed: {exc}") from exc

    def _fetchall(self, query: str, params: Iterable[object]) -> List[sqlite3.Row]:
        try:
            with self._backend.lock:
                return self._backend.connection.execute(query, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise ReadError(f"user read failed: {exc}") from exc
