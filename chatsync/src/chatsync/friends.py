from __future__ import annotations

import base64
import binascii
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, List

from .clock import NowFunc, now_ms
from .errors import ReadError, ValidationError, WriteError
from .identity import validate_uid
from .models import FriendEdge, User
from .sqlite_backend import SQLiteBackend
from .users import UserDirectory

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Friend:
    edge: FriendEdge
    user: User | None

    def to_api_dict(self) -> dict[str, Any]:
        body = self.edge.to_api_dict()
        body["user"] = self.user.to_api_dict() if self.user else None
        return body


@dataclass(frozen=True)
class FriendPage:
    items: List[Friend]
    next_cursor: str | None

    def to_api_dict(self) -> dict[str, Any]:
        return {"items": [item.to_api_dict() for item in self.items], "next_cursor": self.next_cursor}


def encode_cursor(edge: FriendEdge) -> str:
    raw = json.dumps({"a": edge.added_at_ms, "u": edge.friend_uid}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[int, str]:
    padding = "=" * (-len(cursor) % 4)
    try:
        body = json.loads(base64.urlsafe_b64decode(cursor + padding))
    except (ValueError, binascii.Error) as exc:
        raise ValidationError("invalid cursor") from exc
    if not isinstance(body, dict) or not isinstance(body.get("a"), int) or not isinstance(body.get("u"), str):
        raise ValidationError("invalid cursor")
    return body["a"], body["u"]


class FriendDirectory:
    """Directed contact lists plus user search scoped to the caller."""

    def __init__(self, backend: SQLiteBackend, users: UserDirectory, *, now_func: NowFunc = now_ms) -> None:
        self._backend = backend
        self._users = users
        self._now = now_func

    def add(self, owner_uid: str, friend_uid: str) -> tuple[FriendEdge, bool]:
        """Add ``friend_uid`` to the owner's contacts; ``created`` is False if already present."""

        validate_uid(owner_uid)
        validate_uid(friend_uid)
        if owner_uid == friend_uid:
            raise ValidationError("cannot add yourself as a friend")
        self._users.get(friend_uid)
        try:
            with self._backend.transaction() as cursor:
                row = cursor.execute(
                    "SELECT owner_uid, friend_uid, added_at_ms FROM friends WHERE owner_uid=? AND friend_uid=?",
                    (owner_uid, friend_uid),
                ).fetchone()
                if row is not None:
                    return FriendEdge.from_row(row), False
                edge = FriendEdge(owner_uid=owner_uid, friend_uid=friend_uid, added_at_ms=self._now())
                cursor.execute(
                    "INSERT INTO friends (owner_uid, friend_uid, added_at_ms) VALUES (?, ?, ?)",
                    (edge.owner_uid, edge.friend_uid, edge.added_at_ms),
                )
        except sqlite3.Error as exc:
            raise WriteError(f"friend add failed: {exc}") from exc
        logger.debug("%s added friend %s", owner_uid, friend_uid)
        return edge, True

    def list(self, owner_uid: str, *, limit: int = DEFAULT_PAGE_SIZE, cursor: str | None = None) -> FriendPage:
        """Return one page of contacts, newest first."""

        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        query = "SELECT owner_uid, friend_uid, added_at_ms FROM friends WHERE owner_uid=?"
        params: list[object] = [owner_uid]
        if cursor:
            after_ms, after_uid = decode_cursor(cursor)
            query += " AND (added_at_ms < ? OR (added_at_ms = ? AND friend_uid < ?))"
            params.extend([after_ms, after_ms, after_uid])
        query += " ORDER BY added_at_ms DESC, friend_uid DESC LIMIT ?"
        params.append(limit + 1)
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise ReadError(f"friend list failed: {exc}") from exc

        edges = [FriendEdge.from_row(row) for row in rows[:limit]]
        profiles = self._users.get_many(edge.friend_uid for edge in edges)
        items = [Friend(edge=edge, user=profiles.get(edge.friend_uid)) for edge in edges]
        next_cursor = encode_cursor(edges[-1]) if len(rows) > limit else None
        return FriendPage(items=items, next_cursor=next_cursor)

    def search(self, query: str, searcher_uid: str) -> List[User]:
        """Match by name prefix, exact email or exact phone; never returns the searcher."""

        term = (query or "").strip()
        if not term:
            return []
        results: dict[str, User] = {}
        for matches in (
            self._users.find_by_name_prefix(term),
            self._users.find_by_email(term),
            self._users.find_by_phone(term),
        ):
            for user in matches:
                if user.uid != searcher_uid:
                    results.setdefault(user.uid, user)
        return list(results.values())
