from __future__ import annotations

import logging
import secrets
import sqlite3
from typing import Callable, List

from .clock import NowFunc, now_ms
from .errors import ReadError, ValidationError, WriteError
from .hub import LiveFeed, Subscription, SubscriptionHub
from .models import Message, Sender
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4096
_MESSAGE_COLUMNS = "conv_id, seq, msg_id, text, created_at_ms, sender_id, sender_name"


def conversation_topic(conv_id: str) -> str:
    return f"conv:{conv_id}"


class MessageStore:
    """Append-only, per-conversation message log backed by SQLite.

    Each append gets a server timestamp and a per-conversation ``seq``.
    Timestamps never go backwards within a conversation, so ``seq`` order and
    ``created_at_ms`` order agree. Appends are idempotent on
    ``(conv_id, msg_id)``.
    """

    def __init__(self, backend: SQLiteBackend, hub: SubscriptionHub, *, now_func: NowFunc = now_ms) -> None:
        self._backend = backend
        self._hub = hub
        self._now = now_func

    def append(
        self,
        conv_id: str,
        sender: Sender,
        text: str,
        *,
        msg_id: str | None = None,
    ) -> tuple[Message, bool]:
        """Append a message and publish it; return ``(message, created)``."""

        if not isinstance(text, str) or not text.strip():
            raise ValidationError("message text must not be empty")
        clean_text = text.strip()
        if len(clean_text) > MAX_TEXT_LENGTH:
            raise ValidationError("message text too long")
        if msg_id is None:
            msg_id = f"m_{secrets.token_urlsafe(12)}"
        elif not isinstance(msg_id, str) or not msg_id:
            raise ValidationError("msg_id must be a non-empty string")

        try:
            with self._backend.transaction() as cursor:
                existing = cursor.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conv_id=? AND msg_id=?",
                    (conv_id, msg_id),
                ).fetchone()
                if existing is not None:
                    return Message.from_row(existing), False

                now = self._now()
                cursor.execute(
                    "INSERT OR IGNORE INTO conv_seq (conv_id, next_seq, last_created_at_ms) VALUES (?, 1, ?)",
                    (conv_id, now),
                )
                seq_row = cursor.execute(
                    "SELECT next_seq, last_created_at_ms FROM conv_seq WHERE conv_id=?", (conv_id,)
                ).fetchone()
                seq = int(seq_row[0])
                created_at_ms = max(now, int(seq_row[1]))
                cursor.execute(
                    "UPDATE conv_seq SET next_seq = next_seq + 1, last_created_at_ms = ? WHERE conv_id=?",
                    (created_at_ms, conv_id),
                )
                cursor.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (conv_id, seq, msg_id, clean_text, created_at_ms, sender.id, sender.display_name),
                )
        except sqlite3.Error as exc:
            raise WriteError(f"message append failed: {exc}") from exc

        message = Message(
            conv_id=conv_id,
            seq=seq,
            msg_id=msg_id,
            text=clean_text,
            created_at_ms=created_at_ms,
            sender=sender,
        )
        logger.debug("appended %s seq=%d to %s", msg_id, seq, conv_id)
        self._hub.publish(conversation_topic(conv_id), message)
        return message, True

    def list(self, conv_id: str, *, after_seq: int = 0, limit: int | None = None) -> List[Message]:
        """Return messages with ``seq`` greater than ``after_seq`` in ascending order."""

        if after_seq < 0:
            raise ValidationError("after_seq must be non-negative")
        query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conv_id=? AND seq>? ORDER BY created_at_ms ASC, seq ASC"
        params: list[object] = [conv_id, after_seq]
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise ReadError(f"message read failed: {exc}") from exc
        return [Message.from_row(row) for row in rows]

    def count(self, conv_id: str) -> int:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    "SELECT COUNT(*) FROM messages WHERE conv_id=?", (conv_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise ReadError(f"message read failed: {exc}") from exc
        return int(row[0])

    def subscribe(
        self,
        conv_id: str,
        callback: Callable[[Message], None],
        *,
        after_seq: int = 0,
    ) -> Subscription:
        """Deliver the backlog after ``after_seq``, then live appends.

        Appends published while the backlog is being read are buffered and
        de-duplicated by ``seq`` so every message reaches ``callback`` once,
        in order. Resubscribing with the last delivered ``seq`` resumes the
        sequence.
        """

        buffered: List[Message] = []
        buffering = True
        last_seq = after_seq

        def deliver(message: Message) -> None:
            nonlocal last_seq
            if message.seq <= last_seq:
                return
            last_seq = message.seq
            callback(message)

        def on_publish(message: Message) -> None:
            if buffering:
                buffered.append(message)
                return
            deliver(message)

        subscription = self._hub.subscribe(conversation_topic(conv_id), on_publish)
        try:
            backlog = self.list(conv_id, after_seq=after_seq)
        except ReadError:
            subscription.cancel()
            raise
        for message in backlog:
            if not subscription.active:
                break
            deliver(message)
        buffering = False
        for message in buffered:
            if not subscription.active:
                break
            deliver(message)
        buffered.clear()
        return subscription

    def feed(self, conv_id: str, *, after_seq: int = 0) -> LiveFeed:
        live = LiveFeed()
        return live.attach(self.subscribe(conv_id, live.push, after_seq=after_seq))
