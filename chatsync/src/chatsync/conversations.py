from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Dict, List, Sequence

from .clock import NowFunc, now_ms
from .errors import NotFoundError, ReadError, ValidationError, WriteError
from .hub import Subscription, SubscriptionGroup, SubscriptionHub
from .identity import participants_of, resolve
from .models import ConversationRow, ConversationSummary, User
from .sqlite_backend import SQLiteBackend
from .users import UserDirectory

logger = logging.getLogger(__name__)

_SUMMARY_COLUMNS = "conv_id, uid_a, uid_b, last_message, last_updated_ms, last_seq"


def chats_topic(uid: str) -> str:
    return f"chats:{uid}"


def _summary_from_row(row: sqlite3.Row) -> ConversationSummary:
    for column in ("last_updated_ms", "last_seq"):
        if not isinstance(row[column], int):
            raise ReadError(f"{column} must be an integer")
    return ConversationSummary(
        conv_id=str(row["conv_id"]),
        participants=(str(row["uid_a"]), str(row["uid_b"])),
        last_message=str(row["last_message"] or ""),
        last_updated_ms=row["last_updated_ms"],
        last_seq=row["last_seq"],
    )


class ConversationIndex:
    """One summary record per conversation, used to render chat lists.

    Summaries are merged field by field and concurrent writers are resolved
    last-writer-wins.
    """

    def __init__(self, backend: SQLiteBackend, hub: SubscriptionHub, *, now_func: NowFunc = now_ms) -> None:
        self._backend = backend
        self._hub = hub
        self._now = now_func

    def upsert(
        self,
        conv_id: str,
        *,
        participants: Sequence[str] | None = None,
        last_message: str | None = None,
        last_updated_ms: int | None = None,
        last_seq: int | None = None,
    ) -> ConversationSummary:
        expected = participants_of(conv_id)
        if participants is not None:
            if len(participants) != 2 or resolve(participants[0], participants[1]) != conv_id:
                raise ValidationError("participants do not match conversation id")
        try:
            with self._backend.transaction() as cursor:
                row = cursor.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM conversations WHERE conv_id=?", (conv_id,)
                ).fetchone()
                if row is None:
                    cursor.execute(
                        f"INSERT INTO conversations ({_SUMMARY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            conv_id,
                            expected[0],
                            expected[1],
                            last_message or "",
                            self._now() if last_updated_ms is None else last_updated_ms,
                            last_seq or 0,
                        ),
                    )
                else:
                    updates: Dict[str, object] = {}
                    if last_message is not None:
                        updates["last_message"] = last_message
                    if last_updated_ms is not None:
                        updates["last_updated_ms"] = last_updated_ms
                    if last_seq is not None:
                        updates["last_seq"] = last_seq
                    if updates:
                        assignments = ", ".join(f"{column}=?" for column in updates)
                        cursor.execute(
                            f"UPDATE conversations SET {assignments} WHERE conv_id=?",
                            (*updates.values(), conv_id),
                        )
                row = cursor.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM conversations WHERE conv_id=?", (conv_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise WriteError(f"conversation upsert failed: {exc}") from exc
        summary = _summary_from_row(row)
        self._publish(summary)
        return summary

    def start(self, uid: str, other_uid: str) -> tuple[ConversationSummary, bool]:
        """Create the conversation between two users unless it already exists."""

        conv_id = resolve(uid, other_uid)
        first, second = participants_of(conv_id)
        try:
            with self._backend.transaction() as cursor:
                row = cursor.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM conversations WHERE conv_id=?", (conv_id,)
                ).fetchone()
                if row is not None:
                    return _summary_from_row(row), False
                now = self._now()
                cursor.execute(
                    f"INSERT INTO conversations ({_SUMMARY_COLUMNS}) VALUES (?, ?, ?, '', ?, 0)",
                    (conv_id, first, second, now),
                )
        except sqlite3.Error as exc:
            raise WriteError(f"conversation create failed: {exc}") from exc
        summary = ConversationSummary(conv_id=conv_id, participants=(first, second), last_message="", last_updated_ms=now)
        logger.debug("started conversation %s", conv_id)
        self._publish(summary)
        return summary, True

    def get(self, conv_id: str) -> ConversationSummary:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM conversations WHERE conv_id=?", (conv_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise ReadError(f"conversation read failed: {exc}") from exc
        if row is None:
            raise NotFoundError("conversation not found")
        return _summary_from_row(row)

    def list_for(self, uid: str, *, limit: int | None = None) -> List[ConversationSummary]:
        """Summaries where ``uid`` participates, most recently updated first."""

        query = (
            f"SELECT {_SUMMARY_COLUMNS} FROM conversations WHERE uid_a=? OR uid_b=? "
            "ORDER BY last_updated_ms DESC, conv_id ASC"
        )
        params: list[object] = [uid, uid]
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise ReadError(f"conversation read failed: {exc}") from exc
        return [_summary_from_row(row) for row in rows]

    def watch(
        self,
        uid: str,
        callback: Callable[[List[ConversationRow]], None],
        *,
        profiles: UserDirectory,
        limit: int | None = None,
    ) -> "ConversationListWatch":
        watch = ConversationListWatch(self, self._hub, profiles, uid, callback, limit=limit)
        watch.start()
        return watch

    def _publish(self, summary: ConversationSummary) -> None:
        for participant in summary.participants:
            self._hub.publish(chats_topic(participant), summary)


class ConversationListWatch:
    """Live conversation list for one user with the other participant joined in.

    Every visible row holds its own profile subscription. Those inner
    subscriptions live in a ``SubscriptionGroup``: rows that drop out of the
    visible window are released immediately, and ``restart``/``cancel``
    release all of them as a batch.
    """

    def __init__(
        self,
        index: ConversationIndex,
        hub: SubscriptionHub,
        profiles: UserDirectory,
        uid: str,
        callback: Callable[[List[ConversationRow]], None],
        *,
        limit: int | None = None,
    ) -> None:
        self._index = index
        self._hub = hub
        self._profiles = profiles
        self.uid = uid
        self._callback = callback
        self._limit = limit
        self._outer: Subscription | None = None
        self._rows = SubscriptionGroup()
        self._summaries: List[ConversationSummary] = []
        self._other_users: Dict[str, User | None] = {}
        self._refreshing = False
        self.active = False

    @property
    def row_subscriptions(self) -> SubscriptionGroup:
        return self._rows

    def start(self) -> None:
        self.active = True
        self._outer = self._hub.subscribe(chats_topic(self.uid), self._on_summary)
        self.refresh()

    def restart(self) -> None:
        self._release()
        self.start()

    def cancel(self) -> None:
        self._release()

    def refresh(self) -> None:
        if not self.active:
            return
        summaries = self._index.list_for(self.uid, limit=self._limit)
        self._refreshing = True
        try:
            visible = [summary.conv_id for summary in summaries]
            self._rows.retain(visible)
            for conv_id in list(self._other_users):
                if conv_id not in self._rows:
                    self._other_users.pop(conv_id, None)
            for summary in summaries:
                if summary.conv_id not in self._rows:
                    other_uid = summary.other_participant(self.uid)
                    self._rows.replace(
                        summary.conv_id,
                        self._profiles.subscribe(other_uid, self._profile_callback(summary.conv_id)),
                    )
            self._summaries = summaries
        finally:
            self._refreshing = False
        self._emit()

    def rows(self) -> List[ConversationRow]:
        return [
            ConversationRow(summary=summary, other_user=self._other_users.get(summary.conv_id))
            for summary in self._summaries
        ]

    def _on_summary(self, _: ConversationSummary) -> None:
        try:
            self.refresh()
        except ReadError:
            logger.warning("conversation list refresh failed for %s", self.uid, exc_info=True)

    def _profile_callback(self, conv_id: str) -> Callable[[User | None], None]:
        def on_profile(user: User | None) -> None:
            if not self.active:
                return
            self._other_users[conv_id] = user
            if not self._refreshing:
                self._emit()

        return on_profile

    def _emit(self) -> None:
        if self.active:
            self._callback(self.rows())

    def _release(self) -> None:
        self.active = False
        if self._outer is not None:
            self._outer.cancel()
            self._outer = None
        self._rows.cancel_all()
        self._other_users.clear()
        self._summaries = []
