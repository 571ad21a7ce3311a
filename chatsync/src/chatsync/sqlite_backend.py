from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns the shared SQLite connection and applies chatsync migrations.

    ``db_path`` may be ``":memory:"`` for an ephemeral store.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._lock = threading.RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._closed = False
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run the body inside ``BEGIN IMMEDIATE``; commit or roll back."""

        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                self._conn.commit()
            except Exception:
                if self._conn.in_transaction:
                    self._conn.rollback()
                raise
            finally:
                cursor.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                uid TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT,
                phone_number TEXT,
                photo_url TEXT,
                description TEXT,
                fcm_token TEXT,
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS users_name ON users (name)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS users_email ON users (email)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS users_phone ON users (phone_number)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credentials (
                uid TEXT PRIMARY KEY REFERENCES users (uid),
                email TEXT NOT NULL UNIQUE,
                password_hash BLOB NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                verify_token TEXT UNIQUE
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conv_id TEXT PRIMARY KEY,
                uid_a TEXT NOT NULL,
                uid_b TEXT NOT NULL,
                last_message TEXT NOT NULL DEFAULT '',
                last_updated_ms INTEGER NOT NULL,
                last_seq INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS conversations_a ON conversations (uid_a, last_updated_ms)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS conversations_b ON conversations (uid_b, last_updated_ms)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                conv_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                msg_id TEXT NOT NULL,
                text TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                sender_id TEXT NOT NULL,
                sender_name TEXT NOT NULL,
                PRIMARY KEY (conv_id, seq),
                UNIQUE (conv_id, msg_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conv_seq (
                conv_id TEXT PRIMARY KEY,
                next_seq INTEGER NOT NULL,
                last_created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS friends (
                owner_uid TEXT NOT NULL,
                friend_uid TEXT NOT NULL,
                added_at_ms INTEGER NOT NULL,
                PRIMARY KEY (owner_uid, friend_uid)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS friends_by_added ON friends (owner_uid, added_at_ms)")
