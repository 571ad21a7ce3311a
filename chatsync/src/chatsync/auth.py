"""Email/password accounts, email verification and bearer sessions."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import sqlite3
from dataclasses import dataclass
from typing import Callable, Dict

import nacl.exceptions
import nacl.pwhash

from .clock import NowFunc, now_ms
from .errors import AuthError, EmailNotVerified, NotFoundError, ReadError, ValidationError, WriteError
from .hub import Subscription, SubscriptionHub
from .models import User
from .sqlite_backend import SQLiteBackend
from .users import UserDirectory

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[0-9]{10,15}$")
MIN_PASSWORD_LENGTH = 6
AUTH_TOPIC = "auth"


@dataclass
class Session:
    uid: str
    session_token: str
    expires_at_ms: int


class Mailer:
    def send_verification(self, email: str, token: str) -> None:
        raise NotImplementedError


class LoggingMailer(Mailer):
    """Writes verification links to the log instead of sending mail."""

    def __init__(self, verify_url: str) -> None:
        self.verify_url = verify_url

    def send_verification(self, email: str, token: str) -> None:
        logger.info("verification link for %s: %s?token=%s", email, self.verify_url, token)


class SessionStore:
    """Active bearer sessions keyed by token."""

    def __init__(self, ttl_ms: int = 60 * 60 * 1000, *, now_func: NowFunc = now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_token: Dict[str, Session] = {}

    def create(self, uid: str) -> Session:
        session = Session(
            uid=uid,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._by_token[session.session_token] = session
        return session

    def get(self, session_token: str) -> Session | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.session_token, None)


def validate_email(email: object) -> str:
    if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
        raise ValidationError("Please enter a valid email.")
    return email.strip()


class AuthService:
    def __init__(
        self,
        backend: SQLiteBackend,
        users: UserDirectory,
        hub: SubscriptionHub,
        mailer: Mailer,
        *,
        sessions: SessionStore | None = None,
        require_verified_email: bool = True,
        opslimit: int = nacl.pwhash.argon2id.OPSLIMIT_INTERACTIVE,
        memlimit: int = nacl.pwhash.argon2id.MEMLIMIT_INTERACTIVE,
        now_func: NowFunc = now_ms,
    ) -> None:
        self._backend = backend
        self._users = users
        self._hub = hub
        self.mailer = mailer
        self.sessions = sessions or SessionStore()
        self.require_verified_email = require_verified_email
        self._opslimit = opslimit
        self._memlimit = memlimit
        self._now = now_func

    async def sign_up(self, email: str, password: str, *, name: str, phone_number: str) -> User:
        clean_email = validate_email(email)
        clean_name = (name or "").strip()
        clean_phone = (phone_number or "").strip()
        if not clean_name:
            raise ValidationError("Please enter your name.")
        if not clean_phone:
            raise ValidationError("Please enter your phone number.")
        if not PHONE_RE.match(clean_phone):
            raise ValidationError("Please enter a valid phone number.")
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")

        password_hash = await asyncio.to_thread(
            nacl.pwhash.argon2id.str, password.encode("utf-8"), opslimit=self._opslimit, memlimit=self._memlimit
        )
        uid = secrets.token_hex(14)
        verify_token = secrets.token_urlsafe(24)
        try:
            with self._backend.transaction() as cursor:
                taken = cursor.execute("SELECT 1 FROM credentials WHERE email=?", (clean_email,)).fetchone()
                if taken:
                    raise AuthError("email already in use")
                cursor.execute(
                    """
                    INSERT INTO users (uid, name, email, phone_number, photo_url, description, created_at_ms)
                    VALUES (?, ?, ?, ?, NULL, NULL, ?)
                    """,
                    (uid, clean_name, clean_email, clean_phone, self._now()),
                )
                cursor.execute(
                    "INSERT INTO credentials (uid, email, password_hash, verified, verify_token) VALUES (?, ?, ?, 0, ?)",
                    (uid, clean_email, password_hash, verify_token),
                )
        except sqlite3.Error as exc:
            raise WriteError(f"sign up failed: {exc}") from exc
        logger.info("registered %s", uid)
        self.mailer.send_verification(clean_email, verify_token)
        return self._users.get(uid)

    async def sign_in(self, email: str, password: str) -> Session:
        clean_email = validate_email(email)
        if not password:
            raise ValidationError("Please enter your password.")
        row = await self._check_password(clean_email, password)

        uid = str(row["uid"])
        if self.require_verified_email and not row["verified"]:
            self.send_verification_email(uid)
            raise EmailNotVerified("A new verification email has been sent to your email address.")

        user, _ = self._users.ensure_profile(uid, email=clean_email)
        session = self.sessions.create(uid)
        logger.debug("signed in %s", uid)
        self._hub.publish(AUTH_TOPIC, user)
        return session

    def send_verification_email(self, uid: str) -> None:
        token = secrets.token_urlsafe(24)
        try:
            with self._backend.transaction() as cursor:
                row = cursor.execute("SELECT email FROM credentials WHERE uid=?", (uid,)).fetchone()
                if row is None:
                    raise NotFoundError("account not found")
                cursor.execute("UPDATE credentials SET verify_token=? WHERE uid=?", (token, uid))
        except sqlite3.Error as exc:
            raise WriteError(f"verification email failed: {exc}") from exc
        self.mailer.send_verification(str(row["email"]), token)

    async def resend_verification(self, email: str, password: str) -> None:
        row = await self._check_password(validate_email(email), password or "")
        self.send_verification_email(str(row["uid"]))

    def verify_email(self, token: str) -> str:
        if not token:
            raise ValidationError("token required")
        try:
            with self._backend.transaction() as cursor:
                row = cursor.execute("SELECT uid FROM credentials WHERE verify_token=?", (token,)).fetchone()
                if row is None:
                    raise AuthError("verification link invalid or expired")
                cursor.execute("UPDATE credentials SET verified=1, verify_token=NULL WHERE uid=?", (row["uid"],))
        except sqlite3.Error as exc:
            raise WriteError(f"verification failed: {exc}") from exc
        return str(row["uid"])

    def authenticate(self, session_token: str | None) -> Session | None:
        if not session_token:
            return None
        return self.sessions.get(session_token)

    def sign_out(self, session_token: str) -> None:
        session = self.sessions.get(session_token)
        if session is None:
            return
        self.sessions.invalidate(session)
        self._hub.publish(AUTH_TOPIC, None)

    def on_auth_state_change(self, callback: Callable[[User | None], None]) -> Subscription:
        return self._hub.subscribe(AUTH_TOPIC, callback)

    async def _check_password(self, email: str, password: str) -> sqlite3.Row:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    "SELECT uid, password_hash, verified FROM credentials WHERE email=?", (email,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise ReadError(f"credential lookup failed: {exc}") from exc
        if row is None:
            raise AuthError("invalid email or password")
        try:
            await asyncio.to_thread(nacl.pwhash.verify, bytes(row["password_hash"]), password.encode("utf-8"))
        except nacl.exceptions.InvalidkeyError as exc:
            raise AuthError("invalid email or password") from exc
        return row
