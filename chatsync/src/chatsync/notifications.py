from __future__ import annotations

import asyncio
import logging
from typing import Any, Set

import aiohttp

from .errors import NotFoundError, ReadError
from .users import UserDirectory

logger = logging.getLogger(__name__)

DEFAULT_PUSH_URL = "https://fcm.googleapis.com/fcm/send"


def build_push_payload(
    token: str, *, sender_name: str, message_text: str, conv_id: str, sender_uid: str
) -> dict[str, Any]:
    return {
        "to": token,
        "notification": {
            "title": sender_name or "New Message",
            "body": message_text,
            "sound": "default",
        },
        "data": {
            "chatId": conv_id,
            "senderId": sender_uid,
            "message": message_text,
        },
    }


class NotificationDispatcher:
    """Best-effort push notifications for new messages.

    A push is attempted at most once. Missing tokens, transport errors and
    gateway rejections are logged and dropped; they never reach the sender.
    """

    def __init__(
        self,
        users: UserDirectory,
        *,
        push_url: str = DEFAULT_PUSH_URL,
        server_key: str = "",
        timeout_s: float = 10.0,
    ) -> None:
        self._users = users
        self.push_url = push_url
        self._server_key = server_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._server_key)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def notify(
        self,
        recipient_uid: str,
        sender_name: str,
        message_text: str,
        conv_id: str,
        sender_uid: str = "",
    ) -> bool:
        """Send one push to the recipient's device; return whether it was accepted."""

        if not self.enabled:
            return False
        try:
            token = self._users.device_token(recipient_uid)
        except NotFoundError:
            logger.debug("no device token for %s; skipping push", recipient_uid)
            return False
        except ReadError:
            logger.warning("device token lookup failed for %s", recipient_uid, exc_info=True)
            return False

        payload = build_push_payload(
            token,
            sender_name=sender_name,
            message_text=message_text,
            conv_id=conv_id,
            sender_uid=sender_uid,
        )
        headers = {"Authorization": f"key={self._server_key}"}
        try:
            session = self._client()
            async with session.post(self.push_url, json=payload, headers=headers) as response:
                if response.status >= 300:
                    logger.warning("push gateway rejected notification for %s: %s", recipient_uid, response.status)
                    return False
                await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("push to %s dropped: %s", recipient_uid, exc)
            return False
        return True

    def dispatch(
        self,
        recipient_uid: str,
        sender_name: str,
        message_text: str,
        conv_id: str,
        sender_uid: str = "",
    ) -> asyncio.Task | None:
        """Schedule ``notify`` without waiting for it."""

        if not self.enabled:
            return None
        task = asyncio.create_task(self.notify(recipient_uid, sender_name, message_text, conv_id, sender_uid))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session
