import asyncio
import json
from typing import Any, Callable

import nacl.pwhash
from aiohttp import WSMessage, web

from chatsync.auth import Mailer
from chatsync.config import ServiceConfig
from chatsync.service import ChatContext


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_verification(self, email: str, token: str) -> None:
        self.sent.append((email, token))

    def last_token(self, email: str) -> str:
        return [token for sent_to, token in self.sent if sent_to == email][-1]


def make_context(clock: FakeClock | None = None, **config_options) -> ChatContext:
    """In-memory context with a fake clock and cheap password hashing."""

    clock = clock or FakeClock()
    return ChatContext.create(
        ServiceConfig(**config_options),
        now_func=clock.now,
        mailer=RecordingMailer(),
        opslimit=nacl.pwhash.argon2id.OPSLIMIT_MIN,
        memlimit=nacl.pwhash.argon2id.MEMLIMIT_MIN,
    )


async def _receive_with_deadline(ws: web.WebSocketResponse, deadline: float) -> WSMessage:
    loop = asyncio.get_running_loop()
    remaining = deadline - loop.time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


async def recv_json_until(
    ws: web.WebSocketResponse,
    *,
    predicate: Callable[[Any], bool],
    timeout: float = 2.0,
) -> Any:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        msg = await _receive_with_deadline(ws, deadline)
        if msg.type in (web.WSMsgType.CLOSE, web.WSMsgType.CLOSING, web.WSMsgType.CLOSED):
            raise AssertionError("WebSocket closed while waiting for message")
        if msg.type != web.WSMsgType.TEXT:
            continue
        payload = json.loads(msg.data)
        if isinstance(payload, dict) and payload.get("t") == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": payload.get("id")})
            continue
        if predicate(payload):
            return payload


async def assert_no_app_messages(ws: web.WebSocketResponse, *, timeout: float) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            return
        if msg.type != web.WSMsgType.TEXT:
            continue
        payload = json.loads(msg.data)
        if payload.get("t") in {"ping", "pong"}:
            continue
        raise AssertionError(f"Unexpected websocket message: {payload}")
