from __future__ import annotations

import asyncio
import logging
import mimetypes
import secrets
from typing import Any, Awaitable, Callable

from aiohttp import WSMsgType, web

from .auth import Session
from .config import ServiceConfig, load_config_from_env
from .conversations import ConversationListWatch
from .errors import (
    AuthError,
    ChatSyncError,
    EmailNotVerified,
    NotFoundError,
    ReadError,
    ValidationError,
    WriteError,
)
from .hub import SubscriptionGroup
from .identity import participants_of
from .models import ConversationRow, Message, PresenceRecord
from .service import ChatContext

logger = logging.getLogger(__name__)

CONTEXT_KEY = web.AppKey("context", ChatContext)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)

OUTBOUND_QUEUE_SIZE = 1000
REPLAY_PAGE_SIZE = 500

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _status_for(exc: ChatSyncError) -> int:
    if isinstance(exc, EmailNotVerified):
        return 403
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ReadError, WriteError)):
        return 503
    return 500


def _error_body(code: str, message: str) -> dict[str, str]:
    return {"code": code, "message": message}


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Translate chat errors into JSON responses; nothing escapes a handler."""

    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ChatSyncError as exc:
        return web.json_response(_error_body(exc.code, exc.message), status=_status_for(exc))
    except Exception:
        logger.exception("unhandled error in %s %s", request.method, request.path)
        return web.json_response(_error_body("internal_error", "internal error"), status=500)


def _context(request: web.Request) -> ChatContext:
    return request.app[CONTEXT_KEY]


def _authenticate_request(request: web.Request) -> Session:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthError("missing session_token")
    session = _context(request).auth.authenticate(auth_header[len("Bearer ") :].strip())
    if session is None:
        raise AuthError("invalid session_token")
    return session


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception as exc:
        raise ValidationError("malformed json") from exc
    if not isinstance(body, dict):
        raise ValidationError("json object required")
    return body


def _query_int(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def _require_participant(session: Session, conv_id: str) -> None:
    if session.uid not in participants_of(conv_id):
        raise AuthError("not a participant of this conversation")


def _conversation_rows(ctx: ChatContext, uid: str) -> list[ConversationRow]:
    summaries = ctx.conversations.list_for(uid)
    others = ctx.users.get_many(summary.other_participant(uid) for summary in summaries)
    return [
        ConversationRow(summary=summary, other_user=others.get(summary.other_participant(uid)))
        for summary in summaries
    ]


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_signup(request: web.Request) -> web.Response:
    body = await _json_body(request)
    user = await _context(request).auth.sign_up(
        body.get("email"),
        body.get("password"),
        name=body.get("name") or "",
        phone_number=body.get("phoneNumber") or "",
    )
    return web.json_response({"user": user.to_api_dict(), "verification_sent": True}, status=201)


async def handle_signin(request: web.Request) -> web.Response:
    body = await _json_body(request)
    session = await _context(request).auth.sign_in(body.get("email"), body.get("password"))
    return web.json_response(
        {"uid": session.uid, "session_token": session.session_token, "expires_at": session.expires_at_ms}
    )


async def handle_verify(request: web.Request) -> web.Response:
    token = request.query.get("token")
    if token is None and request.can_read_body:
        token = (await _json_body(request)).get("token")
    uid = _context(request).auth.verify_email(token or "")
    return web.json_response({"status": "ok", "uid": uid})


async def handle_resend(request: web.Request) -> web.Response:
    body = await _json_body(request)
    await _context(request).auth.resend_verification(body.get("email"), body.get("password"))
    return web.json_response({"status": "ok"})


async def handle_signout(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    _context(request).auth.sign_out(session.session_token)
    return web.json_response({"status": "ok"})


async def handle_me(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    return web.json_response({"user": _context(request).users.get(session.uid).to_api_dict()})


async def handle_update_me(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    body = await _json_body(request)
    name = body.get("name")
    description = body.get("description")
    if (name is not None and not isinstance(name, str)) or (
        description is not None and not isinstance(description, str)
    ):
        raise ValidationError("name and description must be strings")
    user = _context(request).users.update_profile(session.uid, name=name, description=description)
    return web.json_response({"user": user.to_api_dict()})


async def handle_upload_photo(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    data = await request.read()
    user = _context(request).users.set_photo(session.uid, data)
    return web.json_response({"user": user.to_api_dict()})


async def handle_device_token(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    body = await _json_body(request)
    _context(request).users.register_device_token(session.uid, body.get("token"))
    return web.json_response({"status": "ok"})


async def handle_get_user(request: web.Request) -> web.Response:
    _authenticate_request(request)
    user = _context(request).users.get(request.match_info["uid"])
    return web.json_response({"user": user.to_api_dict()})


async def handle_search(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    users = _context(request).friends.search(request.query.get("q", ""), session.uid)
    return web.json_response({"items": [user.to_api_dict() for user in users]})


async def handle_add_friend(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    body = await _json_body(request)
    edge, created = _context(request).friends.add(session.uid, body.get("uid"))
    return web.json_response(
        {"status": "added" if created else "already_exists", "created": created, "friend": edge.to_api_dict()},
        status=201 if created else 200,
    )


async def handle_list_friends(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    page = _context(request).friends.list(
        session.uid,
        limit=_query_int(request, "limit", 10),
        cursor=request.query.get("cursor") or None,
    )
    return web.json_response(page.to_api_dict())


async def handle_start_chat(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    body = await _json_body(request)
    summary, created = _context(request).chat.start_chat(session.uid, body.get("uid"))
    return web.json_response(
        {"status": "created" if created else "already_exists", "created": created, "conversation": summary.to_api_dict()},
        status=201 if created else 200,
    )


async def handle_list_chats(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    rows = _conversation_rows(_context(request), session.uid)
    return web.json_response({"items": [row.to_api_dict() for row in rows]})


async def handle_send_message(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    body = await _json_body(request)
    message = await _context(request).chat.send_message(
        session.uid,
        request.match_info["other_uid"],
        body.get("text"),
        msg_id=body.get("msg_id"),
    )
    return web.json_response({"message": message.to_api_dict()}, status=201)


async def handle_list_messages(request: web.Request) -> web.Response:
    session = _authenticate_request(request)
    conv_id = request.match_info["conv_id"]
    _require_participant(session, conv_id)
    messages = _context(request).messages.list(
        conv_id,
        after_seq=_query_int(request, "after_seq", 0),
        limit=_query_int(request, "limit", 0) or None,
    )
    return web.json_response({"items": [message.to_api_dict() for message in messages]})


async def handle_presence_status(request: web.Request) -> web.Response:
    _authenticate_request(request)
    record = _context(request).presence.status(request.match_info["uid"])
    return web.json_response(record.to_api_dict())


async def handle_blob(request: web.Request) -> web.Response:
    path = request.match_info["path"]
    data = _context(request).blobs.read(path)
    content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return web.Response(body=data, content_type=content_type)


def create_app(
    *,
    context: ChatContext | None = None,
    config: ServiceConfig | None = None,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    start_presence_sweeper: bool = True,
) -> web.Application:
    if context is None:
        context = ChatContext.create(config or load_config_from_env())

    app = web.Application(middlewares=[error_middleware], client_max_size=max_msg_size * 5)
    app[CONTEXT_KEY] = context
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/auth/signup", handle_signup)
    app.router.add_post("/v1/auth/signin", handle_signin)
    app.router.add_get("/v1/auth/verify", handle_verify)
    app.router.add_post("/v1/auth/verify", handle_verify)
    app.router.add_post("/v1/auth/resend", handle_resend)
    app.router.add_post("/v1/auth/signout", handle_signout)
    app.router.add_get("/v1/users/me", handle_me)
    app.router.add_patch("/v1/users/me", handle_update_me)
    app.router.add_put("/v1/users/me/photo", handle_upload_photo)
    app.router.add_post("/v1/users/me/device-token", handle_device_token)
    app.router.add_get("/v1/users/search", handle_search)
    app.router.add_get("/v1/users/{uid}", handle_get_user)
    app.router.add_post("/v1/friends", handle_add_friend)
    app.router.add_get("/v1/friends", handle_list_friends)
    app.router.add_post("/v1/chats", handle_start_chat)
    app.router.add_get("/v1/chats", handle_list_chats)
    app.router.add_post("/v1/chats/{other_uid}/messages", handle_send_message)
    app.router.add_get("/v1/conversations/{conv_id}/messages", handle_list_messages)
    app.router.add_get("/v1/presence/{uid}", handle_presence_status)
    app.router.add_get("/blobs/{path:.+}", handle_blob)
    app.router.add_get("/v1/ws", websocket_handler)

    async def start_context(_: web.Application) -> None:
        if start_presence_sweeper:
            context.start()

    async def close_context(_: web.Application) -> None:
        await context.close()

    app.on_startup.append(start_context)
    app.on_cleanup.append(close_context)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": _error_body(code, message)}


def _message_frame(message: Message) -> dict[str, Any]:
    return {"v": 1, "t": "conv.message", "body": message.to_api_dict()}


def _presence_frame(record: PresenceRecord) -> dict[str, Any]:
    return {"v": 1, "t": "presence.update", "body": record.to_api_dict()}


def _chats_frame(rows: list[ConversationRow]) -> dict[str, Any]:
    return {"v": 1, "t": "chats.list", "body": {"items": [row.to_api_dict() for row in rows]}}


def _uid_list(body: dict[str, Any]) -> list[str]:
    uids = body.get("uids")
    if not isinstance(uids, list) or any(not isinstance(uid, str) for uid in uids):
        raise ValidationError("uids must be a list of user ids")
    return uids


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    ctx = _context(request)
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    connection_id = f"c_{secrets.token_urlsafe(12)}"
    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
    subscriptions = SubscriptionGroup()
    chats_watch: ConversationListWatch | None = None
    session: Session | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0
        if session is not None and ctx.presence.is_connected(connection_id):
            ctx.presence.renew(connection_id)

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def wait_for_room(frames: int) -> bool:
        while OUTBOUND_QUEUE_SIZE - outbound.qsize() < frames:
            if closed or ws.closed:
                return False
            await asyncio.sleep(0.01)
        return not (closed or ws.closed)

    async def replay_backlog(conv_id: str, after_seq: int) -> int | None:
        """Enqueue the backlog page by page, letting the writer drain in between.

        Returns the last replayed seq, or None once the socket has closed.
        """

        while True:
            if not await wait_for_room(REPLAY_PAGE_SIZE):
                return None
            page = ctx.messages.list(conv_id, after_seq=after_seq, limit=REPLAY_PAGE_SIZE)
            for message in page:
                enqueue(_message_frame(message))
            if page:
                after_seq = page[-1].seq
            if len(page) < REPLAY_PAGE_SIZE:
                return after_seq

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    async def handle_frame(frame_type: str, body: dict[str, Any], request_id: str | None) -> None:
        nonlocal chats_watch
        assert session is not None
        if frame_type == "ping":
            enqueue({"v": 1, "t": "pong", "id": request_id})
        elif frame_type == "pong":
            return
        elif frame_type == "conv.subscribe":
            conv_id = body.get("conv_id")
            if not isinstance(conv_id, str):
                raise ValidationError("conv_id required")
            _require_participant(session, conv_id)
            after_seq = body.get("after_seq") or 0
            if not isinstance(after_seq, int) or after_seq < 0:
                raise ValidationError("after_seq must be a non-negative integer")
            subscriptions.discard(f"conv:{conv_id}")
            last_seq = await replay_backlog(conv_id, after_seq)
            if last_seq is None or not await wait_for_room(REPLAY_PAGE_SIZE):
                return
            # Anything appended while paging is replayed by the subscription itself.
            last_delivered = last_seq

            def deliver(message: Message) -> None:
                nonlocal last_delivered
                last_delivered = max(last_delivered, message.seq)
                enqueue(_message_frame(message))

            subscriptions.replace(
                f"conv:{conv_id}",
                ctx.messages.subscribe(conv_id, deliver, after_seq=last_seq),
            )
            enqueue(
                {
                    "v": 1,
                    "t": "conv.subscribed",
                    "id": request_id,
                    "body": {"conv_id": conv_id, "last_seq": last_delivered},
                }
            )
        elif frame_type == "conv.unsubscribe":
            subscriptions.discard(f"conv:{body.get('conv_id')}")
        elif frame_type == "conv.send":
            recipient = body.get("to")
            if not isinstance(recipient, str):
                raise ValidationError("to required")
            message = await ctx.chat.send_message(session.uid, recipient, body.get("text"), msg_id=body.get("msg_id"))
            enqueue({"v": 1, "t": "conv.sent", "id": request_id, "body": message.to_api_dict()})
        elif frame_type == "chats.subscribe":
            if chats_watch is not None:
                chats_watch.cancel()
            limit = body.get("limit")
            if limit is not None and (not isinstance(limit, int) or limit < 1):
                raise ValidationError("limit must be a positive integer")
            chats_watch = ctx.conversations.watch(
                session.uid, lambda rows: enqueue(_chats_frame(rows)), profiles=ctx.users, limit=limit
            )
        elif frame_type == "chats.unsubscribe":
            if chats_watch is not None:
                chats_watch.cancel()
                chats_watch = None
        elif frame_type == "presence.watch":
            for uid in _uid_list(body):
                subscriptions.replace(
                    f"presence:{uid}",
                    ctx.presence.subscribe(uid, lambda record: enqueue(_presence_frame(record))),
                )
        elif frame_type == "presence.unwatch":
            for uid in _uid_list(body):
                subscriptions.discard(f"presence:{uid}")
        elif frame_type == "presence.offline":
            ctx.presence.announce_offline(session.uid, connection_id)
        elif frame_type == "presence.online":
            ctx.presence.announce_online(session.uid, connection_id)
        else:
            raise ValidationError("unknown frame type")

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws
        body = payload.get("body") if isinstance(payload.get("body"), dict) else {}
        if payload.get("t") != "session.start":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws
        session = ctx.auth.authenticate(body.get("session_token"))
        if session is None:
            await ws.send_json(_error_frame("unauthorized", "invalid session_token", request_id=payload.get("id")))
            await ws.close()
            return ws

        record = ctx.presence.announce_online(session.uid, connection_id)
        mark_activity()
        enqueue(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {"uid": session.uid, "connection_id": connection_id, "presence": record.to_api_dict()},
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "json object required"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue
                try:
                    body = frame.get("body") or {}
                    if not isinstance(body, dict):
                        raise ValidationError("body must be a json object")
                    await handle_frame(str(frame.get("t")), body, request_id)
                except ChatSyncError as exc:
                    enqueue(_error_frame(exc.code, exc.message, request_id=request_id))
                except Exception:
                    logger.exception("frame %s failed", frame.get("t"))
                    enqueue(_error_frame("internal_error", "internal error", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        subscriptions.cancel_all()
        if chats_watch is not None:
            chats_watch.cancel()
        ctx.presence.disconnect(connection_id)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
