"""Chat sync service CLI: run the aiohttp server or replay scripted frames."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Iterable, TextIO

from aiohttp import web

from .config import ServiceConfig, load_config_from_env
from .errors import ChatSyncError
from .models import Message, PresenceRecord
from .service import ChatContext
from .ws_transport import create_app


async def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through an in-memory context and emit events."""

    context = ChatContext.create(ServiceConfig())

    def emit(event: dict) -> None:
        output.write(json.dumps(event, sort_keys=True) + "\n")

    def message_callback(uid: str):
        def _callback(message: Message) -> None:
            emit({"t": "conv.message", "uid": uid, **message.to_api_dict()})

        return _callback

    def presence_event(record: PresenceRecord) -> None:
        emit({"t": "presence.update", **record.to_api_dict()})

    try:
        for frame in frames:
            frame_type = frame.get("t")
            try:
                if frame_type == "user.create":
                    user, created = context.users.ensure_profile(
                        frame["uid"],
                        name=frame.get("name"),
                        email=frame.get("email"),
                        phone_number=frame.get("phoneNumber"),
                    )
                    emit({"t": "user.created", "uid": user.uid, "name": user.name, "created": created})
                elif frame_type == "conv.subscribe":
                    context.messages.subscribe(
                        frame["conv_id"], message_callback(frame["uid"]), after_seq=frame.get("after_seq", 0)
                    )
                elif frame_type == "chat.send":
                    message = await context.chat.send_message(
                        frame["from"], frame["to"], frame["text"], msg_id=frame.get("msg_id")
                    )
                    emit({"t": "conv.sent", "conv_id": message.conv_id, "seq": message.seq, "msg_id": message.msg_id})
                elif frame_type == "friend.add":
                    edge, created = context.friends.add(frame["uid"], frame["friend"])
                    emit({"t": "friend.added", "created": created, "owner": edge.owner_uid, **edge.to_api_dict()})
                elif frame_type == "presence.online":
                    presence_event(context.presence.announce_online(frame["uid"], frame["connection_id"]))
                elif frame_type == "presence.disconnect":
                    record = context.presence.disconnect(frame["connection_id"])
                    if record is not None:
                        presence_event(record)
                else:
                    raise ValueError(f"unsupported frame type: {frame_type}")
            except ChatSyncError as exc:
                emit({"t": "error", "frame": frame_type, "code": exc.code, "message": exc.message})
    finally:
        await context.close()


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    asyncio.run(simulate(frames, output))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config_from_env()
    if args.db:
        config = dataclasses.replace(config, db_path=args.db)
    app = create_app(config=config, ping_interval_s=args.ping_interval)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Chat sync service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay scripted chat frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--log-level", default="info", help="Logging level")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
