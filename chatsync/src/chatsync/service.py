from __future__ import annotations

import logging

from .auth import AuthService, LoggingMailer, Mailer, SessionStore
from .blobs import LocalBlobStore
from .clock import NowFunc, now_ms
from .config import ServiceConfig
from .conversations import ConversationIndex
from .errors import NotFoundError, WriteError
from .friends import FriendDirectory
from .hub import SubscriptionHub
from .identity import resolve
from .messages import MessageStore
from .models import ConversationSummary, Message, Sender
from .notifications import NotificationDispatcher
from .presence import PresenceConfig, PresenceTracker
from .sqlite_backend import SQLiteBackend
from .users import UserDirectory

logger = logging.getLogger(__name__)


class ChatContext:
    """Process-wide handles shared by every component.

    Built once at start-up and passed to the transport; ``close`` is the
    matching teardown step.
    """

    def __init__(
        self,
        *,
        config: ServiceConfig,
        backend: SQLiteBackend,
        hub: SubscriptionHub,
        blobs: LocalBlobStore,
        users: UserDirectory,
        messages: MessageStore,
        conversations: ConversationIndex,
        friends: FriendDirectory,
        presence: PresenceTracker,
        notifier: NotificationDispatcher,
        auth: AuthService,
    ) -> None:
        self.config = config
        self.backend = backend
        self.hub = hub
        self.blobs = blobs
        self.users = users
        self.messages = messages
        self.conversations = conversations
        self.friends = friends
        self.presence = presence
        self.notifier = notifier
        self.auth = auth
        self.chat = ChatService(self)

    @classmethod
    def create(
        cls,
        config: ServiceConfig | None = None,
        *,
        now_func: NowFunc = now_ms,
        mailer: Mailer | None = None,
        presence: PresenceTracker | None = None,
        **auth_options,
    ) -> "ChatContext":
        config = config or ServiceConfig()
        backend = SQLiteBackend(config.db_path)
        hub = SubscriptionHub()
        blobs = LocalBlobStore(config.blob_dir, config.public_url)
        users = UserDirectory(backend, hub, blobs=blobs, now_func=now_func)
        if presence is None:
            presence = PresenceTracker(
                hub,
                PresenceConfig(
                    default_ttl_seconds=config.presence_ttl_s,
                    max_ttl_seconds=max(300, config.presence_ttl_s),
                    sweeper_interval_seconds=config.presence_sweep_s,
                ),
                now_func=now_func,
            )
        auth = AuthService(
            backend,
            users,
            hub,
            mailer or LoggingMailer(f"{config.public_url.rstrip('/')}/v1/auth/verify"),
            sessions=SessionStore(config.session_ttl_ms, now_func=now_func),
            require_verified_email=config.require_verified_email,
            now_func=now_func,
            **auth_options,
        )
        return cls(
            config=config,
            backend=backend,
            hub=hub,
            blobs=blobs,
            users=users,
            messages=MessageStore(backend, hub, now_func=now_func),
            conversations=ConversationIndex(backend, hub, now_func=now_func),
            friends=FriendDirectory(backend, users, now_func=now_func),
            presence=presence,
            notifier=NotificationDispatcher(
                users,
                push_url=config.push_url,
                server_key=config.push_server_key,
                timeout_s=config.push_timeout_s,
            ),
            auth=auth,
        )

    def start(self) -> None:
        self.presence.start_sweeper()

    async def close(self) -> None:
        await self.presence.stop_sweeper()
        await self.notifier.close()
        self.backend.close()


class ChatService:
    """Composes the stores into the user-facing chat operations."""

    def __init__(self, context: ChatContext) -> None:
        self._ctx = context

    async def send_message(
        self,
        sender_uid: str,
        recipient_uid: str,
        text: str,
        *,
        msg_id: str | None = None,
    ) -> Message:
        """Append a message, refresh the conversation summary and push-notify.

        The append and the summary update are separate writes. If the summary
        write fails the caller gets ``WriteError``; retrying with the same
        ``msg_id`` does not duplicate the message and repairs the summary.
        """

        conv_id = resolve(sender_uid, recipient_uid)
        sender = self._ctx.users.get(sender_uid)
        self._ctx.users.get(recipient_uid)
        message, created = self._ctx.messages.append(
            conv_id, Sender(id=sender.uid, display_name=sender.name), text, msg_id=msg_id
        )
        if created or self._summary_is_stale(message):
            try:
                self._ctx.conversations.upsert(
                    conv_id,
                    participants=(sender_uid, recipient_uid),
                    last_message=message.text,
                    last_updated_ms=message.created_at_ms,
                    last_seq=message.seq,
                )
            except WriteError:
                logger.warning("summary for %s is behind message %s", conv_id, message.msg_id)
                raise
        if created:
            self._ctx.notifier.dispatch(recipient_uid, sender.name, message.text, conv_id, sender_uid)
        return message

    def start_chat(self, uid: str, other_uid: str) -> tuple[ConversationSummary, bool]:
        self._ctx.users.get(other_uid)
        return self._ctx.conversations.start(uid, other_uid)

    def _summary_is_stale(self, message: Message) -> bool:
        try:
            summary = self._ctx.conversations.get(message.conv_id)
        except NotFoundError:
            return True
        return summary.last_seq < message.seq
