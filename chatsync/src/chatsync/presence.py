from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Set

from .clock import NowFunc, now_ms
from .errors import ValidationError
from .hub import Subscription, SubscriptionHub
from .models import OFFLINE, ONLINE, PresenceRecord

logger = logging.getLogger(__name__)


@dataclass
class PresenceConfig:
    default_ttl_seconds: int = 60
    max_ttl_seconds: int = 300
    min_ttl_seconds: int = 5
    sweeper_interval_seconds: float = 1.0


@dataclass
class Lease:
    """An online announcement from one connection.

    The on-disconnect action is armed together with the lease and fires
    when the connection closes or the lease runs out without a renewal.
    """

    uid: str
    connection_id: str
    expires_at_ms: int
    announced_at_ms: int


def presence_topic(uid: str) -> str:
    return f"presence:{uid}"


class PresenceTracker:
    def __init__(
        self,
        hub: SubscriptionHub,
        config: PresenceConfig | None = None,
        *,
        now_func: NowFunc = now_ms,
    ) -> None:
        self.config = config or PresenceConfig()
        self._hub = hub
        self._now = now_func
        self._leases: Dict[str, Lease] = {}
        self._connections: Dict[str, Set[str]] = {}
        self._records: Dict[str, PresenceRecord] = {}
        self._sweeper_task: asyncio.Task | None = None

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.sweeper_interval_seconds)
                self.expire()
        except asyncio.CancelledError:
            return

    def _clamp_ttl(self, ttl_seconds: int | None) -> int:
        if ttl_seconds is None:
            ttl_seconds = self.config.default_ttl_seconds
        return max(self.config.min_ttl_seconds, min(self.config.max_ttl_seconds, ttl_seconds))

    def announce_online(self, uid: str, connection_id: str, *, ttl_seconds: int | None = None) -> PresenceRecord:
        """Mark ``uid`` online and arm the on-disconnect action for the connection."""

        if not uid or not connection_id:
            raise ValidationError("uid and connection_id required")
        prior = self._leases.get(connection_id)
        if prior is not None and prior.uid != uid:
            raise ValidationError("connection belongs to another user")

        now = self._now()
        self._leases[connection_id] = Lease(
            uid=uid,
            connection_id=connection_id,
            expires_at_ms=now + self._clamp_ttl(ttl_seconds) * 1000,
            announced_at_ms=now,
        )
        self._connections.setdefault(uid, set()).add(connection_id)
        current = self._records.get(uid)
        if current is None or not current.online:
            return self._set(uid, ONLINE, now)
        return current

    def renew(self, connection_id: str, ttl_seconds: int | None = None) -> int:
        lease = self._leases.get(connection_id)
        if lease is None:
            raise ValidationError("connection is not online")
        lease.expires_at_ms = self._now() + self._clamp_ttl(ttl_seconds) * 1000
        return lease.expires_at_ms

    def announce_offline(self, uid: str, connection_id: str) -> PresenceRecord:
        """Explicit client-initiated offline; disarms the on-disconnect action."""

        lease = self._leases.get(connection_id)
        if lease is not None and lease.uid != uid:
            raise ValidationError("connection belongs to another user")
        return self._drop(uid, connection_id)

    def disconnect(self, connection_id: str) -> PresenceRecord | None:
        """Run the on-disconnect action registered for ``connection_id``.

        The offline timestamp comes from the server clock at the time of
        the disconnect.
        """

        lease = self._leases.get(connection_id)
        if lease is None:
            return None
        logger.debug("on-disconnect fired for %s (%s)", lease.uid, connection_id)
        return self._drop(lease.uid, connection_id)

    def expire(self) -> None:
        now = self._now()
        expired = [lease.connection_id for lease in self._leases.values() if lease.expires_at_ms <= now]
        for connection_id in expired:
            self.disconnect(connection_id)

    def status(self, uid: str) -> PresenceRecord:
        return self._records.get(uid) or PresenceRecord(uid=uid, state=OFFLINE, last_changed_ms=None)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._leases

    def subscribe(self, uid: str, callback: Callable[[PresenceRecord], None]) -> Subscription:
        """Deliver the current record and then every transition for ``uid``."""

        subscription = self._hub.subscribe(presence_topic(uid), callback)
        try:
            subscription.deliver(self.status(uid))
        except Exception:
            subscription.cancel()
            raise
        return subscription

    def _drop(self, uid: str, connection_id: str) -> PresenceRecord:
        self._leases.pop(connection_id, None)
        connections = self._connections.get(uid)
        if connections is not None:
            connections.discard(connection_id)
            if connections:
                return self.status(uid)
            self._connections.pop(uid, None)
        current = self.status(uid)
        if current.online:
            return self._set(uid, OFFLINE, self._now())
        return current

    def _set(self, uid: str, state: str, changed_ms: int) -> PresenceRecord:
        previous = self._records.get(uid)
        if previous is not None and previous.last_changed_ms is not None:
            changed_ms = max(changed_ms, previous.last_changed_ms)
        record = PresenceRecord(uid=uid, state=state, last_changed_ms=changed_ms)
        self._records[uid] = record
        logger.debug("presence %s -> %s", uid, state)
        self._hub.publish(presence_topic(uid), record)
        return record
