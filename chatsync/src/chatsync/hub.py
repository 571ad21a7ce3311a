from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]


class Subscription:
    """A registered listener on one hub topic.

    ``cancel`` is synchronous and idempotent; once it returns the callback is
    never invoked again, even for a publish already in progress.
    """

    def __init__(self, hub: "SubscriptionHub | None", topic: str, callback: Callback) -> None:
        self._hub = hub
        self.topic = topic
        self.callback = callback
        self.active = True
        self._on_cancel: List[Callable[[], None]] = []

    def deliver(self, payload: Any) -> None:
        if self.active:
            self.callback(payload)

    def add_cancel_hook(self, hook: Callable[[], None]) -> None:
        self._on_cancel.append(hook)

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._hub is not None:
            self._hub.unsubscribe(self)
        hooks, self._on_cancel = self._on_cancel, []
        for hook in hooks:
            hook()


class SubscriptionHub:
    """Registers subscriptions per topic and publishes payloads to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        subscription = Subscription(self, topic, callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        logger.debug("subscribed to %s", topic)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)
        logger.debug("unsubscribed from %s", subscription.topic)

    def publish(self, topic: str, payload: Any) -> None:
        for subscription in list(self._subscriptions.get(topic, [])):
            try:
                subscription.deliver(payload)
            except Exception:
                logger.exception("subscriber for %s failed", topic)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscriptions.get(topic, []))
        return sum(len(subs) for subs in self._subscriptions.values())


class SubscriptionGroup:
    """Supervises a set of keyed subscriptions that are released together."""

    def __init__(self) -> None:
        self._by_key: Dict[str, Subscription] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    def keys(self) -> list[str]:
        return list(self._by_key)

    def replace(self, key: str, subscription: Subscription) -> None:
        previous = self._by_key.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._by_key[key] = subscription

    def discard(self, key: str) -> None:
        subscription = self._by_key.pop(key, None)
        if subscription is not None:
            subscription.cancel()

    def retain(self, keys: Iterable[str]) -> None:
        """Cancel every subscription whose key is not in ``keys``."""

        wanted = set(keys)
        for key in [k for k in self._by_key if k not in wanted]:
            self.discard(key)

    def cancel_all(self) -> None:
        subscriptions = list(self._by_key.values())
        self._by_key.clear()
        for subscription in subscriptions:
            subscription.cancel()


_CLOSED = object()


class LiveFeed:
    """Async iterator over the payloads of a subscription.

    ``attach`` binds the feed to the subscription whose callback is
    ``push``. Iteration stops once ``cancel`` is called.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._subscription: Subscription | None = None
        self._closed = False

    def attach(self, subscription: Subscription) -> "LiveFeed":
        self._subscription = subscription
        return self

    def push(self, payload: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(payload)

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.cancel()
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            raise StopAsyncIteration
        return item
