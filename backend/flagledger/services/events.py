from __future__ import annotations

import asyncio
from collections import defaultdict
import json
import logging
import threading
import time

from pydantic import BaseModel
import redis
import redis.asyncio as aioredis

from flagledger.services.cache import CHALLENGES_KEY, LEADERBOARD_KEY, STATUS_KEY, Cache

logger = logging.getLogger(__name__)

CATEGORIES = ('challenges', 'leaderboard', 'status', 'announcements')

CATEGORY_KEYS: dict[str, tuple[str, ...]] = {
    'challenges': (CHALLENGES_KEY,),
    'leaderboard': (LEADERBOARD_KEY,),
    'status': (STATUS_KEY,),
    'announcements': (),
}


class TriggerEvent(BaseModel):
    """Change flags only. Clients re-fetch the flagged resources themselves."""

    challenges: bool = False
    leaderboard: bool = False
    status: bool = False
    announcements: bool = False

    @classmethod
    def for_categories(cls, categories) -> TriggerEvent:
        unknown = set(categories) - set(CATEGORIES)
        if unknown:
            raise ValueError(f'Unknown change categories: {sorted(unknown)}')
        return cls(**{c: True for c in categories})


class Subscription:
    async def open(self) -> None:
        pass

    async def next_event(self, timeout: float | None = None) -> dict | None:
        """Next event, or ``None`` when nothing arrived within ``timeout``."""
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> Subscription:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class EventChannel:
    def publish(self, topic: str, event: dict) -> None:
        raise NotImplementedError

    def subscribe(self, topic: str) -> Subscription:
        raise NotImplementedError


class _LocalSubscription(Subscription):
    def __init__(self, channel: LocalEventChannel, topic: str) -> None:
        self.channel = channel
        self.topic = topic
        self.loop: asyncio.AbstractEventLoop | None = None
        self.queue: asyncio.Queue[dict] | None = None

    async def open(self) -> None:
        self.loop = asyncio.get_running_loop()
        self.queue = asyncio.Queue()
        self.channel._add(self.topic, self)

    def deliver(self, event: dict) -> None:
        # publish() may run on a worker thread.
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)

    async def next_event(self, timeout: float | None = None) -> dict | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        self.channel._remove(self.topic, self)


class LocalEventChannel(EventChannel):
    """In-process fan-out for single-worker deployments and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[_LocalSubscription]] = defaultdict(set)

    def _add(self, topic: str, sub: _LocalSubscription) -> None:
        with self._lock:
            self._subscribers[topic].add(sub)

    def _remove(self, topic: str, sub: _LocalSubscription) -> None:
        with self._lock:
            self._subscribers[topic].discard(sub)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers[topic])

    def publish(self, topic: str, event: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers[topic])
        dead = []
        for sub in subscribers:
            try:
                sub.deliver(event)
            except RuntimeError:
                # Subscriber's loop is gone.
                dead.append(sub)
        for sub in dead:
            self._remove(topic, sub)

    def subscribe(self, topic: str) -> Subscription:
        return _LocalSubscription(self, topic)


class _RedisSubscription(Subscription):
    def __init__(self, url: str, topic: str) -> None:
        self.url = url
        self.topic = topic
        self.client: aioredis.Redis | None = None
        self.pubsub = None

    async def open(self) -> None:
        self.client = aioredis.Redis.from_url(self.url, decode_responses=True)
        self.pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await self.pubsub.subscribe(self.topic)

    async def next_event(self, timeout: float | None = None) -> dict | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=remaining)
            if message is not None and message.get('type') == 'message':
                return json.loads(message['data'])
            if deadline is not None and time.monotonic() >= deadline:
                return None

    async def close(self) -> None:
        if self.pubsub is not None:
            await self.pubsub.unsubscribe(self.topic)
            await self.pubsub.aclose()
        if self.client is not None:
            await self.client.aclose()


class RedisEventChannel(EventChannel):
    def __init__(self, url: str) -> None:
        self.url = url
        self.client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2)

    def publish(self, topic: str, event: dict) -> None:
        self.client.publish(topic, json.dumps(event))

    def subscribe(self, topic: str) -> Subscription:
        return _RedisSubscription(self.url, topic)


class FanOut:
    """Invalidates cached reads, then tells live clients what changed.

    Runs only after a commit. Both steps are best effort: a stale cache or a
    lost notification is logged and never undoes the committed change.
    """

    def __init__(self, cache: Cache, channel: EventChannel, topic: str = 'ctf-triggers') -> None:
        self.cache = cache
        self.channel = channel
        self.topic = topic

    def changed(self, *categories: str) -> TriggerEvent:
        event = TriggerEvent.for_categories(categories)
        keys = [key for category in categories for key in CATEGORY_KEYS[category]]
        if keys:
            try:
                self.cache.invalidate(*keys)
            except Exception:  # noqa: BLE001
                logger.warning('Cache invalidation failed for %s', keys, exc_info=True)
        try:
            self.channel.publish(self.topic, event.model_dump())
        except Exception:  # noqa: BLE001
            logger.warning('Publishing change notification failed: %s', event.model_dump(), exc_info=True)
        return event
