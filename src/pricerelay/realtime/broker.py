"""Broker clients — the relay's seam onto the pub/sub bus.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's exactly the contract the relay needs: live prices only,
no history, no redelivery.

The relay holds two broker resources with separate lifetimes:
1. A publish client — used to republish client messages onto the channel
2. A subscription — one long-lived SUBSCRIBE connection feeding fan-out

Payloads are bytes end to end (decode_responses=False) so the relay never
re-encodes what the Event Source published.

Backends are picked by URL scheme, mirroring the adapter registry:
    broker = create_broker("redis://redis:6379/0")
    broker = create_broker("memory://")   # single-process, dev + tests
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Optional, Union
from urllib.parse import urlsplit

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from pricerelay.errors import PublishError, SubscriptionError

logger = structlog.get_logger()

Payload = Union[bytes, str]


def _as_bytes(payload: Payload) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


# ─── Interfaces ───────────────────────────────────────────


class Subscription(ABC):
    """A live subscription to one channel.

    Iterating yields raw payload bytes in broker delivery order. Iteration
    raises SubscriptionError if the connection is lost, and simply stops
    after close().
    """

    channel: str

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[bytes]: ...

    @abstractmethod
    async def close(self) -> None: ...


class Broker(ABC):
    """Abstract pub/sub broker client."""

    @abstractmethod
    async def connect(self) -> None:
        """Verify the broker is reachable. Raises SubscriptionError if not."""

    @abstractmethod
    async def publish(self, channel: str, payload: Payload) -> int:
        """Publish a payload. Returns receiver count; raises PublishError."""

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        """Open a new subscription. Raises SubscriptionError."""

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def close(self) -> None:
        """Release every connection held by this client. Idempotent."""


# ─── Redis ────────────────────────────────────────────────


class RedisSubscription(Subscription):
    def __init__(self, pubsub: aioredis.client.PubSub, channel: str):
        self._pubsub = pubsub
        self.channel = channel
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for message in self._pubsub.listen():
                if message["type"] == "message":
                    yield message["data"]
        except (RedisError, OSError) as e:
            if self._closed:
                return
            raise SubscriptionError(f"lost subscription to {self.channel}: {e}") from e
        if not self._closed:
            raise SubscriptionError(f"subscription to {self.channel} ended")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        except (RedisError, OSError):
            pass  # connection already gone
        await self._pubsub.aclose()


class RedisBroker(Broker):
    """redis.asyncio client with separate publish and subscribe connections."""

    def __init__(self, url: str, **client_options):
        self.url = url
        self.client_options = client_options
        self._publisher: Optional[aioredis.Redis] = None
        self._subscriber: Optional[aioredis.Redis] = None

    def _clients(self) -> tuple[aioredis.Redis, aioredis.Redis]:
        # Clients are lazy: from_url() opens no socket until first command
        if self._publisher is None:
            self._publisher = aioredis.from_url(
                self.url, decode_responses=False, **self.client_options
            )
        if self._subscriber is None:
            self._subscriber = aioredis.from_url(
                self.url, decode_responses=False, **self.client_options
            )
        return self._publisher, self._subscriber

    async def connect(self) -> None:
        publisher, _ = self._clients()
        try:
            await publisher.ping()
        except (RedisError, OSError) as e:
            raise SubscriptionError(f"broker unreachable at {self.url}: {e}") from e
        logger.info("broker.connected", url=self.url)

    async def publish(self, channel: str, payload: Payload) -> int:
        publisher, _ = self._clients()
        try:
            return await publisher.publish(channel, _as_bytes(payload))
        except (RedisError, OSError) as e:
            raise PublishError(f"publish to {channel} failed: {e}") from e

    async def subscribe(self, channel: str) -> Subscription:
        _, subscriber = self._clients()
        pubsub = subscriber.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel)
        except (RedisError, OSError) as e:
            await pubsub.aclose()
            raise SubscriptionError(f"subscribe to {channel} failed: {e}") from e
        return RedisSubscription(pubsub, channel)

    async def ping(self) -> bool:
        publisher, _ = self._clients()
        try:
            return bool(await publisher.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        for client in (self._publisher, self._subscriber):
            if client is not None:
                await client.aclose()
        self._publisher = None
        self._subscriber = None


# ─── In-memory ────────────────────────────────────────────

_CLOSED = object()
_LOST = object()


class InMemorySubscription(Subscription):
    def __init__(self, broker: "InMemoryBroker", channel: str):
        self._broker = broker
        self.channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()

    def _deliver(self, item) -> None:
        self._queue.put_nowait(item)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if item is _LOST:
                raise SubscriptionError(f"lost subscription to {self.channel}")
            yield item

    async def close(self) -> None:
        if self._broker._detach(self):
            self._deliver(_CLOSED)


class InMemoryBroker(Broker):
    """Single-process broker with Redis pub/sub semantics.

    Learn: Every subscriber gets its own queue, so publish order is kept
    per subscriber and a slow reader never blocks publishers.
    disconnect_all()/restore() simulate a broker outage for tests.
    """

    def __init__(self):
        self._subscriptions: dict[str, list[InMemorySubscription]] = {}
        self._available = True

    def _detach(self, sub: InMemorySubscription) -> bool:
        subs = self._subscriptions.get(sub.channel, [])
        if sub in subs:
            subs.remove(sub)
            return True
        return False

    async def connect(self) -> None:
        if not self._available:
            raise SubscriptionError("in-memory broker is down")

    async def publish(self, channel: str, payload: Payload) -> int:
        if not self._available:
            raise PublishError(f"publish to {channel} failed: broker is down")
        subs = list(self._subscriptions.get(channel, []))
        data = _as_bytes(payload)
        for sub in subs:
            sub._deliver(data)
        return len(subs)

    async def subscribe(self, channel: str) -> Subscription:
        if not self._available:
            raise SubscriptionError(f"subscribe to {channel} failed: broker is down")
        sub = InMemorySubscription(self, channel)
        self._subscriptions.setdefault(channel, []).append(sub)
        return sub

    async def ping(self) -> bool:
        return self._available

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, []))

    def disconnect_all(self) -> None:
        """Drop every live subscription and refuse new work until restore()."""
        self._available = False
        for subs in self._subscriptions.values():
            for sub in subs:
                sub._deliver(_LOST)
        self._subscriptions.clear()

    def restore(self) -> None:
        self._available = True

    async def close(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub._deliver(_CLOSED)
        self._subscriptions.clear()


# ─── Registry ──────────────────────────────────────────────

_BACKENDS: dict[str, type[Broker]] = {
    "redis": RedisBroker,
    "rediss": RedisBroker,
    "unix": RedisBroker,
    "memory": InMemoryBroker,
}


def create_broker(url: str, **client_options) -> Broker:
    """Build a broker client for a URL.

    client_options go to the redis client (timeouts, retry policy) and are
    ignored by the in-process broker. Raises ValueError if the scheme has no
    registered backend.
    """
    scheme = urlsplit(url).scheme
    cls = _BACKENDS.get(scheme)
    if not cls:
        available = ", ".join(sorted(_BACKENDS.keys()))
        raise ValueError(f"Unknown broker scheme '{scheme}'. Available: {available}")
    if cls is InMemoryBroker:
        return InMemoryBroker()
    return cls(url, **client_options)
