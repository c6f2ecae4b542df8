"""Test fixtures — in-memory broker, fake transports, running relays.

Learn: Testing pattern for the relay:

1. Each test gets a fresh InMemoryBroker — same contract as Redis pub/sub,
   no server needed, and disconnect_all()/restore() simulate outages.
2. FakeTransport stands in for a WebSocket: it records what was sent and
   lets the test push inbound payloads or hang up.
3. Relays use tiny reconnect delays and no jitter so retry tests are fast.
"""

import asyncio
from typing import Optional

import pytest_asyncio

from pricerelay.realtime.broker import InMemoryBroker
from pricerelay.realtime.relay import RelayServer
from pricerelay.realtime.session import Transport

CHANNEL = "stock_prices"


class FakeTransport(Transport):
    """Scriptable transport: records sends, queues inbound payloads."""

    def __init__(
        self,
        *,
        fail_accept: bool = False,
        fail_send: bool = False,
        block_send: bool = False,
        close_delay: float = 0.0,
    ):
        self.fail_accept = fail_accept
        self.fail_send = fail_send
        self.block_send = block_send
        self.close_delay = close_delay
        self.accepted = False
        self.sent: list[bytes] = []
        self.closed_with: Optional[int] = None
        self.close_calls = 0
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._unblock = asyncio.Event()

    async def accept(self) -> None:
        if self.fail_accept:
            raise ConnectionResetError("handshake aborted")
        self.accepted = True

    async def send(self, payload: bytes) -> None:
        if self.block_send:
            await self._unblock.wait()
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.sent.append(payload)

    async def receive(self) -> Optional[bytes]:
        return await self._inbound.get()

    async def close(self, code: int = 1000) -> None:
        self.close_calls += 1
        self.closed_with = code
        self._inbound.put_nowait(None)
        if self.close_delay:
            # A peer that never answers the closing handshake
            await asyncio.sleep(self.close_delay)

    def push(self, payload: bytes) -> None:
        """Simulate the client sending a message."""
        self._inbound.put_nowait(payload)

    def hang_up(self) -> None:
        """Simulate the client closing the connection."""
        self._inbound.put_nowait(None)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll a condition until it holds; fail the test if it never does."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def next_payload(subscription, timeout: float = 2.0) -> bytes:
    """Read one payload from a broker subscription."""

    async def _first():
        async for payload in subscription:
            return payload
        raise AssertionError("subscription ended")

    return await asyncio.wait_for(_first(), timeout)


def make_relay(broker, **kwargs) -> RelayServer:
    kwargs.setdefault("reconnect_min_delay", 0.01)
    kwargs.setdefault("reconnect_max_delay", 0.05)
    kwargs.setdefault("reconnect_jitter", 0.0)
    return RelayServer(broker, CHANNEL, **kwargs)


async def connect(relay: RelayServer, transport: Optional[FakeTransport] = None):
    """Open a session on a relay and wait until it's registered.

    Returns (transport, session, task running handle_session).
    """
    transport = transport or FakeTransport()
    before = len(relay.registry)
    task = asyncio.create_task(relay.handle_session(transport))
    await wait_until(lambda: len(relay.registry) > before)
    session = next(
        s for s in await relay.registry.snapshot() if s.transport is transport
    )
    return transport, session, task


@pytest_asyncio.fixture()
async def broker():
    b = InMemoryBroker()
    try:
        yield b
    finally:
        await b.close()


@pytest_asyncio.fixture()
async def relay(broker):
    """A started relay, subscribed to CHANNEL."""
    r = make_relay(broker)
    await r.start()
    assert await r.wait_subscribed(timeout=2.0)
    try:
        yield r
    finally:
        await r.stop()
