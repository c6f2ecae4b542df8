"""Relay server — broker channel ⇄ connected clients.

Learn: The relay runs one long-lived subscription task plus one reader task
per client (the WebSocket endpoint coroutine) and one writer task per client
(inside ClientSession). Data flows two ways:

1. Broker → clients: the subscription task receives a payload and calls
   fan_out(), which queues the exact bytes on every open session.
2. Client → broker: a session's reader hands each inbound payload to
   republish(), which publishes it verbatim onto the same channel — so
   every relay instance (this one included) broadcasts it.

Ordering: fan_out() runs inline in the single subscription task and each
session drains its outbox FIFO, so every client sees messages in broker
order.

Failure containment: a failing client only ever removes itself, and its
close handshake runs in a background task so fan-out never waits on it. A lost
broker subscription is retried with exponential backoff + jitter forever;
clients stay connected and simply see no updates until it comes back.
"""

import asyncio
import random
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Optional

import structlog

from pricerelay.errors import (
    PublishError,
    SendError,
    SubscriptionError,
    TransportAcceptError,
)
from pricerelay.realtime.broker import Broker, Subscription
from pricerelay.realtime.registry import SessionRegistry
from pricerelay.realtime.session import ClientSession, Transport

logger = structlog.get_logger()

# Opt-in hook to vet client payloads before they reach the shared channel.
# Default is pass-through: any connected client can act as an event source.
InboundFilter = Callable[[ClientSession, bytes], bool]


@dataclass
class RelayStats:
    """Runtime counters for monitoring."""
    messages_relayed: int = 0
    messages_republished: int = 0
    inbound_rejected: int = 0
    send_failures: int = 0
    publish_failures: int = 0
    reconnects: int = 0


def next_delay(current: float, max_delay: float, jitter: float) -> float:
    """Backoff delay for the next retry: capped, plus random additive jitter."""
    return min(current, max_delay) + random.random() * jitter


class RelayServer:
    def __init__(
        self,
        broker: Broker,
        channel: str = "stock_prices",
        registry: Optional[SessionRegistry] = None,
        *,
        send_queue_size: int = 256,
        send_timeout: float = 5.0,
        reconnect_min_delay: float = 0.5,
        reconnect_max_delay: float = 30.0,
        reconnect_factor: float = 2.0,
        reconnect_jitter: float = 0.25,
        inbound_filter: Optional[InboundFilter] = None,
    ):
        self.broker = broker
        self.channel = channel
        self.registry = registry if registry is not None else SessionRegistry()
        self.send_queue_size = send_queue_size
        self.send_timeout = send_timeout
        self.reconnect_min_delay = reconnect_min_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.reconnect_factor = reconnect_factor
        self.reconnect_jitter = reconnect_jitter
        self.inbound_filter = inbound_filter
        self.stats = RelayStats()
        self._subscribed = asyncio.Event()
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._closing: set[asyncio.Task] = set()
        self._running = False

    @classmethod
    def from_settings(cls, broker: Broker, settings, **kwargs) -> "RelayServer":
        return cls(
            broker,
            settings.channel,
            send_queue_size=settings.send_queue_size,
            send_timeout=settings.send_timeout_seconds,
            reconnect_min_delay=settings.reconnect_min_delay,
            reconnect_max_delay=settings.reconnect_max_delay,
            reconnect_factor=settings.reconnect_factor,
            reconnect_jitter=settings.reconnect_jitter,
            **kwargs,
        )

    # ─── Lifecycle ────────────────────────────────────────

    @property
    def subscribed(self) -> bool:
        return self._subscribed.is_set()

    async def start(self) -> None:
        """Start the subscription manager. Never fails on a missing broker."""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(
            self._subscription_loop(), name=f"relay-subscription-{self.channel}"
        )
        logger.info("relay.started", channel=self.channel)

    async def wait_subscribed(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._subscribed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        """Stop consuming, then close every session with 1001 (going away)."""
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        sessions = await self.registry.snapshot()
        await asyncio.gather(
            *(self.remove(s, code=1001, reason="server shutdown") for s in sessions)
        )
        if self._closing:
            await asyncio.gather(*self._closing)

        logger.info("relay.stopped", channel=self.channel, **asdict(self.stats))

    def get_stats(self) -> dict:
        return {
            "channel": self.channel,
            "subscribed": self.subscribed,
            "sessions": len(self.registry),
            **asdict(self.stats),
        }

    # ─── Broker → clients ─────────────────────────────────

    async def _subscription_loop(self) -> None:
        delay = self.reconnect_min_delay

        while self._running:
            try:
                self._subscription = await self.broker.subscribe(self.channel)
                self._subscribed.set()
                delay = self.reconnect_min_delay
                logger.info("relay.subscribed", channel=self.channel)

                async for payload in self._subscription:
                    await self.fan_out(payload)
            except SubscriptionError as e:
                logger.error(
                    "relay.subscription_lost", channel=self.channel, error=str(e)
                )
            except Exception:
                logger.exception("relay.subscription_failed", channel=self.channel)
            finally:
                self._subscribed.clear()
                subscription, self._subscription = self._subscription, None
                if subscription is not None:
                    await subscription.close()

            if not self._running:
                break

            wait = next_delay(delay, self.reconnect_max_delay, self.reconnect_jitter)
            logger.warning("relay.resubscribing", channel=self.channel, delay=wait)
            await asyncio.sleep(wait)
            delay = min(delay * self.reconnect_factor, self.reconnect_max_delay)
            self.stats.reconnects += 1

    async def fan_out(self, payload: bytes) -> int:
        """Queue one payload on every open session.

        Returns the number of sessions it was queued for. A session that is
        closed or can't accept the payload is removed; the rest still get it.
        """
        delivered = 0
        for session in await self.registry.snapshot():
            try:
                session.offer(payload)
            except SendError as e:
                logger.warning(
                    "relay.send_failed", session_id=session.id, reason=e.reason
                )
                # Unregister inline; the close handshake runs off this task
                await self.registry.remove(session)
                self._close_in_background(
                    session, code=1011, reason=e.reason, failed=True
                )
                continue
            delivered += 1

        self.stats.messages_relayed += 1
        # Let session writers drain before the next message is queued
        await asyncio.sleep(0)
        return delivered

    # ─── Clients → broker ─────────────────────────────────

    async def republish(self, session: ClientSession, payload: bytes) -> bool:
        """Publish a client's payload verbatim onto the channel.

        A broker failure is logged and the payload dropped; the session
        stays open either way.
        """
        if self.inbound_filter is not None and not self.inbound_filter(
            session, payload
        ):
            self.stats.inbound_rejected += 1
            logger.info("relay.inbound_rejected", session_id=session.id)
            return False

        try:
            await self.broker.publish(self.channel, payload)
        except PublishError as e:
            self.stats.publish_failures += 1
            logger.warning(
                "relay.publish_failed",
                session_id=session.id,
                channel=self.channel,
                error=str(e),
            )
            return False

        self.stats.messages_republished += 1
        return True

    # ─── Session lifecycle ────────────────────────────────

    async def handle_session(self, transport: Transport) -> None:
        """Run one client connection from handshake to removal."""
        session = ClientSession(
            transport,
            queue_size=self.send_queue_size,
            send_timeout=self.send_timeout,
            on_close=self._on_session_closed,
        )
        log = logger.bind(session_id=session.id)

        try:
            await session.open()
        except TransportAcceptError as e:
            log.warning("relay.accept_failed", error=str(e))
            return

        await self.registry.add(session)
        if not session.is_open:
            # Closed between handshake and registration
            await self.registry.remove(session)
            return
        log.info("relay.session_opened", sessions=len(self.registry))

        try:
            while session.is_open:
                payload = await session.receive()
                if payload is None:
                    break
                await self.republish(session, payload)
        except Exception as e:
            log.warning("relay.receive_failed", error=str(e))
        finally:
            await self.remove(session, reason="client disconnected")
            log.info(
                "relay.session_closed",
                reason=session.close_reason,
                sent=session.sent,
                sessions=len(self.registry),
            )

    async def remove(
        self,
        session: ClientSession,
        code: int = 1000,
        reason: str = "server close",
        failed: bool = False,
    ) -> bool:
        """Drop a session from the registry and close it. Idempotent.

        Returns False if the session was already gone.
        """
        removed = await self.registry.remove(session)
        await session.close(code=code, reason=reason, failed=failed)
        return removed

    def _close_in_background(self, session: ClientSession, **close_args) -> None:
        task = asyncio.create_task(
            session.close(**close_args), name=f"session-close-{session.id}"
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _on_session_closed(self, session: ClientSession) -> None:
        if session.failed:
            self.stats.send_failures += 1
        await self.registry.remove(session)
