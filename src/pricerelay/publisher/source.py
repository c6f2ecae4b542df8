"""Event source loop — publish one tick per interval.

Learn: Publish failures are logged and the loop keeps going. A tick missed
while Redis is down is simply gone; the next one carries a fresh price.
The loop sleeps for what's left of the interval, so a slow publish doesn't
stretch the cadence.
"""

import asyncio
import time
from typing import Optional

import structlog

from pricerelay.errors import PublishError
from pricerelay.publisher.generator import PriceGenerator
from pricerelay.realtime.broker import Broker
from pricerelay.schemas.event import PriceEvent

logger = structlog.get_logger()


class EventSource:
    def __init__(
        self,
        broker: Broker,
        channel: str,
        generator: PriceGenerator,
        interval: float = 1.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.broker = broker
        self.channel = channel
        self.generator = generator
        self.interval = interval
        self.published = 0
        self.failed = 0

    async def publish_once(self) -> Optional[PriceEvent]:
        """Publish the next event. Returns it, or None if the broker refused."""
        event = self.generator.next_event()
        try:
            await self.broker.publish(self.channel, event.to_json())
        except PublishError as e:
            self.failed += 1
            logger.warning("publisher.publish_failed", channel=self.channel, error=str(e))
            return None
        self.published += 1
        logger.debug("publisher.published", channel=self.channel, symbol=event.symbol, price=event.price)
        return event

    async def run(
        self,
        stop_event: asyncio.Event,
        count: Optional[int] = None,
    ) -> None:
        """Publish at a fixed cadence until stop_event is set (or count ticks)."""
        if count is not None and count <= 0:
            return
        logger.info("publisher.started", channel=self.channel, interval=self.interval, symbols=self.generator.symbols)
        ticks = 0
        while not stop_event.is_set():
            started = time.monotonic()
            await self.publish_once()
            ticks += 1
            if count is not None and ticks >= count:
                break

            remaining = self.interval - (time.monotonic() - started)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(remaining, 0))
            except asyncio.TimeoutError:
                pass
        logger.info("publisher.stopped", published=self.published, failed=self.failed)
