"""Event source — synthetic price ticks published onto the channel.

Learn: The publisher is its own process, separate from the relay. It only
talks to Redis; it has no idea how many relays or browsers are listening.

Usage:
    pricerelay publish --interval 1.0
"""

from pricerelay.publisher.generator import PriceGenerator
from pricerelay.publisher.source import EventSource

__all__ = ["EventSource", "PriceGenerator"]
