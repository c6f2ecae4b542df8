"""Random-walk price generator.

Learn: Each symbol does an independent multiplicative random walk, so
prices drift realistically instead of jumping around a fixed mean. Symbols
are visited round-robin so every symbol ticks at the same cadence.
"""

import itertools
import random
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pricerelay.schemas.event import PriceEvent, format_price

MIN_PRICE = Decimal("0.01")


class PriceGenerator:
    def __init__(
        self,
        symbols: list[str],
        seed: Optional[int] = None,
        start: float = 100.0,
        volatility: float = 0.01,
    ):
        if not symbols:
            raise ValueError("at least one symbol is required")
        if volatility < 0:
            raise ValueError("volatility must not be negative")
        self.symbols = list(symbols)
        self.volatility = volatility
        self._rng = random.Random(seed)
        self._prices = {symbol: Decimal(format_price(start)) for symbol in self.symbols}
        self._order = itertools.cycle(self.symbols)

    def price(self, symbol: str) -> Decimal:
        return self._prices[symbol]

    def step(self, symbol: str) -> Decimal:
        """Advance one symbol's walk and return its new price."""
        change = Decimal(str(self._rng.gauss(0.0, self.volatility)))
        moved = Decimal(format_price(self._prices[symbol] * (1 + change)))
        self._prices[symbol] = max(moved, MIN_PRICE)
        return self._prices[symbol]

    def next_event(self, now: Optional[datetime] = None) -> PriceEvent:
        symbol = next(self._order)
        return PriceEvent.create(symbol, self.step(symbol), at=now)
