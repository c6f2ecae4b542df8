"""Event source tests — price generation and the publish loop."""

import asyncio
from decimal import Decimal

import pytest

from conftest import CHANNEL, next_payload
from pricerelay.publisher import EventSource, PriceGenerator
from pricerelay.realtime.broker import InMemoryBroker
from pricerelay.schemas.event import PriceEvent


# ─── Generator ────────────────────────────────────────────


def test_symbols_tick_round_robin():
    gen = PriceGenerator(["AAPL", "GOOG", "MSFT"], seed=1)
    symbols = [gen.next_event().symbol for _ in range(6)]
    assert symbols == ["AAPL", "GOOG", "MSFT", "AAPL", "GOOG", "MSFT"]


def test_seed_makes_prices_reproducible():
    a = PriceGenerator(["AAPL"], seed=42)
    b = PriceGenerator(["AAPL"], seed=42)
    assert [a.next_event().price for _ in range(10)] == [
        b.next_event().price for _ in range(10)
    ]


def test_prices_have_two_decimals_and_stay_positive():
    gen = PriceGenerator(["PENNY"], seed=7, start=0.02, volatility=0.5)
    for _ in range(50):
        event = gen.next_event()
        assert Decimal(event.price) >= Decimal("0.01")
        assert len(event.price.split(".")[1]) == 2


def test_zero_volatility_is_flat():
    gen = PriceGenerator(["AAPL"], start=123.456, volatility=0.0)
    assert {gen.next_event().price for _ in range(5)} == {"123.46"}


def test_generator_needs_symbols():
    with pytest.raises(ValueError):
        PriceGenerator([])


# ─── Event source ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_publish_once_puts_json_on_channel(broker):
    sub = await broker.subscribe(CHANNEL)
    source = EventSource(broker, CHANNEL, PriceGenerator(["AAPL"], seed=3), interval=1.0)

    event = await source.publish_once()

    payload = await next_payload(sub)
    assert payload == event.to_json().encode()
    assert PriceEvent.from_json(payload).symbol == "AAPL"
    assert source.published == 1


@pytest.mark.asyncio
async def test_run_stops_after_count(broker):
    sub = await broker.subscribe(CHANNEL)
    source = EventSource(broker, CHANNEL, PriceGenerator(["AAPL", "GOOG"]), interval=0.01)

    await asyncio.wait_for(source.run(asyncio.Event(), count=3), timeout=2.0)

    symbols = [PriceEvent.from_json(await next_payload(sub)).symbol for _ in range(3)]
    assert symbols == ["AAPL", "GOOG", "AAPL"]
    assert source.published == 3


@pytest.mark.asyncio
async def test_run_with_zero_count_publishes_nothing(broker):
    source = EventSource(broker, CHANNEL, PriceGenerator(["AAPL"]), interval=10.0)

    await asyncio.wait_for(source.run(asyncio.Event(), count=0), timeout=1.0)

    assert source.published == 0
    assert source.failed == 0


@pytest.mark.asyncio
async def test_run_stops_on_event(broker):
    source = EventSource(broker, CHANNEL, PriceGenerator(["AAPL"]), interval=10.0)
    stop = asyncio.Event()

    task = asyncio.create_task(source.run(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert source.published == 1


@pytest.mark.asyncio
async def test_publish_failure_is_swallowed(broker):
    """Broker down: the tick is dropped and counted, the loop keeps going."""
    broker.disconnect_all()
    source = EventSource(broker, CHANNEL, PriceGenerator(["AAPL"]), interval=0.01)

    await asyncio.wait_for(source.run(asyncio.Event(), count=3), timeout=2.0)

    assert source.failed == 3
    assert source.published == 0
    assert await source.publish_once() is None


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        EventSource(InMemoryBroker(), CHANNEL, PriceGenerator(["AAPL"]), interval=0)
