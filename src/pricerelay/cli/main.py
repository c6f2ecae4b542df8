"""pricerelay CLI — run the relay, the event source, and debugging taps.

Usage:
    pricerelay serve                      # Relay server on 0.0.0.0:3000
    pricerelay publish --interval 0.5     # Synthetic price ticks onto the channel
    pricerelay tail --count 10            # Print raw channel payloads
    pricerelay status                     # Ask a running relay for its stats
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import signal
import sys
from typing import Optional

import click
import httpx

from pricerelay import __version__
from pricerelay.config import settings
from pricerelay.errors import SubscriptionError
from pricerelay.log import configure_logging
from pricerelay.publisher import EventSource, PriceGenerator
from pricerelay.realtime.broker import create_broker

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _api_url() -> str:
    default = f"http://localhost:{settings.port}"
    return os.environ.get("PRICERELAY_API_URL", default).rstrip("/")


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread / not supported on this platform
            pass


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="pricerelay")
def main():
    """pricerelay — fan live price updates out to WebSocket clients."""


# ---------------------------------------------------------------------------
# pricerelay serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help=f"Listen address (default {settings.host})")
@click.option("--port", type=click.IntRange(0, 65535), default=None,
              help=f"Listen port (default {settings.port})")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes (dev only)")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the relay server (HTTP page + /ws WebSocket)."""
    import uvicorn

    # uvicorn exits non-zero by itself when the port can't be bound
    uvicorn.run(
        "pricerelay.main:app",
        host=host if host is not None else settings.host,
        port=port if port is not None else settings.port,
        reload=reload,
        log_config=None,
    )


# ---------------------------------------------------------------------------
# pricerelay publish
# ---------------------------------------------------------------------------


@main.command()
@click.option("--interval", type=click.FloatRange(min=0, min_open=True), default=None,
              help="Seconds between ticks")
@click.option("--count", type=click.IntRange(min=0), default=None, help="Stop after N ticks")
@click.option("--symbol", "symbols", multiple=True, help="Symbol to publish (repeatable)")
@click.option("--seed", type=int, default=None, help="Random seed for reproducible prices")
def publish(interval: Optional[float], count: Optional[int], symbols: tuple[str, ...],
            seed: Optional[int]):
    """Publish synthetic price events onto the channel."""
    configure_logging(settings.log_level, json=settings.log_json)
    _run(_publish_impl(
        interval if interval is not None else settings.publish_interval_seconds,
        count,
        list(symbols) or settings.symbols,
        seed,
    ))


async def _publish_impl(interval: float, count: Optional[int], symbols: list[str],
                        seed: Optional[int]):
    broker = create_broker(settings.redis_url, **settings.redis_client_options)
    try:
        await broker.connect()
    except SubscriptionError as e:
        await broker.close()
        _fail(str(e))

    stop = asyncio.Event()
    _install_stop_handlers(stop)
    source = EventSource(
        broker,
        settings.channel,
        PriceGenerator(symbols, seed=seed),
        interval=interval,
    )
    try:
        await source.run(stop, count=count)
    finally:
        await broker.close()


# ---------------------------------------------------------------------------
# pricerelay tail
# ---------------------------------------------------------------------------


@main.command()
@click.option("--count", type=click.IntRange(min=1), default=None, help="Exit after N payloads")
def tail(count: Optional[int]):
    """Subscribe to the channel directly and print every payload."""
    _run(_tail_impl(count))


async def _tail_impl(count: Optional[int]):
    broker = create_broker(settings.redis_url, **settings.redis_client_options)
    try:
        subscription = await broker.subscribe(settings.channel)
    except SubscriptionError as e:
        await broker.close()
        _fail(str(e))

    click.secho(f"Listening on {settings.channel} ({settings.redis_url})", bold=True, err=True)
    seen = 0
    try:
        async for payload in subscription:
            click.echo(payload.decode("utf-8", errors="replace"))
            seen += 1
            if count is not None and seen >= count:
                break
    except SubscriptionError as e:
        _fail(str(e))
    finally:
        await subscription.close()
        await broker.close()


# ---------------------------------------------------------------------------
# pricerelay status
# ---------------------------------------------------------------------------


@main.command()
def status():
    """Show a running relay's stats."""
    _run(_status_impl())


async def _status_impl():
    async with httpx.AsyncClient(base_url=_api_url(), timeout=10.0) as c:
        try:
            r = await c.get("/api/v1/stats")
            r.raise_for_status()
        except httpx.HTTPError as e:
            _fail(f"relay not reachable at {_api_url()}: {e}")
        stats = r.json()

    color = "green" if stats.get("subscribed") else "red"
    click.secho(
        f"channel {stats['channel']}: "
        f"{'subscribed' if stats['subscribed'] else 'NOT subscribed'}",
        fg=color,
    )
    click.echo(json.dumps(stats, indent=2))


if __name__ == "__main__":
    main()
