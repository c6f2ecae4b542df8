"""Health, stats and index page tests.

Learn: httpx's ASGITransport doesn't run the lifespan, so the relay starts
unsubscribed here — that's exactly the "degraded" case. Tests that need it
subscribed start it by hand.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pricerelay import __version__
from pricerelay.config import Settings
from pricerelay.main import create_app
from pricerelay.realtime.broker import InMemoryBroker, RedisBroker


@pytest_asyncio.fixture()
async def app():
    return create_app(settings=Settings(redis_host="memory"), broker=InMemoryBroker())


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health_degraded_before_subscription(client):
    """Broker reachable but no subscription yet → degraded, still 200."""
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["server"] == "ok"
    assert data["version"] == __version__
    assert data["redis"] == "ok"
    assert data["subscribed"] is False
    assert data["status"] == "degraded"


@pytest.mark.asyncio
async def test_health_ok_when_subscribed(app, client):
    relay = app.state.relay
    await relay.start()
    assert await relay.wait_subscribed(timeout=2.0)

    resp = await client.get("/api/v1/health")
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["sessions"] == 0
    await relay.stop()


@pytest.mark.asyncio
async def test_health_reports_broker_down(app, client):
    app.state.broker.disconnect_all()

    data = (await client.get("/api/v1/health")).json()

    assert data["status"] == "degraded"
    assert data["redis"].startswith("error")


@pytest.mark.asyncio
async def test_stats_endpoint(client):
    resp = await client.get("/api/v1/stats")
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["channel"] == "stock_prices"
    assert stats["sessions"] == 0
    assert stats["messages_relayed"] == 0


@pytest.mark.asyncio
async def test_index_serves_client_page(client):
    resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    assert "/ws" in resp.text


def test_app_builds_redis_broker_with_connect_timeout():
    """A blackholed broker host can't hang the health check forever."""
    app = create_app(settings=Settings(redis_host="cache.internal", redis_connect_timeout=0.5))

    assert isinstance(app.state.broker, RedisBroker)
    assert app.state.broker.client_options == {"socket_connect_timeout": 0.5}
